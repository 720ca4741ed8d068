"""
The config handler module provides functionality to read, write, and manage the
runtime configuration of the tunnel entry points.
"""
import inspect
import json
import os
from typing import Any, TypedDict, Literal, overload

import configs

__all__ = ['ConfigHandler', 'create_default_config']


class ConfigDict(TypedDict):
    host: str
    port: int
    rekey_interval: int
    receive_dir: str


IntKeys = Literal['port', 'rekey_interval']
StrKeys = Literal['host', 'receive_dir']
ConfigKey = IntKeys | StrKeys


def create_default_config() -> ConfigDict:
    """
    :return: The default configuration dictionary, taken from configs.py.
    """
    return ConfigDict(
            host=configs.HOST,
            port=configs.PORT,
            rekey_interval=configs.REKEY_INTERVAL,
            receive_dir=configs.RECEIVE_DIR,
    )


class ConfigHandler:
    """
    A class to handle reading and writing configuration files.

    The file is created with default values if it does not exist yet.
    """

    def __init__(self, config_file: str = "config.json") -> None:
        self.config_file = config_file
        self.config: ConfigDict = create_default_config()
        self.init_config: dict[str, Any] = {}
        self.ensure_exists()
        with open(self.config_file, "r", encoding="utf-8") as config_file:
            self.init_config = json.load(config_file)

        self.validate_config()

    def validate_config(self) -> None:
        expected_types = inspect.get_annotations(ConfigDict)
        for key, value in self.init_config.items():
            if not isinstance(key, str):
                raise ValueError(f"Config key '{key}' is not a string")
            if key not in expected_types:
                raise ValueError(f"Unknown config key '{key}'")

            expected_type = expected_types[key]
            # bool is an int subclass, but true/false is never a valid port or interval
            if isinstance(value, bool) or not isinstance(value, expected_type):
                raise ValueError(f"Config value for key '{key}' must be of type {expected_type.__name__}")

            self.config[key] = value  # type: ignore

        if not 0 < self.config["port"] < 65536:
            raise ValueError("Config value for key 'port' must be between 1 and 65535")
        if self.config["rekey_interval"] <= 0:
            raise ValueError("Config value for key 'rekey_interval' must be positive")

    @overload
    def __getitem__(self, key: IntKeys) -> int:
        ...

    @overload
    def __getitem__(self, key: StrKeys) -> str:
        ...

    def __getitem__(self, key: ConfigKey) -> int | str:
        if not isinstance(key, str):
            raise TypeError("Config keys must be strings")
        return self.config[key]  # type: ignore

    def save(self) -> tuple[bool, str]:
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.config, f, indent=4)
            return True, ""
        except PermissionError:
            return False, "Insufficient permissions to write config file"
        except OSError as e:
            return False, str(e)

    def ensure_exists(self) -> tuple[bool, str]:
        if not os.path.exists(self.config_file):
            return self.save()
        return True, ""

    def reload(self) -> tuple[bool, str]:
        if not os.path.exists(self.config_file):
            return False, "Config file does not exist"
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                self.init_config = json.load(f)
            self.config = create_default_config()
            self.validate_config()
            return True, ""
        except json.JSONDecodeError:
            return False, "Config file is not valid JSON"
        except ValueError as e:
            return False, str(e)

    def __str__(self) -> str:
        return json.dumps(self.config, indent=4)
