"""
Validates the static settings in configs.py when the tunnel modules are imported.
"""
import configs

__all__ = ['validate_configs']


def validate_configs() -> None:
    """Validate configuration settings."""
    if not isinstance(configs.HOST, str) or not configs.HOST:
        raise ValueError("HOST must be a non-empty string")

    if not isinstance(configs.PORT, int) or not 0 < configs.PORT < 65536:
        raise ValueError("PORT must be a number between 1 and 65535")

    if not isinstance(configs.CONNECT_TIMEOUT, (int, float)) or configs.CONNECT_TIMEOUT <= 0:
        raise ValueError("CONNECT_TIMEOUT must be a positive number")

    if not isinstance(configs.HANDSHAKE_TIMEOUT, (int, float)) or configs.HANDSHAKE_TIMEOUT <= 0:
        raise ValueError("HANDSHAKE_TIMEOUT must be a positive number")

    if not isinstance(configs.REKEY_INTERVAL, int) or not 0 < configs.REKEY_INTERVAL <= 86400:
        raise ValueError("REKEY_INTERVAL must be a number of seconds between 1 and 86400")

    if not isinstance(configs.CHUNK_SIZE, int) or not 0 < configs.CHUNK_SIZE <= 1024 * 1024:
        raise ValueError("CHUNK_SIZE must be between 1 and 1048576 bytes")

    if not isinstance(configs.MAX_FRAME_SIZE, int) or configs.MAX_FRAME_SIZE < configs.CHUNK_SIZE + 16:
        raise ValueError("MAX_FRAME_SIZE must fit at least one sealed file chunk")

    if not isinstance(configs.RECEIVE_DIR, str) or not configs.RECEIVE_DIR:
        raise ValueError("RECEIVE_DIR must be a non-empty path")

    if not isinstance(configs.RECEIVED_FILE_PREFIX, str):
        raise ValueError("RECEIVED_FILE_PREFIX must be a string")


validate_configs()
