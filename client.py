# client.py - Secure channel client
# pylint: disable=trailing-whitespace, broad-exception-caught
import logging
import os
import socket
import sys

import configs
from config_handler import ConfigHandler
from shared import (ChannelListener, ConsoleListener, SecureConnection, TransportFailure, TunnelError,
                    perform_handshake)

logger = logging.getLogger(__name__)


class SecureChannelClient:
    def __init__(self, listener: ChannelListener | None = None,
                 rekey_interval: float | None = configs.REKEY_INTERVAL,
                 receive_dir: str = configs.RECEIVE_DIR) -> None:
        """
        The client end of a tunnel.

        Connects to a server, runs the handshake and then keeps one receive thread
        and one key rotation thread going for as long as the connection lives.

        Attributes:
            listener (ChannelListener): Receives decoded messages and files.
            rekey_interval (float | None): Seconds between outbound key rotations.
                None disables automatic rotation.
            receive_dir (str): Where received files are written.
            connection (SecureConnection | None): The live connection, None
                before connect().
            host (str): The server address, empty before connect().
            port (int): The server port, 0 before connect().
        """
        self.listener: ChannelListener = listener or ConsoleListener("Server")
        self.rekey_interval: float | None = rekey_interval
        self.receive_dir: str = receive_dir
        os.makedirs(receive_dir, exist_ok=True)
        self.connection: SecureConnection | None = None
        self.host: str = ""
        self.port: int = 0

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.connected

    def connect(self, host: str, port: int, timeout: float = configs.CONNECT_TIMEOUT) -> None:
        """Connect to the server, agree on a session key and start the background threads.

        Raises:
            OSError: If the TCP connection can not be established.
            HandshakeFailure: If the key exchange fails. The socket is closed.
        """
        if self.connected:
            raise RuntimeError("Already connected")

        sock = socket.create_connection((host, port), timeout=timeout)
        try:
            sock.settimeout(None)
            session_key = perform_handshake(sock)
        except Exception:
            sock.close()
            raise

        self.host, self.port = host, port
        self.connection = SecureConnection(sock, session_key, self.listener, initiator=True,
                                           rekey_interval=self.rekey_interval,
                                           receive_dir=self.receive_dir, name=f"{host}:{port}")
        self.connection.start()
        self.connection.start_rekey()
        logger.info("Secure channel established with %s:%s", host, port)

    def send_message(self, text: str) -> None:
        self._require_connection().send_message(text)

    def send_file(self, file_path: str) -> None:
        self._require_connection().send_file(file_path)

    def rotate_key(self) -> bool:
        """Rotate the outbound key now instead of waiting for the timer."""
        return self._require_connection().rotate_key()

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()

    def _require_connection(self) -> SecureConnection:
        if self.connection is None or not self.connection.connected:
            raise TransportFailure("Not connected")
        return self.connection


def run_prompt(client: SecureChannelClient) -> None:
    """Read lines from stdin and send them until the user quits or the connection drops."""
    print("Type a message and press enter to send it.")
    print("Commands: /file <path>, /rekey, /quit")
    while client.connected:
        try:
            line = input()
        except EOFError:
            break

        if not line:
            continue
        if line == "/quit":
            break
        try:
            if line == "/rekey":
                if not client.rotate_key():
                    print("[SYSTEM] A key rotation is already in progress")
            elif line.startswith("/file "):
                path = line[len("/file "):].strip()
                if not os.path.isfile(path):
                    print(f"[ERROR] File not found: {path}")
                    continue
                client.send_file(path)
                print(f"[SYSTEM] Sent {os.path.basename(path)}")
            else:
                client.send_message(line)
        except TunnelError as e:
            print(f"[ERROR] {e}")


def main() -> None:
    """Main function to run the secure channel client."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    print("Secure Channel Client")
    print("=====================")

    config = ConfigHandler()
    host = config["host"] if config["host"] != "0.0.0.0" else "localhost"
    client = SecureChannelClient(rekey_interval=config["rekey_interval"], receive_dir=config["receive_dir"])

    try:
        client.connect(host, config["port"])
    except (OSError, TunnelError) as e:
        print(f"Failed to connect to {host}:{config['port']}: {e}")
        sys.exit(1)

    print(f"Connected to secure channel server at {host}:{config['port']}")
    try:
        run_prompt(client)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        client.close()
    print("Disconnected from server.")


if __name__ == "__main__":
    main()
