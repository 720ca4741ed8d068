"""
Secure channel server.

Accepts any number of clients, runs the handshake with each one and keeps a
registry of live connections so the operator can broadcast messages and files
to all of them.

Classes:
    SecureChannelServer: A threaded TCP server holding the connection registry
    and the broadcast operations.

    SecureChannelRequestHandler: Runs one connection: handshake, registration,
    key rotation and the receive loop.
"""
# pylint: disable=trailing-whitespace, broad-exception-caught
import logging
import os
import socket
import socketserver
import threading

import configs
from config_handler import ConfigHandler
from shared import (ChannelListener, ConsoleListener, HandshakeFailure, SecureConnection, TunnelError,
                    perform_handshake)

logger = logging.getLogger(__name__)


# noinspection PyBroadException
class SecureChannelServer(socketserver.ThreadingTCPServer):
    """
    Threaded TCP server for the tunnel. Every accepted socket gets its own
    handler thread; the registry of established connections is guarded by
    ``connections_lock``.
    """
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, host: str = configs.HOST, port: int = configs.PORT,
                 listener: ChannelListener | None = None,
                 rekey_interval: float | None = configs.REKEY_INTERVAL,
                 receive_dir: str = configs.RECEIVE_DIR) -> None:
        """Initialise and bind the server.

        Args:
            host (str, optional): The address to bind to. Defaults to configs.HOST.
            port (int, optional): The port to listen on, 0 picks a free one.
                Defaults to configs.PORT.
            listener (ChannelListener, optional): Receives decoded traffic from
                every client. Defaults to printing it.
            rekey_interval (float | None, optional): Seconds between outbound key
                rotations on each connection, None to disable.
            receive_dir (str, optional): Where files received from clients are written.
        """
        self.listener: ChannelListener = listener or ConsoleListener("Client")
        self.rekey_interval: float | None = rekey_interval
        self.receive_dir: str = receive_dir
        os.makedirs(receive_dir, exist_ok=True)
        self.connections: set[SecureConnection] = set()
        self.connections_lock: threading.Lock = threading.Lock()
        self.running: bool = False

        super().__init__((host, port), SecureChannelRequestHandler)
        logger.info("Secure channel server listening on %s:%s", *self.server_address[:2])

    @property
    def connection_count(self) -> int:
        with self.connections_lock:
            return len(self.connections)

    def add_connection(self, connection: SecureConnection) -> None:
        with self.connections_lock:
            self.connections.add(connection)
        logger.info("Client %s connected", connection.name)

    def remove_connection(self, connection: SecureConnection) -> None:
        with self.connections_lock:
            self.connections.discard(connection)
        logger.info("Client %s disconnected", connection.name)

    def broadcast_message(self, text: str) -> int:
        """Send a message to every connected client.

        A client that fails is logged, closed and skipped; the rest still get
        the message.

        Returns:
            int: How many clients the message was sent to.
        """
        sent = 0
        with self.connections_lock:
            for connection in self.connections:
                try:
                    connection.send_message(text)
                    sent += 1
                except TunnelError as e:
                    logger.warning("Failed to send message to %s: %s", connection.name, e)
                    connection.close()
        return sent

    def broadcast_file(self, file_path: str) -> int:
        """Send a file to every connected client.

        Returns:
            int: How many clients the file was sent to.

        Raises:
            OSError: If the file can not be opened at all.
        """
        if not os.path.isfile(file_path):
            raise FileNotFoundError(file_path)

        sent = 0
        with self.connections_lock:
            for connection in self.connections:
                try:
                    connection.send_file(file_path)
                    sent += 1
                except (TunnelError, OSError) as e:
                    logger.warning("Failed to send %s to %s: %s", file_path, connection.name, e)
                    connection.close()
        return sent

    def apply_config(self, config: ConfigHandler) -> None:
        """
        Take the rotation interval and receive directory from ``config``.

        The receive directory applies to every connection at its next file,
        the rotation interval only to connections accepted from now on. Host
        and port need a restart.
        """
        os.makedirs(config["receive_dir"], exist_ok=True)
        self.rekey_interval = config["rekey_interval"]
        self.receive_dir = config["receive_dir"]
        with self.connections_lock:
            for connection in self.connections:
                connection.receive_dir = self.receive_dir

    def start_server(self) -> None:
        """Start the server and serve forever."""
        self.running = True
        try:
            self.serve_forever()
        finally:
            self.running = False

    def stop_server(self) -> None:
        """Disconnect every client, stop accepting and close the listening socket.

        Must be called from a different thread than start_server().
        """
        with self.connections_lock:
            connections = list(self.connections)
        for connection in connections:
            connection.close()
        if self.running:
            self.shutdown()
        self.server_close()


# noinspection PyBroadException
class SecureChannelRequestHandler(socketserver.BaseRequestHandler):
    """Handles one client connection."""
    server: SecureChannelServer
    request: socket.socket

    def handle(self) -> None:
        peer = f"{self.client_address[0]}:{self.client_address[1]}"
        try:
            session_key = perform_handshake(self.request)
        except HandshakeFailure as e:
            logger.warning("Handshake with %s failed: %s", peer, e)
            return

        connection = SecureConnection(self.request, session_key, self.server.listener, initiator=False,
                                      rekey_interval=self.server.rekey_interval,
                                      receive_dir=self.server.receive_dir, name=peer)
        self.server.add_connection(connection)
        try:
            connection.start_rekey()
            connection.run()
        finally:
            self.server.remove_connection(connection)
            connection.close()


def run_prompt(server: SecureChannelServer, config: ConfigHandler) -> None:
    """Read lines from stdin and broadcast them until the operator quits."""
    print("Type a message and press enter to broadcast it.")
    print("Commands: /file <path>, /clients, /reload, /quit")
    while True:
        try:
            line = input()
        except EOFError:
            break

        if not line:
            continue
        if line == "/quit":
            break
        if line == "/clients":
            print(f"[SYSTEM] {server.connection_count} client(s) connected")
        elif line == "/reload":
            ok, error = config.reload()
            if not ok:
                print(f"[ERROR] Config not reloaded: {error}")
                continue
            try:
                server.apply_config(config)
            except OSError as e:
                print(f"[ERROR] {e}")
                continue
            print(f"[SYSTEM] Config reloaded, files go to {config['receive_dir']}")
        elif line.startswith("/file "):
            path = line[len("/file "):].strip()
            try:
                sent = server.broadcast_file(path)
            except OSError as e:
                print(f"[ERROR] {e}")
                continue
            print(f"[SYSTEM] Sent {os.path.basename(path)} to {sent} client(s)")
        else:
            sent = server.broadcast_message(line)
            print(f"[SYSTEM] Sent to {sent} client(s)")


def main() -> None:
    """Main entry point to start the secure channel server."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = ConfigHandler()
    try:
        server = SecureChannelServer(config["host"], config["port"],
                                     rekey_interval=config["rekey_interval"],
                                     receive_dir=config["receive_dir"])
    except OSError as e:
        print(f"Server socket error: {e}")
        return

    print(f"Secure channel server started on {config['host']}:{config['port']}")
    print("Waiting for clients to connect...")
    server_thread = threading.Thread(target=server.start_server, name="accept")
    server_thread.daemon = True
    server_thread.start()
    try:
        run_prompt(server, config)
    except KeyboardInterrupt:
        print("Server interrupted by user")
    finally:
        server.stop_server()


if __name__ == "__main__":
    main()
