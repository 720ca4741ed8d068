import json
import os
import queue
import socket
import struct
import tempfile
import threading
import time
import unittest

from client import SecureChannelClient
from config_handler import ConfigHandler
from server import SecureChannelServer
from shared import (ChannelListener, FrameType, HandshakeFailure, SecureConnection, SecureSession, TransportFailure,
                    direction_keys, perform_handshake, recv_exact, write_control, write_message)

TIMEOUT = 5.0


class RecordingListener(ChannelListener):
    def __init__(self) -> None:
        self.messages: queue.Queue[str] = queue.Queue()
        self.files: queue.Queue[str] = queue.Queue()

    def on_message(self, text: str) -> None:
        self.messages.put(text)

    def on_file_received(self, path: str) -> None:
        self.files.put(path)


class FailingOnceListener(RecordingListener):
    def __init__(self) -> None:
        super().__init__()
        self.failed = False

    def on_message(self, text: str) -> None:
        if not self.failed:
            self.failed = True
            raise RuntimeError("listener broke")
        super().on_message(text)


def wait_for(condition, timeout: float = TIMEOUT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class SecureChannelTestCase(unittest.TestCase):
    rekey_interval: float | None = None
    server_listener_class = RecordingListener

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.server_dir = os.path.join(self.tmp.name, "server")
        os.mkdir(self.server_dir)

        self.server_listener = self.server_listener_class()
        self.server = SecureChannelServer("127.0.0.1", 0, listener=self.server_listener,
                                          rekey_interval=self.rekey_interval, receive_dir=self.server_dir)
        self.port = self.server.server_address[1]
        self.server_thread = threading.Thread(target=self.server.start_server, daemon=True)
        self.server_thread.start()
        self.assertTrue(wait_for(lambda: self.server.running))
        self.clients: list[SecureChannelClient] = []

    def tearDown(self):
        for client in self.clients:
            client.close()
        self.server.stop_server()
        self.server_thread.join(timeout=TIMEOUT)

    def connect_client(self) -> tuple[SecureChannelClient, RecordingListener]:
        listener = RecordingListener()
        receive_dir = tempfile.mkdtemp(dir=self.tmp.name)
        client = SecureChannelClient(listener, rekey_interval=self.rekey_interval, receive_dir=receive_dir)
        client.connect("127.0.0.1", self.port)
        self.clients.append(client)
        return client, listener

    def wait_for_connections(self, count: int) -> None:
        self.assertTrue(wait_for(lambda: self.server.connection_count == count),
                        f"expected {count} connections, have {self.server.connection_count}")

    def server_connection(self):
        self.wait_for_connections(1)
        with self.server.connections_lock:
            return next(iter(self.server.connections))

    def make_file(self, name: str, size: int) -> str:
        path = os.path.join(self.tmp.name, name)
        with open(path, "wb") as f:
            f.write(os.urandom(size))
        return path

    def assert_same_content(self, first: str, second: str) -> None:
        with open(first, "rb") as a, open(second, "rb") as b:
            self.assertEqual(a.read(), b.read())


class MessagingTests(SecureChannelTestCase):
    def test_client_message_reaches_server(self):
        client, _ = self.connect_client()
        client.send_message("hello")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "hello")

    def test_messages_arrive_in_order(self):
        client, _ = self.connect_client()
        for i in range(50):
            client.send_message(f"message {i}")
        received = [self.server_listener.messages.get(timeout=TIMEOUT) for _ in range(50)]
        self.assertEqual(received, [f"message {i}" for i in range(50)])

    def test_broadcast_reaches_every_client(self):
        listeners = [self.connect_client()[1] for _ in range(3)]
        self.wait_for_connections(3)

        self.assertEqual(self.server.broadcast_message("hi"), 3)
        for listener in listeners:
            self.assertEqual(listener.messages.get(timeout=TIMEOUT), "hi")

    def test_broadcast_skips_a_closed_client(self):
        (first, first_listener), (second, second_listener), (third, _) = [self.connect_client() for _ in range(3)]
        self.wait_for_connections(3)

        third.close()
        self.wait_for_connections(2)
        self.assertEqual(self.server.broadcast_message("hi"), 2)
        self.assertEqual(first_listener.messages.get(timeout=TIMEOUT), "hi")
        self.assertEqual(second_listener.messages.get(timeout=TIMEOUT), "hi")
        self.assertTrue(first.connected and second.connected)

    def test_broadcast_right_after_a_client_leaves(self):
        (_, first_listener), (_, second_listener), (third, _) = [self.connect_client() for _ in range(3)]
        self.wait_for_connections(3)

        third.close()
        self.server.broadcast_message("hi")
        self.assertEqual(first_listener.messages.get(timeout=TIMEOUT), "hi")
        self.assertEqual(second_listener.messages.get(timeout=TIMEOUT), "hi")
        self.wait_for_connections(2)

    def test_closed_client_is_removed_from_registry(self):
        client, _ = self.connect_client()
        self.wait_for_connections(1)
        client.close()
        self.wait_for_connections(0)

    def test_send_after_close_fails(self):
        client, _ = self.connect_client()
        client.close()
        self.assertFalse(client.connected)
        with self.assertRaises(TransportFailure):
            client.send_message("too late")

    def test_connect_twice_is_rejected(self):
        client, _ = self.connect_client()
        with self.assertRaises(RuntimeError):
            client.connect("127.0.0.1", self.port)


class FileTransferTests(SecureChannelTestCase):
    def test_client_file_reaches_server(self):
        client, _ = self.connect_client()
        path = self.make_file("x.bin", 2500)
        client.send_file(path)

        received_path = self.server_listener.files.get(timeout=TIMEOUT)
        self.assertEqual(received_path, os.path.join(self.server_dir, "recv_x.bin"))
        self.assert_same_content(path, received_path)

    def test_messages_after_a_file_still_arrive(self):
        client, _ = self.connect_client()
        client.send_file(self.make_file("big.bin", 200 * 1024))
        client.send_message("after the file")
        self.server_listener.files.get(timeout=TIMEOUT)
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "after the file")

    def test_broadcast_file(self):
        (_, first_listener), (_, second_listener) = self.connect_client(), self.connect_client()
        self.wait_for_connections(2)
        path = self.make_file("notes.txt", 3000)

        self.assertEqual(self.server.broadcast_file(path), 2)
        for listener in (first_listener, second_listener):
            received_path = listener.files.get(timeout=TIMEOUT)
            self.assertEqual(os.path.basename(received_path), "recv_notes.txt")
            self.assert_same_content(path, received_path)

    def test_two_clients_sending_the_same_name_at_once(self):
        (first, _), (second, _) = self.connect_client(), self.connect_client()
        self.wait_for_connections(2)
        size = 4 * 1024 * 1024
        sources = []
        for fill in (1, 2):
            source_dir = tempfile.mkdtemp(dir=self.tmp.name)
            path = os.path.join(source_dir, "x.bin")
            with open(path, "wb") as f:
                f.write(bytes([fill]) * size)
            sources.append(path)

        senders = [threading.Thread(target=client.send_file, args=(path,))
                   for client, path in zip((first, second), sources)]
        for sender in senders:
            sender.start()
        for sender in senders:
            sender.join(timeout=30)

        delivered = [self.server_listener.files.get(timeout=30) for _ in range(2)]
        final_path = os.path.join(self.server_dir, "recv_x.bin")
        self.assertEqual(delivered, [final_path, final_path])
        self.assertEqual(self.server.connection_count, 2)
        self.assertTrue(first.connected and second.connected)

        # Whole content of one sender, never a mix of both
        with open(final_path, "rb") as f:
            content = f.read()
        self.assertEqual(len(content), size)
        self.assertIn(set(content), ({1}, {2}))
        self.assertEqual(os.listdir(self.server_dir), ["recv_x.bin"])

    def test_missing_receive_dir_is_created(self):
        receive_dir = os.path.join(self.tmp.name, "client", "downloads")
        client = SecureChannelClient(RecordingListener(), rekey_interval=None, receive_dir=receive_dir)
        self.assertTrue(os.path.isdir(receive_dir))
        client.close()

    def test_broadcast_missing_file_raises(self):
        self.connect_client()
        self.wait_for_connections(1)
        with self.assertRaises(FileNotFoundError):
            self.server.broadcast_file(os.path.join(self.tmp.name, "missing.bin"))

    def test_sending_a_missing_file_keeps_the_connection(self):
        client, _ = self.connect_client()
        with self.assertRaises(OSError):
            client.send_file(os.path.join(self.tmp.name, "missing.bin"))
        client.send_message("still here")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "still here")


class KeyRotationTests(SecureChannelTestCase):
    def test_client_rotation(self):
        client, _ = self.connect_client()
        server_connection = self.server_connection()

        self.assertTrue(client.rotate_key())
        self.assertTrue(wait_for(lambda: client.connection.outbound.epoch == 1))
        self.assertTrue(wait_for(lambda: server_connection.inbound.epoch == 1))
        self.assertFalse(client.connection.rekey_pending)

        client.send_message("after rotation")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "after rotation")

    def test_server_rotation(self):
        client, listener = self.connect_client()
        server_connection = self.server_connection()

        self.assertTrue(server_connection.rotate_key())
        self.assertTrue(wait_for(lambda: client.connection.inbound.epoch == 1))
        self.assertEqual(client.connection.outbound.epoch, 0)

        self.server.broadcast_message("rotated")
        self.assertEqual(listener.messages.get(timeout=TIMEOUT), "rotated")
        client.send_message("reply")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "reply")

    def test_second_rotation_waits_for_the_first(self):
        client, _ = self.connect_client()
        self.server_connection()
        with client.connection.outbound.lock:
            # Holding the lock keeps the commit from going out
            self.assertTrue(client.rotate_key())
            self.assertFalse(client.rotate_key())
        self.assertTrue(wait_for(lambda: client.connection.outbound.epoch == 1))

    def test_messages_sent_during_rotation_arrive(self):
        client, _ = self.connect_client()
        self.server_connection()
        for i in range(20):
            if i % 5 == 0:
                wait_for(lambda: not client.connection.rekey_pending)
                client.rotate_key()
            client.send_message(str(i))
        received = [self.server_listener.messages.get(timeout=TIMEOUT) for _ in range(20)]
        self.assertEqual(received, [str(i) for i in range(20)])


class TimedRotationTests(SecureChannelTestCase):
    rekey_interval = 0.2

    def test_keys_rotate_on_a_timer_while_traffic_flows(self):
        client, listener = self.connect_client()
        server_connection = self.server_connection()

        sent = 0
        deadline = time.monotonic() + TIMEOUT
        while time.monotonic() < deadline:
            client.send_message(f"up {sent}")
            self.server.broadcast_message(f"down {sent}")
            sent += 1
            if client.connection.outbound.epoch >= 2 and server_connection.outbound.epoch >= 2:
                break
            time.sleep(0.02)

        self.assertGreaterEqual(client.connection.outbound.epoch, 2)
        self.assertGreaterEqual(server_connection.outbound.epoch, 2)
        self.assertEqual([self.server_listener.messages.get(timeout=TIMEOUT) for _ in range(sent)],
                         [f"up {i}" for i in range(sent)])
        self.assertEqual([listener.messages.get(timeout=TIMEOUT) for _ in range(sent)],
                         [f"down {i}" for i in range(sent)])

    def test_closing_stops_the_timer(self):
        client, _ = self.connect_client()
        rekey_thread = client.connection.rekey_thread
        client.close()
        rekey_thread.join(timeout=TIMEOUT)
        self.assertFalse(rekey_thread.is_alive())


class ListenerFailureTests(SecureChannelTestCase):
    server_listener_class = FailingOnceListener

    def test_listener_error_does_not_drop_the_connection(self):
        client, _ = self.connect_client()
        client.send_message("boom")
        client.send_message("fine")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "fine")
        self.assertTrue(client.connected)
        self.assertEqual(self.server.connection_count, 1)


class HostilePeerTests(SecureChannelTestCase):
    def raw_connection(self) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", self.port), timeout=TIMEOUT)
        self.addCleanup(sock.close)
        return sock

    def assert_dropped(self, sock: socket.socket) -> None:
        try:
            self.assertEqual(sock.recv(1024), b"")
        except ConnectionResetError:
            pass

    def test_bad_handshake_does_not_stop_the_server(self):
        sock = self.raw_connection()
        sock.sendall(bytes(32))
        recv_exact(sock, 32)
        self.assert_dropped(sock)

        client, _ = self.connect_client()
        client.send_message("hello")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "hello")

    def test_truncated_handshake_is_dropped(self):
        sock = self.raw_connection()
        sock.sendall(b"\x09" * 5)
        sock.shutdown(socket.SHUT_WR)
        recv_exact(sock, 32)
        self.assert_dropped(sock)
        self.assertEqual(self.server.connection_count, 0)

    def test_forged_ciphertext_drops_the_connection(self):
        sock = self.raw_connection()
        perform_handshake(sock)
        self.wait_for_connections(1)

        sock.sendall(struct.pack("!ii", FrameType.MESSAGE, 32) + os.urandom(32))
        self.assert_dropped(sock)
        self.wait_for_connections(0)
        self.assertTrue(self.server_listener.messages.empty())

    def test_garbage_frame_type_drops_the_connection(self):
        sock = self.raw_connection()
        perform_handshake(sock)
        self.wait_for_connections(1)

        sock.sendall(struct.pack("!i", 99))
        self.assert_dropped(sock)
        self.wait_for_connections(0)

    def test_unsolicited_rekey_commit_drops_the_connection(self):
        sock = self.raw_connection()
        outbound_key, _ = direction_keys(perform_handshake(sock), initiator=True)
        self.wait_for_connections(1)

        # Correctly sealed, but no rotation was started
        write_control(sock, SecureSession(outbound_key), FrameType.REKEY_COMMIT, b"")
        self.assert_dropped(sock)
        self.wait_for_connections(0)

    def test_correctly_sealed_raw_message_is_accepted(self):
        sock = self.raw_connection()
        outbound_key, _ = direction_keys(perform_handshake(sock), initiator=True)
        write_message(sock, SecureSession(outbound_key), "from a raw socket")
        self.assertEqual(self.server_listener.messages.get(timeout=TIMEOUT), "from a raw socket")


class ReloadConfigTests(SecureChannelTestCase):
    def test_reloaded_receive_dir_applies_to_live_connections(self):
        client, _ = self.connect_client()
        self.wait_for_connections(1)

        config_path = os.path.join(self.tmp.name, "config.json")
        new_dir = os.path.join(self.tmp.name, "reloaded")
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump({"receive_dir": new_dir, "rekey_interval": 30}, f)
        self.server.apply_config(ConfigHandler(config_path))

        self.assertEqual(self.server.rekey_interval, 30)
        self.assertTrue(os.path.isdir(new_dir))
        client.send_file(self.make_file("after.bin", 500))
        self.assertEqual(self.server_listener.files.get(timeout=TIMEOUT), os.path.join(new_dir, "recv_after.bin"))


class ConnectionStateTests(unittest.TestCase):
    def test_failed_rotation_closes_the_connection(self):
        local, remote = socket.socketpair()
        self.addCleanup(local.close)
        connection = SecureConnection(local, bytes(32), RecordingListener(), initiator=True, rekey_interval=None)
        remote.close()

        with self.assertRaises(TransportFailure):
            connection.rotate_key()
        self.assertFalse(connection.connected)
        self.assertFalse(connection.rekey_pending)
        with self.assertRaises(TransportFailure):
            connection.send_message("after the failure")


class ConnectFailureTests(unittest.TestCase):
    def test_connection_refused(self):
        probe = socket.socket()
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()

        client = SecureChannelClient(RecordingListener(), rekey_interval=None)
        with self.assertRaises(OSError):
            client.connect("127.0.0.1", port, timeout=1)
        self.assertFalse(client.connected)

    def test_server_closing_during_handshake(self):
        listener_sock = socket.socket()
        listener_sock.bind(("127.0.0.1", 0))
        listener_sock.listen(1)
        self.addCleanup(listener_sock.close)

        def accept_and_close() -> None:
            conn, _ = listener_sock.accept()
            conn.close()

        thread = threading.Thread(target=accept_and_close, daemon=True)
        thread.start()
        client = SecureChannelClient(RecordingListener(), rekey_interval=None)
        with self.assertRaises(HandshakeFailure):
            client.connect("127.0.0.1", listener_sock.getsockname()[1])
        self.assertFalse(client.connected)
        thread.join(timeout=TIMEOUT)


if __name__ == "__main__":
    unittest.main()
