# shared.py - Shared cryptographic utilities and protocol definitions
# pylint: disable=trailing-whitespace, line-too-long
"""
Everything the client and the server have in common: the handshake, the sealed
sessions, the frame codec and the per-connection engine that runs the receive
and key-rotation loops.
"""
import logging
import os
import socket
import struct
import tempfile
import threading
from collections.abc import Generator
from enum import IntEnum, unique
from typing import BinaryIO, Final

import config_manager
import configs
assert config_manager  # silence unused import warning

try:
    from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
    from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.kdf.hkdf import HKDF
    from cryptography.exceptions import InvalidTag
except ImportError as exc_:
    print("Required cryptographic libraries not found.")
    raise ImportError("Please install the required libraries with pip install -e .") from exc_

logger = logging.getLogger(__name__)

# Protocol constants
PUBLIC_KEY_SIZE: Final[int] = 32
KEY_SIZE: Final[int] = 32
NONCE_SIZE: Final[int] = 12
TAG_SIZE: Final[int] = 16
MAX_COUNTER: Final[int] = 2 ** 64 - 1
MAX_FILENAME_BYTES: Final[int] = 0xFFFF

CLIENT_TO_SERVER_LABEL: Final[bytes] = b"cryptotunnel client->server"
SERVER_TO_CLIENT_LABEL: Final[bytes] = b"cryptotunnel server->client"

_INT32 = struct.Struct("!i")
_INT64 = struct.Struct("!q")
_UINT16 = struct.Struct("!H")
_COUNTER = struct.Struct("!Q")


@unique
class FrameType(IntEnum):
    MESSAGE = 0
    FILE = 1

    # Key rotation, one direction at a time
    REKEY_INIT = 2
    REKEY_RESPONSE = 3
    REKEY_COMMIT = 4


class TunnelError(Exception):
    """Base class for every error raised by the tunnel."""


class HandshakeFailure(TunnelError):
    """The peer went away or sent unusable key material before a key was agreed."""


class AuthenticationFailure(TunnelError):
    """A sealed payload failed tag verification. The connection can not be trusted after this."""


class NonceExhausted(TunnelError):
    """The nonce counter for the current key has run out."""


class TransportFailure(TunnelError, ConnectionError):
    """I/O on the underlying stream failed or the peer closed it."""


class ProtocolDesyncFailure(TransportFailure):
    """The byte stream no longer lines up with the frame format."""


class ChannelListener:
    """
    Receives everything a connection decodes.

    Subclass and override both methods. They are called from the connection's
    receive thread, one frame at a time, in wire order.
    """

    def on_message(self, text: str) -> None:
        raise NotImplementedError

    def on_file_received(self, path: str) -> None:
        raise NotImplementedError


class ConsoleListener(ChannelListener):
    """Prints received traffic, used by the interactive entry points."""

    def __init__(self, prefix: str = "Peer") -> None:
        self.prefix = prefix

    def on_message(self, text: str) -> None:
        print(f"{self.prefix}: {text}")

    def on_file_received(self, path: str) -> None:
        print(f"[SYSTEM] {self.prefix} sent a file, saved to {path}")


# Key agreement
def derive_session_key(shared_secret: bytes) -> bytes:
    """Derive the 32-byte session key from a raw X25519 shared secret (HKDF-SHA256, no salt, no info)."""
    hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=None
    )
    return hkdf.derive(shared_secret)


def derive_direction_key(session_key: bytes, label: bytes) -> bytes:
    """Derive the key one direction of a connection seals with."""
    hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=None,
            info=label
    )
    return hkdf.derive(session_key)


def direction_labels(initiator: bool) -> tuple[bytes, bytes]:
    """Return (outbound label, inbound label) for the side that did or did not open the connection."""
    if initiator:
        return CLIENT_TO_SERVER_LABEL, SERVER_TO_CLIENT_LABEL
    return SERVER_TO_CLIENT_LABEL, CLIENT_TO_SERVER_LABEL


def direction_keys(session_key: bytes, initiator: bool) -> tuple[bytes, bytes]:
    """Return (outbound key, inbound key) for one side of a connection."""
    outbound_label, inbound_label = direction_labels(initiator)
    return derive_direction_key(session_key, outbound_label), derive_direction_key(session_key, inbound_label)


def agree(private_key: X25519PrivateKey, peer_public_bytes: bytes) -> bytes:
    """
    Run X25519 against the peer's public key and derive the session key.

    The raw shared secret is zeroed as soon as the key has been derived.

    Raises:
        HandshakeFailure: If the peer's key is malformed or a low-order point.
    """
    if len(peer_public_bytes) != PUBLIC_KEY_SIZE:
        raise HandshakeFailure(f"Peer public key must be {PUBLIC_KEY_SIZE} bytes, got {len(peer_public_bytes)}")
    try:
        peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
        shared_secret = bytearray(private_key.exchange(peer_public_key))
    except ValueError as e:
        raise HandshakeFailure(f"Peer sent invalid key material: {e}") from e

    try:
        return derive_session_key(bytes(shared_secret))
    finally:
        # This may or may not actually remove it from memory but it's better than nothing
        shared_secret[:] = bytes(len(shared_secret))


def perform_handshake(sock: socket.socket, timeout: float | None = configs.HANDSHAKE_TIMEOUT) -> bytes:
    """
    Exchange ephemeral X25519 public keys over ``sock`` and return the session key.

    Both sides write their key before blocking on the peer's, so the exchange
    never deadlocks regardless of which side calls first.

    Args:
        sock: A connected stream socket.
        timeout: Seconds to wait for the peer's key, or None to wait forever.

    Returns:
        bytes: The 32-byte session key.

    Raises:
        HandshakeFailure: If the transport fails, times out or closes before both
            keys are exchanged, or the peer's key is unusable.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes_raw()

    previous_timeout = sock.gettimeout()
    try:
        sock.settimeout(timeout)
        sock.sendall(public_bytes)
        peer_public_bytes = recv_exact(sock, PUBLIC_KEY_SIZE)
    except (OSError, TransportFailure) as e:
        raise HandshakeFailure(f"Handshake failed: {e}") from e
    finally:
        try:
            sock.settimeout(previous_timeout)
        except OSError:
            # ignore: the socket is already dead and the error above says why
            pass

    session_key = agree(private_key, peer_public_bytes)
    del private_key
    return session_key


# Sealing
def build_nonce(counter: int) -> bytes:
    """Encode a counter as a 12-byte nonce: big-endian counter in bytes 0-8, zeros in 8-12."""
    return _COUNTER.pack(counter) + bytes(NONCE_SIZE - _COUNTER.size)


class SecureSession:
    """
    One direction of a connection: the current key and its nonce counter.

    Key and counter are only ever read or changed together under ``lock``, so a
    counter value is never spent twice under one key and never spent under a
    key it was not meant for. The lock is re-entrant; writers hold it across
    seal and send so frames hit the wire in the order they were sealed.

    The counter starts at 0 for every key and only resets when the key changes.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Session key must be {KEY_SIZE} bytes")
        self.lock: threading.RLock = threading.RLock()
        self._cipher: ChaCha20Poly1305 = ChaCha20Poly1305(key)
        self._counter: int = 0
        self._epoch: int = 0

    @property
    def counter(self) -> int:
        """The counter the next seal or open will use."""
        with self.lock:
            return self._counter

    @property
    def epoch(self) -> int:
        """How many times the key has been rotated."""
        with self.lock:
            return self._epoch

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt and authenticate ``plaintext`` under the current key and the next nonce."""
        with self.lock:
            if self._counter > MAX_COUNTER:
                raise NonceExhausted("Nonce counter exhausted, the key must be rotated")
            ciphertext = self._cipher.encrypt(build_nonce(self._counter), plaintext, None)
            self._counter += 1
            return ciphertext

    def open(self, ciphertext: bytes) -> bytes:
        """
        Authenticate and decrypt ``ciphertext`` with the next expected nonce.

        Raises:
            AuthenticationFailure: If the tag does not verify. The counter is not
                advanced.
        """
        with self.lock:
            if self._counter > MAX_COUNTER:
                raise NonceExhausted("Nonce counter exhausted, the key must be rotated")
            try:
                plaintext = self._cipher.decrypt(build_nonce(self._counter), ciphertext, None)
            except InvalidTag as e:
                raise AuthenticationFailure(f"Authentication failed for frame {self._counter}") from e
            self._counter += 1
            return plaintext

    def rotate(self, new_key: bytes) -> None:
        """Atomically replace the key and restart the counter at 0."""
        if len(new_key) != KEY_SIZE:
            raise ValueError(f"Session key must be {KEY_SIZE} bytes")
        with self.lock:
            self._cipher = ChaCha20Poly1305(new_key)
            self._counter = 0
            self._epoch += 1


# Framing
def recv_exact(sock: socket.socket, length: int) -> bytes:
    """Read exactly ``length`` bytes or raise TransportFailure."""
    data = bytearray()
    while len(data) < length:
        try:
            chunk = sock.recv(length - len(data))
        except OSError as e:
            raise TransportFailure(f"Receive failed: {e}") from e
        if not chunk:
            raise TransportFailure("Connection closed")
        data += chunk
    return bytes(data)


def send_all(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError as e:
        raise TransportFailure(f"Send failed: {e}") from e


def encode_string(text: str) -> bytes:
    """Length-prefixed UTF-8: unsigned 16-bit length, then the bytes."""
    raw = text.encode("utf-8")
    if len(raw) > MAX_FILENAME_BYTES:
        raise ValueError(f"String too long for the wire: {len(raw)} bytes")
    return _UINT16.pack(len(raw)) + raw


def encode_sealed(ciphertext: bytes) -> bytes:
    return _INT32.pack(len(ciphertext)) + ciphertext


def read_int32(sock: socket.socket) -> int:
    return _INT32.unpack(recv_exact(sock, _INT32.size))[0]


def read_int64(sock: socket.socket) -> int:
    return _INT64.unpack(recv_exact(sock, _INT64.size))[0]


def read_string(sock: socket.socket) -> str:
    length = _UINT16.unpack(recv_exact(sock, _UINT16.size))[0]
    try:
        return recv_exact(sock, length).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolDesyncFailure("Filename is not valid UTF-8") from e


def read_sealed(sock: socket.socket, max_size: int = configs.MAX_FRAME_SIZE) -> bytes:
    """Read one ``int32 length, bytes[length]`` sealed payload."""
    length = read_int32(sock)
    if length < TAG_SIZE or length > max_size:
        raise ProtocolDesyncFailure(f"Invalid sealed payload length: {length}")
    return recv_exact(sock, length)


def read_frame_type(sock: socket.socket) -> FrameType:
    value = read_int32(sock)
    try:
        return FrameType(value)
    except ValueError as e:
        raise ProtocolDesyncFailure(f"Unknown frame type: {value}") from e


def write_message(sock: socket.socket, session: SecureSession, text: str) -> None:
    """Seal ``text`` as one AEAD operation and send it as a MESSAGE frame."""
    with session.lock:
        ciphertext = session.seal(text.encode("utf-8"))
        send_all(sock, _INT32.pack(FrameType.MESSAGE) + encode_sealed(ciphertext))


def read_message(sock: socket.socket, session: SecureSession) -> str:
    """Read the body of a MESSAGE frame whose type has already been consumed."""
    plaintext = session.open(read_sealed(sock))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolDesyncFailure("Message is not valid UTF-8") from e


def write_control(sock: socket.socket, session: SecureSession, frame_type: FrameType, payload: bytes) -> None:
    """Seal and send a key-rotation frame."""
    with session.lock:
        ciphertext = session.seal(payload)
        send_all(sock, _INT32.pack(frame_type) + encode_sealed(ciphertext))


def read_control(sock: socket.socket, session: SecureSession) -> bytes:
    return session.open(read_sealed(sock))


def iter_file_chunks(file: BinaryIO, size: int, chunk_size: int = configs.CHUNK_SIZE) -> Generator[bytes, None, None]:
    """Yield exactly ``size`` bytes of ``file`` in chunks of at most ``chunk_size``.

    Raises:
        TransportFailure: If the file ends or can not be read before ``size``
            bytes were produced. The frame header is already on the wire by then.
    """
    remaining = size
    while remaining > 0:
        try:
            chunk = file.read(min(chunk_size, remaining))
        except OSError as e:
            raise TransportFailure(f"Reading file failed during transfer: {e}") from e
        if not chunk:
            raise TransportFailure(f"File shrank during transfer, {remaining} bytes missing")
        remaining -= len(chunk)
        yield chunk


def write_file(sock: socket.socket, session: SecureSession, file_path: str,
               chunk_size: int = configs.CHUNK_SIZE) -> None:
    """
    Send a file as a FILE frame: the header once, then one sealed chunk per
    ``chunk_size`` plaintext bytes.

    The whole transfer holds the session lock, so no other frame can land
    between the header and the last chunk.
    """
    filename = os.path.basename(file_path)
    header_name = encode_string(filename)
    with open(file_path, "rb") as f:
        file_size = os.fstat(f.fileno()).st_size
        with session.lock:
            send_all(sock, _INT32.pack(FrameType.FILE) + header_name + _INT64.pack(file_size))
            for chunk in iter_file_chunks(f, file_size, chunk_size):
                send_all(sock, encode_sealed(session.seal(chunk)))


def received_file_path(receive_dir: str, filename: str) -> str:
    """Where a received file named ``filename`` is written. Directory parts sent by the peer are dropped."""
    name = os.path.basename(filename.replace("\\", "/"))
    if name in ("", ".", ".."):
        name = "file"
    return os.path.join(receive_dir, configs.RECEIVED_FILE_PREFIX + name)


def _safe_remove(path: str) -> None:
    """Remove a file path, ignoring errors."""
    try:
        os.remove(path)
    except OSError:
        pass


def read_file(sock: socket.socket, session: SecureSession, receive_dir: str = configs.RECEIVE_DIR) -> str:
    """
    Read the body of a FILE frame whose type has already been consumed.

    Chunks are opened one at a time and appended to a uniquely named ``.part``
    file in ``receive_dir`` until the announced size is reached, then the file
    is moved into place. Concurrent transfers of the same name each get their
    own partial file; the last one to finish owns the final path.
    ``receive_dir`` is created if it does not exist.

    Returns:
        str: Path of the completed file.
    """
    filename = read_string(sock)
    total_size = read_int64(sock)
    if total_size < 0:
        raise ProtocolDesyncFailure(f"Invalid file size: {total_size}")

    output_path = received_file_path(receive_dir, filename)
    os.makedirs(receive_dir, exist_ok=True)
    part_file = tempfile.NamedTemporaryFile(
            mode="wb",
            dir=receive_dir,
            prefix=os.path.basename(output_path) + ".",
            suffix=".part",
            delete=False
    )
    part_path = part_file.name
    received = 0
    try:
        with part_file:
            while received < total_size:
                plaintext = session.open(read_sealed(sock))
                received += len(plaintext)
                if received > total_size:
                    raise ProtocolDesyncFailure(f"File chunks exceed announced size of {total_size} bytes")
                part_file.write(plaintext)
        os.replace(part_path, output_path)
    except Exception:
        _safe_remove(part_path)
        raise
    return output_path


# noinspection PyBroadException
class SecureConnection:
    """
    One established tunnel connection, used by both the client and the server.

    Runs a single reader over the socket and an optional key rotation timer.
    Each direction has its own SecureSession. Only the reader touches the
    inbound session; senders and rotation share the outbound one through its lock.

    Key rotation is per direction and always started by the sending side:

    1. the sender sends REKEY_INIT with a fresh public key, under the old key;
    2. the receiver derives the new key, keeps it pending and answers with
       REKEY_RESPONSE carrying its own fresh public key;
    3. the sender derives the same key, sends REKEY_COMMIT under the old key and
       switches; the receiver switches when it reads the commit.

    Both counters restart at 0 on the new key.
    """

    def __init__(self, sock: socket.socket, session_key: bytes, listener: ChannelListener, *,
                 initiator: bool, rekey_interval: float | None = configs.REKEY_INTERVAL,
                 receive_dir: str = configs.RECEIVE_DIR, chunk_size: int = configs.CHUNK_SIZE,
                 name: str = "") -> None:
        """
        Args:
            sock: The connected socket, handshake already done.
            session_key: Key returned by perform_handshake().
            listener: Receives decoded messages and files.
            initiator: True on the side that opened the connection (the client).
            rekey_interval: Seconds between outbound key rotations, None to disable the timer.
            receive_dir: Directory received files are written to.
            chunk_size: Plaintext bytes per sealed file chunk when sending.
            name: Used in log lines.
        """
        self.socket: socket.socket = sock
        self.listener: ChannelListener = listener
        self.rekey_interval: float | None = rekey_interval
        self.receive_dir: str = receive_dir
        self.chunk_size: int = chunk_size
        self.name: str = name or "peer"

        self._outbound_label, self._inbound_label = direction_labels(initiator)
        outbound_key, inbound_key = direction_keys(session_key, initiator)
        self.outbound: SecureSession = SecureSession(outbound_key)
        self.inbound: SecureSession = SecureSession(inbound_key)

        # Rekey state
        self._rekey_lock: threading.Lock = threading.Lock()
        self._rekey_private: X25519PrivateKey | None = None
        self._outbound_rekey_pending: bool = False
        self._pending_inbound_key: bytes | None = None

        # Threads
        self._closed: threading.Event = threading.Event()
        self.receive_thread: threading.Thread | None = None
        self.rekey_thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return not self._closed.is_set()

    @property
    def rekey_pending(self) -> bool:
        """Whether an outbound rotation has been started but not committed."""
        with self._rekey_lock:
            return self._outbound_rekey_pending

    def start(self) -> None:
        """Run the receive loop in a background thread."""
        if self.receive_thread is None:
            self.receive_thread = threading.Thread(target=self.run, name=f"receive-{self.name}")
            self.receive_thread.daemon = True
            self.receive_thread.start()

    def start_rekey(self) -> None:
        """Start the key rotation timer, unless rotation is disabled."""
        if self.rekey_interval is None or self.rekey_thread is not None:
            return
        self.rekey_thread = threading.Thread(target=self._rekey_loop, name=f"rekey-{self.name}")
        self.rekey_thread.daemon = True
        self.rekey_thread.start()

    def run(self) -> None:
        """Read and dispatch frames until the connection fails or is closed."""
        try:
            while not self._closed.is_set():
                self._handle_frame(read_frame_type(self.socket))
        except AuthenticationFailure as e:
            logger.error("Dropping %s: %s", self.name, e)
        except ProtocolDesyncFailure as e:
            logger.error("Dropping %s, protocol error: %s", self.name, e)
        except TransportFailure as e:
            if self.connected:
                logger.info("Connection to %s lost: %s", self.name, e)
        except TunnelError as e:
            logger.error("Dropping %s: %s", self.name, e)
        except Exception:
            logger.exception("Unexpected error on connection to %s", self.name)
        finally:
            self.close()

    def _handle_frame(self, frame_type: FrameType) -> None:
        if frame_type == FrameType.MESSAGE:
            text = read_message(self.socket, self.inbound)
            self._deliver(self.listener.on_message, text)
        elif frame_type == FrameType.FILE:
            path = read_file(self.socket, self.inbound, self.receive_dir)
            self._deliver(self.listener.on_file_received, path)
        elif frame_type == FrameType.REKEY_INIT:
            self._handle_rekey_init(read_control(self.socket, self.inbound))
        elif frame_type == FrameType.REKEY_RESPONSE:
            self._handle_rekey_response(read_control(self.socket, self.inbound))
        elif frame_type == FrameType.REKEY_COMMIT:
            read_control(self.socket, self.inbound)
            self._handle_rekey_commit()

    def _deliver(self, callback, value: str) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("Listener failed to handle data from %s", self.name)

    def send_message(self, text: str) -> None:
        """Seal and send a text message.

        Raises:
            TransportFailure: If the connection is closed or the send fails. A
                failed send closes the connection.
        """
        self._ensure_connected()
        try:
            write_message(self.socket, self.outbound, text)
        except TransportFailure:
            self.close()
            raise

    def send_file(self, file_path: str) -> None:
        """Stream a file to the peer, one sealed chunk per ``chunk_size`` bytes.

        Raises:
            OSError: If the file can not be opened. Nothing is sent in that case.
            TransportFailure: If the connection is closed or the send fails.
        """
        self._ensure_connected()
        try:
            write_file(self.socket, self.outbound, file_path, self.chunk_size)
        except TransportFailure:
            self.close()
            raise

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise TransportFailure(f"Connection to {self.name} is closed")

    # Key rotation
    def rotate_key(self) -> bool:
        """
        Start rotating the outbound key.

        Returns:
            bool: False if a previous rotation has not been committed yet, in
            which case nothing is sent and the current key stays in use.

        Raises:
            TransportFailure: If the connection is closed or the send fails. A
                failed send closes the connection.
        """
        self._ensure_connected()
        with self._rekey_lock:
            if self._outbound_rekey_pending:
                return False
            self._outbound_rekey_pending = True
            self._rekey_private = X25519PrivateKey.generate()
            public_bytes = self._rekey_private.public_key().public_bytes_raw()

        try:
            write_control(self.socket, self.outbound, FrameType.REKEY_INIT, public_bytes)
        except TunnelError as e:
            with self._rekey_lock:
                self._outbound_rekey_pending = False
                self._rekey_private = None
            if isinstance(e, TransportFailure):
                self.close()
            raise
        return True

    def _rekey_loop(self) -> None:
        """Rotate the outbound key every ``rekey_interval`` seconds until the connection closes."""
        while not self._closed.wait(self.rekey_interval):
            try:
                if not self.rotate_key():
                    logger.warning("Previous key rotation with %s still pending, keeping current key", self.name)
            except TunnelError as e:
                if not self.connected:
                    break
                logger.warning("Key rotation with %s failed, keeping current key: %s", self.name, e)
            except Exception:
                logger.exception("Key rotation with %s failed, keeping current key", self.name)

    def _handle_rekey_init(self, peer_public_bytes: bytes) -> None:
        private_key = X25519PrivateKey.generate()
        try:
            new_key = derive_direction_key(agree(private_key, peer_public_bytes), self._inbound_label)
        except HandshakeFailure as e:
            raise ProtocolDesyncFailure(f"Invalid rekey init: {e}") from e

        with self._rekey_lock:
            if self._pending_inbound_key is not None:
                raise ProtocolDesyncFailure("Rekey init received while a previous one is uncommitted")
            self._pending_inbound_key = new_key

        reply = private_key.public_key().public_bytes_raw()
        del private_key
        self._send_in_background(self._send_rekey_response, reply)

    def _handle_rekey_response(self, peer_public_bytes: bytes) -> None:
        with self._rekey_lock:
            private_key = self._rekey_private
            self._rekey_private = None
        if private_key is None:
            raise ProtocolDesyncFailure("Unsolicited rekey response")

        try:
            new_key = derive_direction_key(agree(private_key, peer_public_bytes), self._outbound_label)
        except HandshakeFailure as e:
            raise ProtocolDesyncFailure(f"Invalid rekey response: {e}") from e
        del private_key
        self._send_in_background(self._commit_outbound_key, new_key)

    def _handle_rekey_commit(self) -> None:
        with self._rekey_lock:
            new_key = self._pending_inbound_key
            self._pending_inbound_key = None
        if new_key is None:
            raise ProtocolDesyncFailure("Rekey commit without a pending key")
        self.inbound.rotate(new_key)
        logger.debug("Inbound key from %s rotated", self.name)

    def _send_in_background(self, target, payload: bytes) -> None:
        """
        Run one rekey reply on its own daemon thread.

        The reader must not wait on the outbound lock, a long file send may hold
        it. These threads are not tracked or joined: each one ends as soon as
        its single write returns, or fails because the socket was closed.
        """
        thread = threading.Thread(target=target, args=(payload,), name=f"rekey-reply-{self.name}")
        thread.daemon = True
        thread.start()

    def _send_rekey_response(self, public_bytes: bytes) -> None:
        try:
            write_control(self.socket, self.outbound, FrameType.REKEY_RESPONSE, public_bytes)
        except TunnelError as e:
            logger.warning("Could not answer key rotation from %s: %s", self.name, e)
            self.close()

    def _commit_outbound_key(self, new_key: bytes) -> None:
        try:
            with self.outbound.lock:
                write_control(self.socket, self.outbound, FrameType.REKEY_COMMIT, b"")
                self.outbound.rotate(new_key)
            logger.debug("Outbound key to %s rotated", self.name)
        except TunnelError as e:
            logger.warning("Could not commit key rotation with %s: %s", self.name, e)
            self.close()
        finally:
            with self._rekey_lock:
                self._outbound_rekey_pending = False

    def close(self) -> None:
        """Close the socket. The receive loop and the rotation timer stop on their own."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # ignore: closing a dead socket
            pass
        try:
            self.socket.close()
        except OSError:
            pass
