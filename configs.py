"""
Here are the static settings for the tunnel.
Each setting has a comment explaining what it does and its default value below it.

These are settings that are not intended to be changed during runtime.
Per-deployment values (host, port, rotation interval, receive directory) live in
config.json, see config_handler.py. The values here are the defaults for those.
"""
from typing import Final

### NETWORK
HOST: Final[str] = "0.0.0.0"
# Address the server binds to, and the default address the client connects to.
# Default: "0.0.0.0"

PORT: Final[int] = 16384
# TCP port the server listens on.
# Default: 16384
# Range: 1 - 65535

CONNECT_TIMEOUT: Final[float] = 10.0
# Seconds the client waits for the TCP connection to be established.
# Default: 10.0

HANDSHAKE_TIMEOUT: Final[float] = 10.0
# Seconds either side waits for the peer's public key during the handshake.
# Default: 10.0


### SECURITY
REKEY_INTERVAL: Final[int] = 60
# Seconds between automatic rotations of a connection's outbound key.
# Each side rotates its own sending direction on this interval.
# Default: 60
# Range: 1 - 86400


### FILE TRANSFER
CHUNK_SIZE: Final[int] = 1024
# Plaintext bytes sealed per file chunk. Every chunk is one AEAD operation.
# Default: 1024
# Range: 1 - 1048576

RECEIVE_DIR: Final[str] = "."
# Directory received files are written to.
# Default: "." (the working directory)

RECEIVED_FILE_PREFIX: Final[str] = "recv_"
# Prefix added to the name of every received file.
# Default: "recv_"


## ADVANCED SETTINGS
# Don't change these unless you know what you're doing

MAX_FRAME_SIZE: Final[int] = 16 * 1024 * 1024
# Largest sealed payload (message or file chunk) accepted from a peer, in bytes.
# Anything larger is treated as a framing error and drops the connection.
# Default: 16 MiB
