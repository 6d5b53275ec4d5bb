"""
Raz - Global Constants and Configuration Values

This module defines all constants used throughout the Raz application.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Raz"
AUTHOR = "orpheus497"

# Network Constants
DEFAULT_SERVER_PORT = 5820
DEFAULT_HOST = "127.0.0.1"
CLIENT_IDLE_TIMEOUT = 60.0  # seconds a server waits on a silent client read
CLIENT_CONNECT_TIMEOUT = 5.0  # seconds
CLIENT_REQUEST_TIMEOUT = 30.0  # seconds
READ_CHUNK_SIZE = 4096

# Room Lifecycle
ROOM_TTL_SECONDS = 60 * 10
PAIR_ROOM_CAPACITY = 2
GROUP_ROOM_CAPACITY = 12
MAX_PASSCODE_LENGTH = 100

# Message Limits
MAX_SENDER_TOKEN_LENGTH = 256
MAX_CIPHERTEXT_LENGTH = 5000
MAX_IV_LENGTH = 200

# Store Key Layout (per room)
META_KEY = "meta:{room_id}"
MESSAGES_KEY = "messages:{room_id}"
HISTORY_KEY = "history:{room_id}"
ROOM_KEY = "{room_id}"

# Store TTL sentinels (Redis semantics)
TTL_MISSING = -2
TTL_PERSISTENT = -1

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM and HMAC-SHA256
NONCE_SIZE = 12  # 96 bits for AES-GCM
SECRET_SIZE = 32  # bytes of entropy in a generated room secret
ROOT_KEY_INFO = b"raz-e2e-root"
ROOT_KEY_SALT = bytes(32)  # constant, non-secret
MEMBERSHIP_TOKEN_BYTES = 16
ROOM_ID_BYTES = 16
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"

# Argon2id passcode hashing
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 4

# File Paths
DEFAULT_DATA_DIR = "~/.raz"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "raz.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Room State Machine
STATE_MAX_HISTORY = 100

# Protocol Version
PROTOCOL_VERSION = "1.0"
