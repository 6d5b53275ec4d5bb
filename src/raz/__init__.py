"""
Raz - Ephemeral End-to-End Encrypted Rooms

Short-lived chat rooms whose messages are encrypted on the sender's device
with a per-sender hash ratchet. The relay server stores only ciphertext and
forgets every room after a bounded lifetime or on explicit destruction.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .admission import AdmissionController, AdmissionDecision, AdmissionOutcome
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    AuthenticationFailed,
    ConfigError,
    CryptoError,
    ErrorCode,
    Forbidden,
    InvalidKeyMaterial,
    NotAMember,
    PasscodeMissing,
    PasscodeRequired,
    RatchetDesync,
    RazError,
    RealtimeUnavailable,
    RoomError,
    RoomFull,
    RoomNotFound,
    ServerError,
    ValidationError,
)
from .message import Message, MessageLog
from .room import RoomMode, RoomSession, RoomState
from .service import RoomService
from .session import RoomClientSession

__all__ = [
    "APP_NAME",
    "VERSION",
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionOutcome",
    "AuthenticationFailed",
    "Config",
    "ConfigError",
    "CryptoError",
    "ErrorCode",
    "Forbidden",
    "InvalidKeyMaterial",
    "Message",
    "MessageLog",
    "NotAMember",
    "PasscodeMissing",
    "PasscodeRequired",
    "RatchetDesync",
    "RazError",
    "RealtimeUnavailable",
    "RoomClientSession",
    "RoomError",
    "RoomFull",
    "RoomMode",
    "RoomNotFound",
    "RoomService",
    "RoomSession",
    "RoomState",
    "ServerError",
    "ValidationError",
    "__author__",
    "__license__",
    "__version__",
]
