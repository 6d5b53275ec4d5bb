"""
Raz - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Raz application. Each error has a unique code for logging and debugging.
Room errors additionally carry a lobby reason code that the boundary hands
back to clients instead of a raw exception.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional, Type


class ErrorCode(Enum):
    """Enumeration of all Raz error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E107_RATCHET_ERROR = "E107"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Realtime Errors (E200-E299)
    E200_REALTIME_ERROR = "E200"
    E201_REALTIME_UNAVAILABLE = "E201"

    # Room Errors (E500-E599)
    E500_ROOM_ERROR = "E500"
    E501_ROOM_NOT_FOUND = "E501"
    E502_ROOM_FULL = "E502"
    E503_PASSCODE_REQUIRED = "E503"
    E504_PASSCODE_MISSING = "E504"
    E505_FORBIDDEN = "E505"
    E506_NOT_A_MEMBER = "E506"
    E507_INVALID_TRANSITION = "E507"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Server Errors (E800-E899)
    E800_SERVER_ERROR = "E800"
    E801_SERVER_START_FAILED = "E801"
    E804_INVALID_COMMAND = "E804"


class RazError(Exception):
    """Base exception class for all Raz errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class ValidationError(RazError):
    """Exception raised when a request body fails validation."""

    def __init__(
        self,
        message: str = "Invalid argument",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E002_INVALID_ARGUMENT,
    ):
        super().__init__(code, message, details)


class CryptoError(RazError):
    """Exception raised for cryptographic operation failures.

    This includes key derivation, encryption, decryption, and ratchet
    operations.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidKeyMaterial(CryptoError):
    """Key material has the wrong type or length."""

    def __init__(
        self,
        message: str = "Invalid key material",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E103_INVALID_KEY,
    ):
        super().__init__(code, message, details)


class AuthenticationFailed(CryptoError):
    """AEAD integrity check failed: tampered ciphertext or wrong key."""

    def __init__(
        self,
        message: str = "Message authentication failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
    ):
        super().__init__(code, message, details)


class RatchetDesync(CryptoError):
    """A message step does not match the locally expected step."""

    def __init__(
        self,
        message: str = "Ratchet out of sync",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E107_RATCHET_ERROR,
    ):
        super().__init__(code, message, details)


class RealtimeUnavailable(RazError):
    """Exception raised when the fan-out channel cannot deliver an event.

    Fan-out is best-effort: callers log this and carry on.
    """

    def __init__(
        self,
        message: str = "Realtime channel unavailable",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E201_REALTIME_UNAVAILABLE,
    ):
        super().__init__(code, message, details)


class RoomError(RazError):
    """Exception raised for room lifecycle and admission failures.

    Attributes:
        reason: Machine-readable lobby reason code
    """

    reason = "room-error"

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_ROOM_ERROR,
        message: str = "Room operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class RoomNotFound(RoomError):
    """The room does not exist, was destroyed, or has expired."""

    reason = "room-not-found"

    def __init__(
        self,
        message: str = "Room does not exist",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E501_ROOM_NOT_FOUND,
    ):
        super().__init__(code, message, details)


class RoomFull(RoomError):
    """The room is at capacity."""

    reason = "room-full"

    def __init__(
        self,
        message: str = "Room is full",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E502_ROOM_FULL,
    ):
        super().__init__(code, message, details)


class PasscodeRequired(RoomError):
    """A group room join did not present the correct passcode."""

    reason = "passcode-required"

    def __init__(
        self,
        message: str = "Room passcode required",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E503_PASSCODE_REQUIRED,
    ):
        super().__init__(code, message, details)


class PasscodeMissing(RoomError):
    """A group room was requested without a passcode."""

    reason = "passcode-missing"

    def __init__(
        self,
        message: str = "Passcode required for group rooms",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E504_PASSCODE_MISSING,
    ):
        super().__init__(code, message, details)


class Forbidden(RoomError):
    """The caller is not allowed to perform the operation."""

    reason = "forbidden"

    def __init__(
        self,
        message: str = "Only the room owner can destroy this room",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E505_FORBIDDEN,
    ):
        super().__init__(code, message, details)


class NotAMember(RoomError):
    """The caller's membership token is not in the room's connected set."""

    reason = "not-a-member"

    def __init__(
        self,
        message: str = "Missing or unknown membership token",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E506_NOT_A_MEMBER,
    ):
        super().__init__(code, message, details)


class ConfigError(RazError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ServerError(RazError):
    """Exception raised for server operation failures.

    This includes server startup, shutdown, and command processing errors.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_SERVER_ERROR,
        message: str = "Server operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


# Most specific class first for each code
_ERRORS_BY_CODE: Dict[str, Type[RazError]] = {
    ErrorCode.E002_INVALID_ARGUMENT.value: ValidationError,
    ErrorCode.E103_INVALID_KEY.value: InvalidKeyMaterial,
    ErrorCode.E102_DECRYPTION_FAILED.value: AuthenticationFailed,
    ErrorCode.E107_RATCHET_ERROR.value: RatchetDesync,
    ErrorCode.E201_REALTIME_UNAVAILABLE.value: RealtimeUnavailable,
    ErrorCode.E501_ROOM_NOT_FOUND.value: RoomNotFound,
    ErrorCode.E502_ROOM_FULL.value: RoomFull,
    ErrorCode.E503_PASSCODE_REQUIRED.value: PasscodeRequired,
    ErrorCode.E504_PASSCODE_MISSING.value: PasscodeMissing,
    ErrorCode.E505_FORBIDDEN.value: Forbidden,
    ErrorCode.E506_NOT_A_MEMBER.value: NotAMember,
}


def error_from_dict(data: Dict[str, Any]) -> RazError:
    """Rebuild an exception from its serialized form.

    Args:
        data: Dictionary produced by RazError.to_dict()

    Returns:
        Instance of the matching RazError subclass
    """
    code_value = data.get("code", ErrorCode.E001_UNKNOWN_ERROR.value)
    message = data.get("message", "Unknown error")
    details = data.get("details") or {}

    error_class = _ERRORS_BY_CODE.get(code_value)
    if error_class is not None:
        return error_class(message=message, details=details)

    try:
        code = ErrorCode(code_value)
    except ValueError:
        code = ErrorCode.E001_UNKNOWN_ERROR
    return RazError(code, message, details)
