"""
Raz - Symmetric Hash Ratchet Implementation

This module implements the per-sender hash ratchet used for forward secrecy
in room messaging.

Each message advances its sender's chain:

    key_{n+1} = HMAC-SHA256(key_n, iv_n)

where iv_n is the random nonce message n was encrypted under. Once a key has
been advanced it cannot be recovered from the next one, so a leaked later key
does not expose earlier plaintexts.

The chain is strictly sequential. There is no skip or rollback; an observer
who missed messages replays the sender's full ordered history from step 0.

Author: orpheus497
Version: 1.0.0
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from . import crypto
from .constants import DECRYPTION_FAILED_PLACEHOLDER, KEY_SIZE, NONCE_SIZE
from .errors import AuthenticationFailed, InvalidKeyMaterial, RatchetDesync

logger = logging.getLogger(__name__)


def ratchet_forward(current_key: bytes, iv: bytes) -> bytes:
    """Advance a chain key by one step.

    Args:
        current_key: Key used for the current step
        iv: Nonce the current step's message was encrypted under

    Returns:
        Key for the next step

    Raises:
        InvalidKeyMaterial: If the key or nonce has the wrong length
    """
    if not isinstance(current_key, (bytes, bytearray)) or len(current_key) != KEY_SIZE:
        raise InvalidKeyMaterial(f"Chain key must be {KEY_SIZE} bytes")
    if not isinstance(iv, (bytes, bytearray)) or len(iv) != NONCE_SIZE:
        raise InvalidKeyMaterial(f"Ratchet nonce must be {NONCE_SIZE} bytes")

    return hmac.new(bytes(current_key), bytes(iv), hashlib.sha256).digest()


@dataclass
class EncryptedPayload:
    """Wire form of one encrypted message."""

    ciphertext: str
    iv: str
    step: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ciphertext": self.ciphertext, "iv": self.iv, "step": self.step}


def encrypt_with_ratchet(
    plaintext: str, current_key: bytes, step: int
) -> Tuple[EncryptedPayload, bytes]:
    """Encrypt a message at the given step and derive the next chain key.

    Args:
        plaintext: Message text
        current_key: Chain key for this step
        step: Sender-local step number of this message

    Returns:
        Tuple of (payload, next_key)
    """
    ciphertext, iv = crypto.encrypt(plaintext, current_key)
    next_key = ratchet_forward(current_key, iv)

    payload = EncryptedPayload(
        ciphertext=crypto.encode_base64(ciphertext),
        iv=crypto.encode_base64(iv),
        step=step,
    )
    logger.debug(f"Encrypted message at step {step}")
    return payload, next_key


def decrypt_with_ratchet(ciphertext: str, iv: str, key: bytes) -> str:
    """Decrypt a wire payload with the chain key of its step.

    Raises:
        AuthenticationFailed: If the payload is malformed, tampered with, or
            the key belongs to a different step
    """
    plaintext = crypto.decrypt(crypto.decode_base64(ciphertext), crypto.decode_base64(iv), key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationFailed("Decrypted payload is not valid UTF-8") from e


@dataclass
class RatchetState:
    """Ratchet state for one sender as seen by one observer.

    Attributes:
        key: Chain key for the next expected step
        step: Next expected step number
    """

    key: bytes
    step: int = 0

    def advance(self, iv: bytes) -> None:
        """Move forward by exactly one step."""
        self.key = ratchet_forward(self.key, iv)
        self.step += 1

    def decrypt_next(self, message: Any) -> str:
        """Decrypt the message at the expected step and advance past it.

        The state is left untouched when the message cannot be taken.

        Raises:
            RatchetDesync: If the message is not at the expected step
            AuthenticationFailed: If it does not decrypt under this chain key
        """
        if message.step != self.step:
            raise RatchetDesync(
                f"Expected step {self.step}, got {message.step}",
                {"expected": self.step, "step": message.step},
            )

        plaintext = decrypt_with_ratchet(message.ciphertext, message.iv, self.key)
        self.advance(crypto.decode_base64(message.iv))
        return plaintext


class SenderRatchetTable:
    """Keyed table of per-sender ratchet states owned by a client session.

    Entries are a cache, never an authority: any entry can be rebuilt by
    replaying the sender's history from the root key.
    """

    def __init__(self):
        self._states: Dict[str, RatchetState] = {}

    def __contains__(self, sender_token: str) -> bool:
        return sender_token in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, sender_token: str) -> Optional[RatchetState]:
        return self._states.get(sender_token)

    def items(self) -> List[Tuple[str, RatchetState]]:
        return list(self._states.items())

    def ensure(self, sender_token: str, root_key: bytes) -> RatchetState:
        """Get a sender's state, starting a fresh chain at step 0 if absent."""
        state = self._states.get(sender_token)
        if state is None:
            state = RatchetState(key=root_key, step=0)
            self._states[sender_token] = state
        return state

    def set(self, sender_token: str, state: RatchetState) -> None:
        self._states[sender_token] = state

    def expected_step(self, sender_token: str) -> Optional[int]:
        state = self._states.get(sender_token)
        return state.step if state else None

    def reset(self, sender_token: str) -> None:
        """Forget one sender so the next observation forces a replay."""
        self._states.pop(sender_token, None)

    def clear(self) -> None:
        self._states.clear()


@dataclass
class ReplayResult:
    """Outcome of replaying one sender's history.

    Attributes:
        plaintexts: Decrypted text (or placeholder) by message id
        state: Ratchet state after the last stored message
        failed: Ids of messages that could not be decrypted
        sender_name: Display name found in the sender's payloads, if any
    """

    plaintexts: Dict[str, str] = field(default_factory=dict)
    state: Optional[RatchetState] = None
    failed: List[str] = field(default_factory=list)
    sender_name: Optional[str] = None


def parse_payload(plaintext: str) -> Tuple[Optional[str], str]:
    """Split a decrypted envelope into (sender name, text).

    Falls back to the raw plaintext when it is not a JSON envelope.
    """
    try:
        parsed = json.loads(plaintext)
    except (ValueError, TypeError):
        return None, plaintext

    if not isinstance(parsed, dict):
        return None, plaintext

    sender = parsed.get("sender")
    text = parsed.get("text", plaintext)
    return (sender if isinstance(sender, str) else None), (
        text if isinstance(text, str) else plaintext
    )


def replay_sender(root_key: bytes, messages: Iterable[Any]) -> ReplayResult:
    """Replay one sender's stored messages from step 0.

    Messages are sorted by step before replay. A message whose step does not
    match the expected counter is logged as a desync and its step adopted;
    the chain still advances with every stored message's nonce. A message
    that fails to decrypt gets a placeholder and never stops the replay.

    Args:
        root_key: The sender's root key
        messages: Objects with ``id``, ``ciphertext``, ``iv`` and ``step``

    Returns:
        ReplayResult with plaintexts, failures and the final state
    """
    result = ReplayResult()
    key = root_key
    expected_step = 0

    for message in sorted(messages, key=lambda m: m.step):
        if message.step != expected_step:
            logger.warning(
                f"Ratchet desync for message {message.id}: "
                f"expected step {expected_step}, got {message.step}"
            )
            expected_step = message.step

        try:
            plaintext = decrypt_with_ratchet(message.ciphertext, message.iv, key)
            result.plaintexts[message.id] = plaintext
            sender_name, _ = parse_payload(plaintext)
            if sender_name:
                result.sender_name = sender_name
        except AuthenticationFailed:
            logger.debug(f"Could not decrypt message {message.id} at step {message.step}")
            result.plaintexts[message.id] = DECRYPTION_FAILED_PLACEHOLDER
            result.failed.append(message.id)

        try:
            key = ratchet_forward(key, crypto.decode_base64(message.iv))
        except (AuthenticationFailed, InvalidKeyMaterial):
            # Unusable nonce: the chain cannot continue past this message
            logger.warning(f"Message {message.id} carries an unusable nonce")
        expected_step += 1

    result.state = RatchetState(key=key, step=expected_step)
    return result
