"""
Raz - Pseudonymous sender identity.

Created by orpheus497

A sender token groups messages per logical sender for ratchet bookkeeping
without telling the server who sent them. It is a keyed hash of the display
name under the room's root key:

    token = base64(HMAC-SHA256(derive(secret), display_name))

The same (secret, name) pair always maps to the same token; a different name
or secret yields an unlinkable one. A token is not a credential.
"""

import hashlib
import hmac
import logging
from typing import Optional

from .crypto import derive_initial_key, encode_base64
from .errors import InvalidKeyMaterial

logger = logging.getLogger(__name__)


def derive_sender_token(secret: str, display_name: str) -> str:
    """
    Derive the sender token for a display name within a room.

    Args:
        secret: Shared room secret
        display_name: Sender's display name

    Returns:
        Base64 token (44 characters)

    Raises:
        InvalidKeyMaterial: If the secret is empty or the name is not text
    """
    if not isinstance(display_name, str):
        raise InvalidKeyMaterial("Display name must be a string")

    root = derive_initial_key(secret)
    digest = hmac.new(root, display_name.encode("utf-8"), hashlib.sha256).digest()
    return encode_base64(digest)


class SenderIdentity:
    """A display name bound to one room secret."""

    def __init__(self, secret: str, display_name: str):
        self.secret = secret
        self.display_name = display_name
        self._token: Optional[str] = None

    @property
    def token(self) -> str:
        """Sender token, derived once on first use."""
        if self._token is None:
            self._token = derive_sender_token(self.secret, self.display_name)
        return self._token

    def __repr__(self) -> str:
        return f"SenderIdentity(display_name={self.display_name!r})"
