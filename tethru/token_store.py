from __future__ import annotations

import base64
import json
import logging
import threading

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tethru.models import CalendarToken
from tethru.state_store import StateStore

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000


def derive_user_key(secret: str, user_id: str) -> bytes:
    """Derive a per-user Fernet key from the service secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=f"{user_id}-tethru-calendar-token-v1".encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class TokenStore:
    """Persists one encrypted CalendarToken per user."""

    def __init__(self, state_store: StateStore, secret: str) -> None:
        if not secret:
            raise ValueError("security.token_secret must be configured to store calendar tokens.")
        self.state_store = state_store
        self._secret = secret
        self._fernets: dict[str, Fernet] = {}
        self._lock = threading.Lock()

    def _fernet(self, user_id: str) -> Fernet:
        with self._lock:
            fernet = self._fernets.get(user_id)
            if fernet is None:
                fernet = Fernet(derive_user_key(self._secret, user_id))
                self._fernets[user_id] = fernet
            return fernet

    def save(self, user_id: str, token: CalendarToken) -> None:
        plaintext = json.dumps(token.to_dict()).encode("utf-8")
        ciphertext = self._fernet(user_id).encrypt(plaintext).decode("ascii")
        self.state_store.save_token_ciphertext(user_id, ciphertext)

    def load(self, user_id: str) -> CalendarToken | None:
        ciphertext = self.state_store.get_token_ciphertext(user_id)
        if ciphertext is None:
            return None
        try:
            plaintext = self._fernet(user_id).decrypt(ciphertext.encode("ascii"))
            return CalendarToken.from_dict(json.loads(plaintext))
        except (InvalidToken, ValueError) as exc:
            # An undecryptable token is unusable; the user has to reconnect.
            logger.warning("Stored calendar token for user %s is unreadable: %s", user_id, type(exc).__name__)
            return None

    def delete(self, user_id: str) -> None:
        self.state_store.delete_token_ciphertext(user_id)
