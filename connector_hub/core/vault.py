"""Credential vault: symmetric encryption for connector configuration at rest.

Every configuration blob, OAuth token set and webhook secret passes through
here before it touches the database. Fernet gives authenticated encryption, so
a truncated or tampered ciphertext fails loudly instead of decrypting to
garbage.
"""

import json
from functools import lru_cache
from typing import Any, Dict, Union

from cryptography.fernet import Fernet, InvalidToken

from connector_hub.core.config import settings
from connector_hub.core.exceptions import ConfigurationError, CorruptCredential


class CredentialVault:
    """Encrypts and decrypts opaque payloads with one process-wide key.

    TODO: accept a list of retired keys and re-encrypt on read with
    MultiFernet.rotate() so CONNECTOR_ENCRYPTION_KEY can be rotated without
    operators re-entering credentials.
    """

    def __init__(self, key: Union[str, bytes]):
        if not key:
            raise ConfigurationError("CONNECTOR_ENCRYPTION_KEY is not set")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid CONNECTOR_ENCRYPTION_KEY: {e}")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return the urlsafe-base64 token."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token produced by encrypt().

        Raises:
            CorruptCredential: the token was not produced with the current key,
                or was truncated/tampered with.
        """
        if not ciphertext:
            raise CorruptCredential("Stored credential is empty")
        try:
            token = ciphertext.encode("ascii") if isinstance(ciphertext, str) else ciphertext
            return self._fernet.decrypt(token).decode("utf-8")
        except (InvalidToken, UnicodeError, TypeError) as e:
            raise CorruptCredential("Stored credential could not be decrypted") from e

    def encrypt_json(self, payload: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(payload, sort_keys=True))

    def decrypt_json(self, ciphertext: str) -> Dict[str, Any]:
        plaintext = self.decrypt(ciphertext)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise CorruptCredential("Stored credential is not valid JSON") from e
        if not isinstance(data, dict):
            raise CorruptCredential("Stored credential is not a JSON object")
        return data

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    """Process-wide vault built from settings on first use."""
    return CredentialVault(settings.CONNECTOR_ENCRYPTION_KEY)
