"""
Symmetric encryption for credentials stored at rest.

Uses Fernet (AES-128-CBC with HMAC). The key lives in a file next to the
database, created with owner-only permissions on first use.
"""
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from mailsync.utils.errors import DecryptionError


def _get_or_create_key(key_path: Path) -> bytes:
    """Read the key file, generating a new key if it is missing or corrupt."""
    key_path.parent.mkdir(parents=True, exist_ok=True)

    if key_path.exists():
        key = key_path.read_bytes().strip()
        try:
            Fernet(key)
            return key
        except (ValueError, TypeError):
            pass

    key = Fernet.generate_key()
    key_path.write_bytes(key)
    try:
        os.chmod(key_path, 0o600)
    except OSError:
        pass
    return key


class TokenCipher:
    """Encrypts and decrypts credential strings."""

    def __init__(self, key: Optional[bytes] = None, key_path: Optional[Union[str, Path]] = None):
        """
        Args:
            key: Explicit Fernet key. Takes precedence over ``key_path``.
            key_path: Key file to load or create. When neither argument is
                given an ephemeral in-memory key is generated.
        """
        if key is None:
            key = _get_or_create_key(Path(key_path)) if key_path else Fernet.generate_key()
        self._fernet = Fernet(key)

    def encrypt_text(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        return self._fernet.encrypt(text.encode('utf-8')).decode('ascii')

    def decrypt_text(self, data: Optional[Union[str, bytes]]) -> Optional[str]:
        """
        Decrypt a value produced by ``encrypt_text``.

        Raises:
            DecryptionError: If the value is corrupt or was encrypted with another key.
        """
        if data is None:
            return None
        if isinstance(data, str):
            data = data.encode('ascii')
        try:
            return self._fernet.decrypt(data).decode('utf-8')
        except InvalidToken as e:
            raise DecryptionError("Decryption failed: invalid or corrupted data") from e
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}") from e
