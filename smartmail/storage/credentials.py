"""
Symmetric protection for account passwords at rest.

Passwords are encrypted with Fernet (AES-128 in CBC mode with HMAC) and
stored base64 text in the accounts table. Only the store decrypts them, and
only when an account is loaded for a session.
"""
import base64
import os

from cryptography.fernet import Fernet, InvalidToken

from smartmail import config
from smartmail.utils.errors import DecryptionError


def _get_or_create_key() -> bytes:
    """
    Get the encryption key from file, or generate a new one if missing.

    Returns:
        The encryption key as bytes.
    """
    key_file = config.SECRET_KEY_PATH
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes()
        try:
            Fernet(key)
            return key
        except (ValueError, TypeError):
            # Key is corrupted, generate a new one
            pass

    key = Fernet.generate_key()
    key_file.write_bytes(key)

    try:
        os.chmod(key_file, 0o600)
    except OSError:
        # Not supported on every filesystem
        pass

    return key


def _get_cipher() -> Fernet:
    return Fernet(_get_or_create_key())


def encrypt_password(password: str) -> str:
    """
    Encrypt a password for storage.

    Args:
        password: The plaintext password.

    Returns:
        Base64 text of the Fernet token, or "" for an empty password.
    """
    if not password:
        return ""
    token = _get_cipher().encrypt(password.encode('utf-8'))
    return base64.b64encode(token).decode('utf-8')


def decrypt_password(stored: str) -> str:
    """
    Decrypt a password produced by ``encrypt_password``.

    Raises:
        DecryptionError: If the stored value is corrupted or the key changed.
    """
    if not stored:
        return ""
    try:
        token = base64.b64decode(stored.encode('utf-8'))
        return _get_cipher().decrypt(token).decode('utf-8')
    except InvalidToken as e:
        raise DecryptionError("Decryption failed: invalid or corrupted data") from e
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError(f"Decryption failed: {str(e)}") from e
