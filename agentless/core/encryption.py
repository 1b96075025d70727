"""
Encryption utilities for hypervisor credentials.

Uses Fernet (symmetric encryption) from the cryptography library.
Passwords are encrypted before they are written into session documents
or handed to background processes through a secret file, and decrypted
when a later process loads the session.
"""
import base64
import os
from pathlib import Path
from typing import Union
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import logging

logger = logging.getLogger(__name__)


class CredentialEncryption:
    """Handle encryption and decryption of hypervisor passwords."""

    def __init__(self, secret_key: str):
        """
        Initialize credential encryption with the proxy secret key.

        Args:
            secret_key: SECRET_KEY from the environment
        """
        # Fixed salt, the key is derived from the proxy secret
        salt = b'agentless_credential_salt_v1'
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        fernet_key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self.fernet = Fernet(fernet_key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a credential.

        Args:
            plaintext: Plain text credential

        Returns:
            Encrypted credential as base64 string
        """
        try:
            encrypted_bytes = self.fernet.encrypt(plaintext.encode('utf-8'))
            return base64.b64encode(encrypted_bytes).decode('utf-8')
        except Exception as e:
            logger.error(f"Failed to encrypt credential: {e}")
            raise

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a credential.

        Args:
            encrypted: Encrypted credential as base64 string

        Returns:
            Decrypted plain text credential

        Raises:
            InvalidToken: If the value was encrypted with a different secret
        """
        try:
            encrypted_bytes = base64.b64decode(encrypted.encode('utf-8'))
            return self.fernet.decrypt(encrypted_bytes).decode('utf-8')
        except InvalidToken:
            logger.error("Failed to decrypt credential: secret key mismatch or corrupted value")
            raise
        except Exception as e:
            logger.error(f"Failed to decrypt credential: {e}")
            raise


def encrypt_password(password: str, secret_key: str) -> str:
    """
    Encrypt a password using the proxy secret.

    Args:
        password: Plain text password
        secret_key: Proxy SECRET_KEY

    Returns:
        Encrypted password as base64 string
    """
    return CredentialEncryption(secret_key).encrypt(password)


def decrypt_password(encrypted_password: str, secret_key: str) -> str:
    """
    Decrypt a password using the proxy secret.

    Args:
        encrypted_password: Encrypted password as base64 string
        secret_key: Proxy SECRET_KEY

    Returns:
        Decrypted plain text password
    """
    return CredentialEncryption(secret_key).decrypt(encrypted_password)


def write_secret_file(path: Union[str, Path], password: str, secret_key: str) -> Path:
    """
    Write an encrypted password to a file readable only by the owner.

    Used to hand credentials to a background process without putting
    them on its command line.

    Returns:
        Path of the secret file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(encrypt_password(password, secret_key))
    return path


def read_secret_file(path: Union[str, Path], secret_key: str) -> str:
    """Read and decrypt a password written by write_secret_file()."""
    encrypted = Path(path).read_text().strip()
    return decrypt_password(encrypted, secret_key)
