import base64
import logging
import secrets
import string
from typing import Optional, Sequence

import bcrypt
from passlib.context import CryptContext

logger = logging.getLogger(__name__)

# Accounts imported from the old database were hashed with crypt(3) variants.
legacy_password_context = CryptContext(schemes=["md5_crypt", "bsdi_crypt", "des_crypt"])


class EncryptionUtils:
    """
    A utility class for password hashing and the encodings used by the WebAuthn ceremonies.
    """

    @staticmethod
    def hash_password(password: str, bcrypt_rounds: int = 12) -> str:
        """
        Hashes a password using bcrypt.
        """
        salt = bcrypt.gensalt(bcrypt_rounds)
        hashed_password = bcrypt.hashpw(password.encode('utf-8'), salt)
        return hashed_password.decode('utf-8')

    @staticmethod
    def is_bcrypt_hash(hashed_password: str) -> bool:
        return hashed_password.startswith("$2")

    @staticmethod
    def verify_password(password: str, hashed_password: Optional[str]) -> bool:
        """
        Verifies a plain-text password against a stored hash.

        bcrypt hashes are checked with bcrypt, anything else is handed to the legacy
        crypt(3) context. Unknown or corrupt hashes never match.
        """
        if not hashed_password:
            return False
        try:
            if EncryptionUtils.is_bcrypt_hash(hashed_password):
                return bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))
            if legacy_password_context.identify(hashed_password) is None:
                logger.warning("Stored password hash has an unrecognised format.")
                return False
            return legacy_password_context.verify(password, hashed_password)
        except ValueError as e:
            logger.warning(f"Password hash could not be checked: {e}")
            return False

    @staticmethod
    def gen_random_string(length: int = 8, symbol_set: Optional[Sequence] = None):
        """
        Generates a cryptographically secure random string.
        """
        symbol_set = (string.ascii_letters + string.digits) if symbol_set is None else symbol_set
        return ''.join(secrets.choice(symbol_set) for _ in range(length))

    @staticmethod
    def base64url_encode(data: bytes) -> str:
        """
        Encodes bytes to a base64url string without padding.
        """
        return base64.urlsafe_b64encode(data).rstrip(b'=').decode('utf-8')

    @staticmethod
    def base64url_decode(data: str) -> bytes:
        """
        Decodes a base64url string without padding to bytes.
        """
        padding = '=' * (4 - (len(data) % 4)) if len(data) % 4 != 0 else ''
        return base64.urlsafe_b64decode(data + padding)


encryption_utils = EncryptionUtils()
