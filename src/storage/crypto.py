import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from sync.errors import StoreError

logger = logging.getLogger(__name__)


class TokenCipher:
    """
    At-rest encryption for OAuth tokens.

    Without a key, tokens are stored as written by whoever connected the
    integration (plaintext).
    """

    def __init__(self, key: Optional[str] = None):
        if not key:
            logger.warning("TOKEN_ENCRYPTION_KEY not set, OAuth tokens are stored unencrypted")
            self.fernet = None
            return
        self.fernet = Fernet(key.encode() if isinstance(key, str) else key)

    @property
    def enabled(self) -> bool:
        return self.fernet is not None

    def encrypt(self, data: Optional[str]) -> Optional[str]:
        if not data or self.fernet is None:
            return data
        return self.fernet.encrypt(data.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if not token or self.fernet is None:
            return token
        try:
            return self.fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise StoreError("stored token could not be decrypted with TOKEN_ENCRYPTION_KEY") from e
