"""Credential resolution for credential-scoped executors."""
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import sessionmaker

from nodeflow.errors import ConfigurationError, NotFoundError, UnauthorizedError
from nodeflow.observability import get_logger
from nodeflow.storage.session import session_scope
from nodeflow.storage.tables import CredentialRow

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Resolves a credential id to its secret for the owning user."""

    def resolve(self, credential_id: str, owner_id: str) -> str:
        ...


class SqlCredentialStore:
    """
    Credentials stored in the ``credentials`` table.

    Values are Fernet tokens when an encryption key is configured and plain
    text otherwise.
    """

    def __init__(self, session_factory: sessionmaker, encryption_key: str | None = None):
        self.session_factory = session_factory
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    def resolve(self, credential_id: str, owner_id: str) -> str:
        """
        Return the decrypted secret.

        Raises:
            NotFoundError: If the credential does not exist
            UnauthorizedError: If it belongs to another user
            ConfigurationError: If the stored value cannot be decrypted
        """
        with session_scope(self.session_factory) as db:
            row = db.get(CredentialRow, credential_id)
            if row is None:
                raise NotFoundError(f"Credential not found: {credential_id}")
            if row.owner_id != owner_id:
                logger.warning(
                    "Credential owner mismatch",
                    extra={"credential_id": credential_id},
                )
                raise UnauthorizedError(f"Credential not accessible: {credential_id}")
            value = row.value

        if self._fernet is None:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError(f"Credential cannot be decrypted: {credential_id}") from e

    def save(self, owner_id: str, name: str, secret: str, credential_type: str = "") -> str:
        """Store a secret, encrypting it when a key is configured. Returns the id."""
        value = self._fernet.encrypt(secret.encode()).decode() if self._fernet else secret
        with session_scope(self.session_factory) as db:
            row = CredentialRow(owner_id=owner_id, name=name, type=credential_type, value=value)
            db.add(row)
            db.flush()
            return row.id
