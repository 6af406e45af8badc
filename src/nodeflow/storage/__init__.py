"""Storage package."""
from nodeflow.storage.credentials import CredentialStore, SqlCredentialStore
from nodeflow.storage.repositories import ExecutionRepository, WorkflowRepository
from nodeflow.storage.session import (
    create_session_factory,
    get_engine,
    get_session_factory,
    session_scope,
)
from nodeflow.storage.tables import Base

__all__ = [
    "Base",
    "CredentialStore",
    "ExecutionRepository",
    "SqlCredentialStore",
    "WorkflowRepository",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
