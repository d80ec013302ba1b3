from .approval_store_base import ApprovalStoreBase
from .approvals import InMemoryApprovalStore
from .approvals_sqlite import SQLiteApprovalStore
from ...core.config import settings


def create_store(backend: str | None = None, db_path: str | None = None) -> ApprovalStoreBase:
    """Build the configured store ("sqlite" or "memory")."""
    backend = (backend or settings.approvals_storage).lower()
    if backend == "memory":
        return InMemoryApprovalStore()
    if backend == "sqlite":
        return SQLiteApprovalStore(db_path or settings.approvals_db_path)
    raise ValueError(f"Unknown approvals storage backend: {backend}")


__all__ = [
    "ApprovalStoreBase",
    "InMemoryApprovalStore",
    "SQLiteApprovalStore",
    "create_store",
]
