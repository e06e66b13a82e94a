"""Record store: SQLAlchemy Core tables behind a typed CAS interface."""

from quorum.core.store.database import StoreDB
from quorum.core.store.repository import RecordMapper, RecordStore, mapper_for

__all__ = ["RecordMapper", "RecordStore", "StoreDB", "mapper_for"]
