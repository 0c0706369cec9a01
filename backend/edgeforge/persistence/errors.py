"""
Persistence-specific errors.
"""


class PersistenceError(Exception):
    """Base exception for persistence operations."""

    pass


class SchemaError(PersistenceError):
    """Schema migration or validation failed."""

    pass


class RecordNotFoundError(PersistenceError):
    """A row required for an update does not exist."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record not found: {record_id}")
