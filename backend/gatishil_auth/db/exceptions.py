"""Store exceptions raised by the repositories."""


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class RecordNotFoundError(DatabaseError):
    """Raised when a record that must exist is missing."""

    pass


class DuplicateRecordError(DatabaseError):
    """Raised when a unique key (phone, email, credential id) is already taken."""

    pass


class ConnectionError(DatabaseError):
    """Raised when the database cannot be reached."""

    pass
