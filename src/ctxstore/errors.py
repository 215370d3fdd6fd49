"""Error taxonomy shared by every ctxstore component.

    CtxStoreError
    ├── ValidationError      schema violation, caller-correctable
    ├── NotFoundError        no record with that id
    ├── ConflictError        duplicate id / occupied storage path
    ├── StorageError         backend failure (primary: fatal, index: recoverable)
    ├── MigrationPhaseError  any exception raised inside a pipeline phase
    └── RollbackError        secondary failure while rolling back
"""

from __future__ import annotations


class CtxStoreError(Exception):
    """Base class for all ctxstore errors."""


class ValidationError(CtxStoreError):
    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class NotFoundError(CtxStoreError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Context not found: {record_id}")


class ConflictError(CtxStoreError):
    """Raised when a record id or storage path is already taken."""


AlreadyExists = ConflictError


class StorageError(CtxStoreError):
    """A storage backend failed.

    ``recoverable`` is False for the primary (authoritative) store and True
    for the derived index, whose failures only degrade performance.
    """

    def __init__(self, message: str, *, backend: str = "primary", recoverable: bool = False) -> None:
        self.backend = backend
        self.recoverable = recoverable
        super().__init__(message)


class MigrationPhaseError(CtxStoreError):
    def __init__(self, phase: str, cause: BaseException | str) -> None:
        self.phase = phase
        self.cause = cause
        super().__init__(f"Migration failed in phase '{phase}': {cause}")


class RollbackError(CtxStoreError):
    """Recorded, never raised over the original migration failure."""
