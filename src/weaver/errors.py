"""
Error taxonomy for the storage pipeline.

Each error carries a `user_message` the chat collaborator can render as-is.
Only ValidationError, StorageWriteFailed, MetadataWriteFailed, Forbidden and
NotFound ever reach a caller; BackupSoftFailure is absorbed by the orchestrator.
"""
from typing import List, Optional


class WeaverError(Exception):
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(WeaverError):
    """Bad input, detected before any I/O."""
    user_message = "Some of the details you entered are not valid."

    def __init__(self, message: str, *, errors: Optional[List[str]] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message=user_message)
        self.errors = errors or [message]


class ConstraintViolation(ValidationError):
    """Metadata store rejected a row (bounds, enumerations, empty file list)."""


class ObjectStoreError(WeaverError):
    user_message = "File storage is temporarily unavailable."


class StorageUnavailable(ObjectStoreError):
    pass


class QuotaExceeded(ObjectStoreError):
    user_message = "File storage is full. Please try a smaller file later."


class StorageWriteFailed(WeaverError):
    user_message = "Unable to store your file. Nothing was saved, please try again."

    def __init__(self, message: str, *, cause: Optional[ObjectStoreError] = None):
        super().__init__(message)
        self.cause = cause


class MetadataWriteFailed(WeaverError):
    """Bytes were stored but no metadata row points at them (orphaned blob)."""
    user_message = "Unable to save your memory. Nothing was saved, please try again."

    def __init__(self, message: str, *, storage_key: Optional[str] = None):
        super().__init__(message)
        self.storage_key = storage_key


class BackupSoftFailure(WeaverError):
    """Backup network push gave up. Logged, never surfaced."""

    def __init__(self, message: str, *, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class Forbidden(WeaverError):
    user_message = "You can only change memories you created."


class NotFound(WeaverError):
    user_message = "That memory could not be found."
