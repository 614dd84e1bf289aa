from __future__ import annotations


class DomainError(Exception):
    """Base for errors the API turns into a JSON error body."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(DomainError):
    status_code = 404


class BlobMissing(DomainError):
    """The attachment record exists but its blob cannot be read."""

    status_code = 404


class UploadFailed(DomainError):
    status_code = 500

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class UnsupportedView(DomainError):
    status_code = 400


class StorageFailure(DomainError):
    status_code = 500


class ValidationFailed(DomainError):
    status_code = 400


class PayloadTooLarge(DomainError):
    status_code = 413


class BlobNotFound(NotFound):
    """A backend could not resolve a blob reference."""
