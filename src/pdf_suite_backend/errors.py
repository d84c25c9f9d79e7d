"""
Error taxonomy for the PDF suite.

Every error raised by the store, loader, composition engine or conversion
adapters derives from ``PdfSuiteError``. Each class carries the HTTP status it
maps to and a message that is safe to show to the client; the HTTP layer turns
them into ``{"error": message}`` responses.
"""

from __future__ import annotations


class PdfSuiteError(Exception):
    """Base exception for all PDF suite errors."""

    status_code: int = 500
    default_message: str = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(PdfSuiteError):
    """Raised when a file id is unknown, expired or its backing file is gone."""

    status_code = 404
    default_message = "File not found."


class SourceNotFoundError(NotFoundError):
    """Raised when a composition plan references a source that does not exist."""

    def __init__(self, source_id: str) -> None:
        self.source_id = source_id
        super().__init__(f"File {source_id} not found.")


class InvalidInputError(PdfSuiteError):
    """Raised for malformed requests: bad ranges, missing fields, too few files."""

    status_code = 400
    default_message = "Invalid request."


class InvalidPageIndexError(InvalidInputError):
    """Raised when a page index is outside the source document."""

    def __init__(self, source_id: str, page_index: int, page_count: int) -> None:
        self.source_id = source_id
        self.page_index = page_index
        self.page_count = page_count
        super().__init__(
            f"Page index {page_index} is out of range for file {source_id} ({page_count} pages)."
        )


class EmptyOutputError(InvalidInputError):
    """Raised when a composition plan has no pages left to write."""

    default_message = "Nothing to produce: every page was deleted."


class TooLargeError(InvalidInputError):
    default_message = "File too large. Maximum size is 50MB."


class TooManyError(InvalidInputError):
    default_message = "Too many files. Maximum is 50 files."


class CorruptDocumentError(PdfSuiteError):
    """Raised when a stored document cannot be parsed."""

    status_code = 500
    default_message = "The document could not be read."


class OperationTimeoutError(PdfSuiteError):
    """Raised when parsing or serializing a document exceeds its deadline."""

    status_code = 504
    default_message = "The operation took too long and was aborted."
