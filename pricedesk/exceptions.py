"""
Custom exception hierarchy for pricedesk.

Exception Hierarchy:
    PriceDeskError (base)
    ├── IngestionError         - Uploaded sheet has no usable data rows
    ├── TableNotFoundError     - Unknown table id
    ├── FeedError              - Supplier feed problems
    │   ├── FeedConnectionError  - Network/timeout issues (recoverable)
    │   └── FeedParseError       - Malformed feed document
    └── PersistenceError       - Backend load/save failed

    ValidationError            - Edit input rejected at the boundary
"""
from typing import Any, Optional


class PriceDeskError(Exception):
    """Base exception for all pricedesk errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class IngestionError(PriceDeskError):
    """
    Spreadsheet upload could not be turned into a table.

    Raised synchronously to the caller; no partial table is created.
    """

    def __init__(self, message: str, details: str = None, file_name: str = None, row_count: int = 0):
        super().__init__(message, details)
        self.file_name = file_name
        self.row_count = row_count


class TableNotFoundError(PriceDeskError):
    """Requested table id is not loaded."""

    def __init__(self, table_id: str):
        super().__init__("Table not found", str(table_id))
        self.table_id = table_id


class FeedError(PriceDeskError):
    """Base class for supplier feed errors."""


class FeedConnectionError(FeedError):
    """
    Network-related feed errors (timeout, proxy failure, bad status).

    These are typically recoverable with retry.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class FeedParseError(FeedError):
    """
    Feed document has unexpected structure.

    The previous cache contents stay untouched when this is raised.
    """

    def __init__(self, message: str, details: str = None, expected: str = None):
        super().__init__(message, details)
        self.expected = expected


class PersistenceError(PriceDeskError):
    """Backend returned an error or could not be reached."""

    def __init__(self, message: str, details: str = None, status_code: Optional[int] = None):
        super().__init__(message, details)
        self.status_code = status_code


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating user edits before they reach the override layer.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
