"""
Exception hierarchy for salesync.

Exception Hierarchy:
    SalesyncError (base)
    ├── RemoteFetchError     - Network/timeout/non-success response (propagates)
    ├── DocumentQueryError   - One document-store query failed (skipped by caller)
    ├── RecordParseError     - A spreadsheet row could not be parsed (counted)
    └── CacheWriteError      - Local persistence write failed (logged, swallowed)

    OperationCancelled         - A cancellation token fired
"""


class SalesyncError(Exception):
    """Base exception for all salesync errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class RemoteFetchError(SalesyncError):
    """
    Network-related failure talking to a remote backend.

    Raised for timeouts, refused connections and non-success HTTP statuses.
    Nothing retries automatically; the caller marks the operation failed.
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        retry_after: int = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.retry_after = retry_after


class DocumentQueryError(SalesyncError):
    """
    A single document-store query was rejected.

    Typical causes: missing composite index, permission denied,
    ordering on a field most documents do not carry.
    """

    def __init__(self, message: str, details: str = None, collection: str = None, field: str = None):
        super().__init__(message, details)
        self.collection = collection
        self.field = field


class RecordParseError(SalesyncError):
    """A spreadsheet row has an unparseable date or amount."""

    def __init__(self, message: str, details: str = None, row_index: int = None):
        super().__init__(message, details)
        self.row_index = row_index


class CacheWriteError(SalesyncError):
    """Writing to local persistence failed."""

    def __init__(self, message: str, details: str = None, key: str = None):
        super().__init__(message, details)
        self.key = key


class OperationCancelled(Exception):
    """Raised inside an operation whose cancellation token was fired."""

    def __init__(self, operation: str = None):
        self.operation = operation
        message = f"{operation} cancelled" if operation else "Operation cancelled"
        super().__init__(message)
