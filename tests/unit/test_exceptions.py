"""
Tests for salesync.exceptions module.
"""
import pytest

from salesync.exceptions import (
    CacheWriteError,
    DocumentQueryError,
    OperationCancelled,
    RecordParseError,
    RemoteFetchError,
    SalesyncError,
)


class TestSalesyncError:
    """Tests for the base exception class."""

    def test_message_only(self):
        """Should store message without details."""
        error = SalesyncError("Something went wrong")
        assert error.message == "Something went wrong"
        assert error.details is None
        assert str(error) == "Something went wrong"

    def test_message_with_details(self):
        """Should include details in the string form."""
        error = SalesyncError("Fetch failed", details="timeout")
        assert str(error) == "Fetch failed: timeout"


class TestRemoteFetchError:
    """Tests for RemoteFetchError."""

    def test_status_and_retry_after(self):
        """Should carry status code and retry hint."""
        error = RemoteFetchError("Sheet fetch failed (503)", status_code=503, retry_after=5)
        assert error.status_code == 503
        assert error.retry_after == 5
        assert isinstance(error, SalesyncError)


class TestDocumentQueryError:
    """Tests for DocumentQueryError."""

    def test_collection_and_field(self):
        """Should record which query was rejected."""
        error = DocumentQueryError("Missing index", collection="products", field="updatedAt")
        assert error.collection == "products"
        assert error.field == "updatedAt"


class TestOtherErrors:
    """Tests for parse, write and cancellation errors."""

    def test_record_parse_error_row(self):
        """Should remember the offending row."""
        error = RecordParseError("Unparseable date", details="??", row_index=7)
        assert error.row_index == 7
        assert str(error) == "Unparseable date: ??"

    def test_cache_write_error_key(self):
        """Should remember the key being written."""
        error = CacheWriteError("Local write failed", key="sync:last:kivos:products_kivos")
        assert error.key == "sync:last:kivos:products_kivos"

    def test_operation_cancelled_is_not_salesync_error(self):
        """Cancellation must not be swallowed by handlers catching SalesyncError."""
        error = OperationCancelled("sync kivos")
        assert not isinstance(error, SalesyncError)
        assert str(error) == "sync kivos cancelled"
        assert str(OperationCancelled()) == "Operation cancelled"

    def test_catch_all_with_base(self):
        """Subclasses can be caught with the base class."""
        with pytest.raises(SalesyncError):
            raise DocumentQueryError("Permission denied")
