"""
Tests for salesync.cancellation module.
"""
import asyncio
import pytest

from salesync.cancellation import CancellationToken, cancellable, checkpoint
from salesync.exceptions import OperationCancelled


class TestCancellationToken:
    """Tests for CancellationToken."""

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        """An uncancelled token just awaits."""
        async def work():
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight(self):
        """Cancelling the token cancels the running awaitable."""
        token = CancellationToken()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(10)
            finished.append(True)

        task = asyncio.create_task(token.run(slow(), "slow fetch"))
        await started.wait()
        token.cancel()

        with pytest.raises(OperationCancelled, match="slow fetch cancelled"):
            await task
        assert finished == []

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        """A fired token refuses new work without starting it."""
        token = CancellationToken()
        token.cancel()
        called = []

        async def work():
            called.append(True)

        with pytest.raises(OperationCancelled):
            await token.run(work())
        assert called == []

    def test_cancel_idempotent(self):
        """Cancelling twice is harmless."""
        token = CancellationToken()
        token.cancel()
        token.cancel()
        assert token.cancelled


class TestHelpers:
    """Tests for cancellable and checkpoint."""

    @pytest.mark.asyncio
    async def test_cancellable_without_token(self):
        """Without a token the awaitable is awaited directly."""
        async def work():
            return "ok"

        assert await cancellable(work(), None) == "ok"

    def test_checkpoint(self):
        """checkpoint raises only for a fired token."""
        checkpoint(None)
        token = CancellationToken()
        checkpoint(token, "step")
        token.cancel()
        with pytest.raises(OperationCancelled, match="step cancelled"):
            checkpoint(token, "step")
