"""
Cancellation of in-flight LLM requests.

Each logical request gets a CancelHandle from the registry at call start.
The handle owns the asyncio task that performs the call; cancelling it
aborts the task at its next suspension point (HTTP read, backoff sleep,
rate limiter wait) and the caller sees RequestCancelledError, which the
error classifier maps to CANCELLED.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Dict, Optional, TypeVar

from replyengine.core.errors import RequestCancelledError
from replyengine.core.logging import generate_request_id, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancelHandle:
    """Cancel token for one logical request."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._cancelled = False
        self._task: Optional[asyncio.Future] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """
        Signal cancellation.

        Returns:
            True on the first call, False if the handle was already cancelled
        """
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` as a cancellable task.

        Raises:
            RequestCancelledError: If cancel() was called before or during the run
        """
        if self._cancelled:
            # Close the coroutine so it is not reported as never awaited.
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise RequestCancelledError(self.request_id)

        self._task = asyncio.ensure_future(awaitable)
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._cancelled:
                raise RequestCancelledError(self.request_id) from None
            # The caller's own task was cancelled; propagate untouched.
            self._task.cancel()
            raise
        finally:
            self._task = None


class CancellationRegistry:
    """Maps request ids to the CancelHandle of the call in flight."""

    def __init__(self):
        self._handles: Dict[str, CancelHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._handles

    def create(self, request_id: Optional[str] = None) -> CancelHandle:
        """
        Register a new handle.

        Args:
            request_id: Caller-supplied id; generated when omitted

        Raises:
            ValueError: If a request with this id is already in flight
        """
        request_id = request_id or generate_request_id()
        if request_id in self._handles:
            raise ValueError(f"Request {request_id} is already in flight")
        handle = CancelHandle(request_id)
        self._handles[request_id] = handle
        return handle

    def get(self, request_id: str) -> Optional[CancelHandle]:
        return self._handles.get(request_id)

    def cancel(self, request_id: str) -> bool:
        """
        Cancel an in-flight request.

        Returns:
            True if a live request was cancelled now; False if unknown,
            already cancelled, or already finished
        """
        handle = self._handles.get(request_id)
        if handle is None:
            return False
        cancelled = handle.cancel()
        if cancelled:
            logger.info("llm_request_cancelled", request_id=request_id)
        return cancelled

    def cleanup(self, request_id: str) -> None:
        """Forget a request once it terminated by any path."""
        self._handles.pop(request_id, None)

    def cancel_all(self) -> int:
        """Cancel every in-flight request. Returns how many were cancelled."""
        count = 0
        for handle in list(self._handles.values()):
            if handle.cancel():
                count += 1
        if count:
            logger.info("llm_requests_cancelled_all", count=count)
        return count

    @asynccontextmanager
    async def track(self, request_id: Optional[str] = None) -> AsyncIterator[CancelHandle]:
        """Create a handle and always release it when the block exits."""
        handle = self.create(request_id)
        try:
            yield handle
        finally:
            self.cleanup(handle.request_id)
