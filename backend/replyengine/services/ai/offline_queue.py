"""
Bounded FIFO of requests that could not be sent while offline.

The queue only stores requests and the advisory online flag. Replay is
driven by RequestOrchestrator.replay_offline_queue(); nothing here runs
in the background.
"""
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from replyengine.core.logging import get_logger
from replyengine.core.metrics import update_offline_queue_size
from replyengine.services.ai.schema import QueuedRequest, QueueStats, RequestType

logger = get_logger(__name__)

DEFAULT_MAX_SIZE = 50
PREVIEW_MESSAGE_CHARS = 30

_PREVIEW_LABELS = {
    RequestType.FLIRT_RESPONSE: "Generate reply",
    RequestType.SCREENSHOT_ANALYSIS: "Analyze screenshot",
    RequestType.CONVERSATION_STARTER: "Conversation starter",
    RequestType.DATE_IDEA: "Date ideas",
    RequestType.INTEREST_ANALYSIS: "Interest analysis",
    RequestType.RED_FLAG_CHECK: "Red flag check",
    RequestType.RESPONSE_TIMING: "Response timing",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_preview(request_type: RequestType, params: Mapping[str, Any]) -> str:
    """Short human-readable description of a queued request."""
    request_type = RequestType(request_type)
    if request_type == RequestType.FLIRT_RESPONSE:
        logical = params.get("cache_key_params") or params
        message = logical.get("message") if isinstance(logical, Mapping) else None
        if message:
            return f'Reply to: "{str(message)[:PREVIEW_MESSAGE_CHARS]}..."'
    return _PREVIEW_LABELS[request_type]


class OfflineQueue:
    """FIFO with capacity; adding to a full queue evicts the oldest entry."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        now: Optional[Callable[[], datetime]] = None,
        online: bool = True,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._now = now or _utcnow
        self._online = online
        self._items: "OrderedDict[str, QueuedRequest]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._items)

    def add(self, request_type: RequestType, params: Mapping[str, Any]) -> str:
        """
        Append a request.

        Returns:
            The generated queue id
        """
        if len(self._items) >= self.max_size:
            evicted_id, evicted = self._items.popitem(last=False)
            logger.warning(
                "offline_queue_evicted",
                queued_id=evicted_id,
                request_type=evicted.request_type.value,
            )

        request_type = RequestType(request_type)
        item = QueuedRequest(
            id=str(uuid.uuid4()),
            request_type=request_type,
            params=dict(params),
            enqueued_at=self._now(),
            preview=build_preview(request_type, params),
        )
        self._items[item.id] = item

        update_offline_queue_size(len(self._items))
        logger.info(
            "offline_queue_added",
            queued_id=item.id,
            request_type=request_type.value,
            size=len(self._items),
        )
        return item.id

    def peek_next(self) -> Optional[QueuedRequest]:
        """Oldest entry, without removing it."""
        if not self._items:
            return None
        return next(iter(self._items.values())).model_copy(deep=True)

    def get(self, queued_id: str) -> Optional[QueuedRequest]:
        item = self._items.get(queued_id)
        return item.model_copy(deep=True) if item is not None else None

    def remove(self, queued_id: str) -> bool:
        if self._items.pop(queued_id, None) is None:
            return False
        update_offline_queue_size(len(self._items))
        return True

    def requeue(self, queued_id: str) -> Optional[QueuedRequest]:
        """Move an entry to the tail and bump its retry count."""
        item = self._items.pop(queued_id, None)
        if item is None:
            return None
        updated = item.model_copy(update={"retry_count": item.retry_count + 1})
        self._items[queued_id] = updated
        return updated.model_copy(deep=True)

    def size(self) -> int:
        return len(self._items)

    def list(self) -> List[QueuedRequest]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    def clear(self) -> None:
        self._items.clear()
        update_offline_queue_size(0)

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("connectivity_changed", online=online, pending=len(self._items))
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def stats(self) -> QueueStats:
        types: Dict[str, int] = {}
        for item in self._items.values():
            types[item.request_type.value] = types.get(item.request_type.value, 0) + 1
        oldest = next(iter(self._items.values())).enqueued_at if self._items else None
        return QueueStats(pending=len(self._items), oldest=oldest, types=types)
