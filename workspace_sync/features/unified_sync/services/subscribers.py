"""Snapshot subscriber registry for the unified sync service."""

from collections.abc import Callable

from workspace_sync.features.unified_sync.domain.models import UnifiedSnapshot
from workspace_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SnapshotCallback = Callable[[UnifiedSnapshot], None]


class SubscriberRegistry:
    """
    Keyed map of snapshot callbacks.

    ``subscribe`` always replays the current snapshot once, synchronously,
    before returning. A callback that raises is logged and skipped; the
    remaining callbacks still run.
    """

    def __init__(self, snapshot_source: Callable[[], UnifiedSnapshot]):
        self._snapshot_source = snapshot_source
        self._callbacks: dict[str, SnapshotCallback] = {}

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, subscriber_id: object) -> bool:
        return subscriber_id in self._callbacks

    def subscribe(self, subscriber_id: str, callback: SnapshotCallback) -> Callable[[], None]:
        """Register ``callback`` under ``subscriber_id`` and return its disposer."""
        if subscriber_id in self._callbacks:
            logger.debug("Replacing existing subscriber", subscriber_id=subscriber_id)
        self._callbacks[subscriber_id] = callback

        self._invoke(subscriber_id, callback, self._snapshot_source())

        def _unsubscribe() -> None:
            # a later subscribe() with the same id must survive the old disposer
            if self._callbacks.get(subscriber_id) is callback:
                self.unsubscribe(subscriber_id)

        return _unsubscribe

    def unsubscribe(self, subscriber_id: str) -> bool:
        return self._callbacks.pop(subscriber_id, None) is not None

    def notify_all(self) -> None:
        snapshot = self._snapshot_source()
        # copy: callbacks may unsubscribe while we iterate
        for subscriber_id, callback in list(self._callbacks.items()):
            self._invoke(subscriber_id, callback, snapshot)

    def clear(self) -> None:
        self._callbacks.clear()

    def _invoke(
        self, subscriber_id: str, callback: SnapshotCallback, snapshot: UnifiedSnapshot
    ) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Subscriber callback failed", subscriber_id=subscriber_id)
