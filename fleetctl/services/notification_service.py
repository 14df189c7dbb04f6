"""Typed publish/subscribe for domain notifications.

Services publish event dataclasses; subscribers register per event type.
Delivery is best-effort: a failing subscriber is logged and counted, and
never affects the publisher. Once started, events are queued and delivered
by a worker thread. Before that (CLI commands, tests) they are delivered
inline on the publishing thread.
"""

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from fleetctl.services.metrics_service import MetricsService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceEvent:
    """Base class for events addressed to a single device."""

    tenant_id: str
    device_key: str
    device_type: str


@dataclass(frozen=True)
class ShadowDesiredChanged(DeviceEvent):
    version: int
    desired: dict[str, Any]
    delta: dict[str, Any]
    client_token: str | None = None


@dataclass(frozen=True)
class ShadowReportedChanged(DeviceEvent):
    version: int
    reported: dict[str, Any]
    delta: dict[str, Any]


@dataclass(frozen=True)
class OtaUpdateAvailable(DeviceEvent):
    rollout_id: int
    firmware: dict[str, Any]


@dataclass(frozen=True)
class OtaProgressChanged(DeviceEvent):
    rollout_id: int
    status: str
    progress: int
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RolloutStateChanged:
    tenant_id: str
    rollout_id: int
    from_status: str
    to_status: str
    reason: str | None = None


E = TypeVar("E")
Handler = Callable[[Any], None]

_STOP = object()


class NotificationService:
    """Singleton event bus."""

    def __init__(self, metrics_service: "MetricsService") -> None:
        self.metrics_service = metrics_service
        self._handlers: dict[type, list[Handler]] = {}
        self._handlers_lock = threading.Lock()
        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        """Register a handler for an event type and its subclasses."""
        with self._handlers_lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: object) -> None:
        """Publish an event without blocking on subscribers."""
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(event)
        else:
            self._dispatch(event)

    def startup(self) -> None:
        """Start the delivery worker. Idempotent."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="notification-dispatch", daemon=True
        )
        self._worker.start()

    def shutdown(self, timeout: float = 5.0) -> None:
        """Drain queued events and stop the worker."""
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout=timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                break
            self._dispatch(event)

    def _handlers_for(self, event: object) -> list[Handler]:
        with self._handlers_lock:
            return [
                handler
                for event_type, handlers in self._handlers.items()
                if isinstance(event, event_type)
                for handler in handlers
            ]

    def _dispatch(self, event: object) -> None:
        event_name = type(event).__name__
        for handler in self._handlers_for(event):
            try:
                handler(event)
                self.metrics_service.record_notification(event_name, "delivered")
            except Exception as e:
                logger.error("Notification handler failed for %s: %s", event_name, e)
                self.metrics_service.record_notification(event_name, "failed")
