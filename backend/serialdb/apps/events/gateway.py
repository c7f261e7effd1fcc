from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Type, Union

from serialdb.apps.serials.errors import NotFound
from serialdb.utils.identifiers import generate_uuid7

from .schemas import LedgerEvent, parse_event

logger = logging.getLogger(__name__)

Handler = Callable[[LedgerEvent], Any]


@dataclass
class EventEnvelope:
    id: str
    name: str
    timestamp: str
    payload: Dict[str, Any]

    @classmethod
    def wrap(cls, event: LedgerEvent) -> "EventEnvelope":
        return cls(
            id=generate_uuid7(),
            name=event.name,
            timestamp=datetime.now(timezone.utc).isoformat(),
            payload=event.model_dump(mode="json"),
        )

    def to_json(self) -> str:
        payload = {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }
        return json.dumps(payload, default=str)


@dataclass
class DeliveryFailure:
    handler: str
    error: str
    exception: Optional[BaseException] = None


@dataclass
class DeliveryReport:
    envelope: EventEnvelope
    attempted: int = 0
    delivered: int = 0
    failures: List[DeliveryFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


Monitor = Callable[[EventEnvelope, DeliveryFailure], None]


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventGateway:
    """
    Synchronous in-process event bus for the serial ledger.

    Outbound subscribers are called in subscription order; a failing
    subscriber is logged and handed to ``monitor`` but never stops delivery to
    the others and never raises into the publisher. Inbound events are routed
    to exactly one registered handler whose result is returned to the caller.
    """

    def __init__(self, *, replay_size: int = 2000, monitor: Optional[Monitor] = None) -> None:
        self._subscribers: Dict[Type[LedgerEvent], List[Handler]] = {}
        self._inbound: Dict[Type[LedgerEvent], Handler] = {}
        self._history: Deque[EventEnvelope] = deque(maxlen=replay_size)
        self._lock = threading.Lock()
        self.monitor = monitor

    # ---------------------------------------------------------------
    # OUTBOUND
    # ---------------------------------------------------------------

    def subscribe(self, event_cls: Type[LedgerEvent], handler: Handler) -> Handler:
        with self._lock:
            self._subscribers.setdefault(event_cls, []).append(handler)
        return handler

    def unsubscribe(self, event_cls: Type[LedgerEvent], handler: Handler) -> bool:
        with self._lock:
            handlers = self._subscribers.get(event_cls, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
        return True

    def subscribers(self, event_cls: Type[LedgerEvent]) -> List[Handler]:
        with self._lock:
            return list(self._subscribers.get(event_cls, []))

    def publish(self, event: LedgerEvent) -> DeliveryReport:
        envelope = EventEnvelope.wrap(event)
        with self._lock:
            self._history.append(envelope)
            handlers: Iterable[Handler] = [
                handler
                for event_cls, registered in self._subscribers.items()
                if isinstance(event, event_cls)
                for handler in registered
            ]

        report = DeliveryReport(envelope=envelope)
        for handler in handlers:
            report.attempted += 1
            try:
                handler(event)
            except Exception as exc:
                failure = DeliveryFailure(handler=_handler_name(handler), error=str(exc) or type(exc).__name__, exception=exc)
                report.failures.append(failure)
                logger.warning(
                    "Serial event delivery failed",
                    extra={"event_name": envelope.name, "event_id": envelope.id, "handler": failure.handler, "error": failure.error},
                )
                self._report(envelope, failure)
            else:
                report.delivered += 1
        return report

    def publish_all(self, events: Iterable[LedgerEvent]) -> List[DeliveryReport]:
        return [self.publish(event) for event in events]

    def _report(self, envelope: EventEnvelope, failure: DeliveryFailure) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor(envelope, failure)
        except Exception as exc:
            logger.warning(
                "Serial event monitor failed",
                extra={"event_name": envelope.name, "event_id": envelope.id, "error": str(exc)},
            )

    def replay_since(self, *, last_event_id: str) -> Tuple[List[EventEnvelope], bool]:
        """
        Events published after ``last_event_id``.

        The flag is True when the cursor has fallen out of the replay window and
        the consumer must resynchronise from the ledger itself.
        """
        with self._lock:
            history = list(self._history)
        if not history:
            return [], False
        ids = [envelope.id for envelope in history]
        if last_event_id not in ids:
            return [], True
        return history[ids.index(last_event_id) + 1 :], False

    @property
    def history(self) -> List[EventEnvelope]:
        with self._lock:
            return list(self._history)

    # ---------------------------------------------------------------
    # INBOUND
    # ---------------------------------------------------------------

    def register_inbound(self, event_cls: Type[LedgerEvent], handler: Handler) -> Handler:
        with self._lock:
            self._inbound[event_cls] = handler
        return handler

    def receive(self, event: Union[LedgerEvent, Dict[str, Any]]) -> Any:
        if isinstance(event, dict):
            event = parse_event(event)
        with self._lock:
            handler = self._inbound.get(type(event))
        if handler is None:
            raise NotFound(f"No inbound handler registered for {event.name}.")
        logger.info("Serial inbound event received", extra={"event_name": event.name})
        return handler(event)
