import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List

from agent_rpc_relay.domain.contracts import LineObserver

logger = logging.getLogger(__name__)

LINE_EVENT = "rpc.line"


@dataclass(frozen=True)
class RunEvent:
    run_id: str
    event_type: str
    payload: str
    created_at: datetime


Subscriber = Callable[[RunEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, run_id: str, event_type: str, payload: str = "") -> RunEvent:
        event = RunEvent(
            run_id=run_id,
            event_type=event_type,
            payload=payload,
            created_at=datetime.now(timezone.utc),
        )
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event_type)
        return event

    def line_observer(self, run_id: str) -> LineObserver:
        def _publish_line(line: str) -> None:
            self.publish(run_id, LINE_EVENT, line)

        return _publish_line
