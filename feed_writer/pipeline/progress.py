"""
Progress sinks

單向、append-only 的 progress 通知。sink 的失敗只記錄 log，不會中斷 run。
"""

from typing import Callable, List, Optional, Protocol
import logging

from feed_writer.models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def __call__(self, event: ProgressEvent) -> None: ...


class LoggingProgressSink:
    """以 log 輸出 progress"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def __call__(self, event: ProgressEvent) -> None:
        line = f"[{event.step}/{event.total_steps}] {event.message}"
        if event.detail:
            line += f" - {event.detail}"
        if event.kind == "skipped":
            self.log.warning(line)
        else:
            self.log.info(line)


class CollectingProgressSink:
    """收集所有 event (測試、API 回應用)"""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[ProgressEvent]:
        return [e for e in self.events if e.kind == kind]


class ProgressEmitter:
    """
    多個 sink 的 fan-out

    sink 依註冊順序呼叫；個別 sink 的例外只記錄 WARNING。
    """

    def __init__(self, sinks: Optional[List[Callable[[ProgressEvent], None]]] = None, total_steps: int = 6):
        self.sinks = list(sinks or [])
        self.total_steps = total_steps
        self.emitted = 0

    def emit(self, step: int, message: str, detail: Optional[str] = None, kind: str = "step") -> ProgressEvent:
        event = ProgressEvent(step=step, total_steps=self.total_steps, message=message, detail=detail, kind=kind)
        self.emitted += 1
        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"Progress sink {sink!r} failed: {e}")
        return event
