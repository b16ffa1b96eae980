"""
Structured logging for the agent.

Pipeline events carry a tag (CYCLE, GPS, QUEUE, SEND, GEOFENCE, WATCHDOG,
SERVICE) and free-form extras. They go through the standard ``logging``
module like everything else, and are additionally copied into a bounded
in-memory buffer that is shipped to the collector's ``/api/logs`` endpoint
after a successful location upload, so field devices can be debugged
remotely.
"""
import logging
import platform
import sys
import threading
from collections import deque
from typing import Any, Dict, List, Optional

from src.agent.time_utils import now_millis

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_BUFFERED_LOGS = 200


def event(logger: logging.Logger, level: int, tag: str, message: str, **extra: Any) -> None:
    """
    Emit a structured pipeline event.

    Args:
        logger: Module logger to emit through
        level: logging level (logging.INFO, logging.WARNING, ...)
        tag: Pipeline area, e.g. "GPS"
        message: Human readable message
        **extra: Structured fields attached to the event
    """
    if extra:
        fields = " ".join(f"{k}={v}" for k, v in extra.items())
        logger.log(level, "[%s] %s (%s)", tag, message, fields,
                   extra={"tag": tag, "fields": extra, "event_message": message})
    else:
        logger.log(level, "[%s] %s", tag, message,
                   extra={"tag": tag, "fields": None, "event_message": message})


class LogBuffer(logging.Handler):
    """
    Keeps the most recent tagged events for remote shipping.

    Oldest entries are dropped once ``capacity`` is reached.
    """

    def __init__(self, capacity: int = MAX_BUFFERED_LOGS, device_id: Optional[str] = None,
                 device_model: Optional[str] = None):
        super().__init__(level=logging.DEBUG)
        self.capacity = capacity
        self.device_id = device_id or platform.node() or "unknown"
        self.device_model = device_model or platform.platform() or "unknown"
        self._entries: deque = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        tag = getattr(record, "tag", None)
        if tag is None:
            return
        entry = {
            "level": record.levelname,
            "tag": tag,
            "message": getattr(record, "event_message", record.getMessage()),
            "timestamp": int(record.created * 1000),
            "deviceId": self.device_id,
            "deviceModel": self.device_model,
            "extra": _jsonable(getattr(record, "fields", None)),
        }
        with self._entries_lock:
            self._entries.append(entry)

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._entries_lock:
            return list(self._entries)

    def discard(self, shipped: List[Dict[str, Any]]) -> None:
        """Drop shipped entries still at the head of the buffer."""
        shipped_ids = {id(entry) for entry in shipped}
        with self._entries_lock:
            while self._entries and id(self._entries[0]) in shipped_ids:
                self._entries.popleft()

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    def payload(self, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceModel": self.device_model,
            "logs": entries,
            "sentAt": now_millis(),
        }


def _jsonable(fields: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not fields:
        return None
    out = {}
    for k, v in fields.items():
        out[k] = v if isinstance(v, (str, int, float, bool)) or v is None else str(v)
    return out


def configure_logging(level: str = "INFO", buffer: Optional[LogBuffer] = None) -> LogBuffer:
    """
    Configure root logging once and attach the remote log buffer.

    Returns:
        The LogBuffer receiving tagged events
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    buffer = buffer or LogBuffer()
    root = logging.getLogger()
    if buffer not in root.handlers:
        root.addHandler(buffer)
    return buffer
