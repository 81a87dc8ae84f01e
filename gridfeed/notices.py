"""
GridFeed — User-facing notices
Advisory messages the poller raises when its data source changes state.
The default notifier writes them to the log; a UI can supply its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from gridfeed.models import utc_now_iso


class NoticeLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    level:     NoticeLevel
    title:     str
    message:   str
    timestamp: str = field(default_factory=utc_now_iso)


Notifier = Callable[[Notice], None]

_LOG_LEVELS = {
    NoticeLevel.INFO:    "INFO",
    NoticeLevel.WARNING: "WARNING",
    NoticeLevel.ERROR:   "ERROR",
}


def log_notice(notice: Notice) -> None:
    logger.log(_LOG_LEVELS[notice.level], "[notice] {}: {}", notice.title, notice.message)


FALLBACK_NOTICE = (
    "Using simulated market data",
    "Live market data is unavailable; values shown are simulated until the connection recovers.",
)
RECOVERED_NOTICE = (
    "Live market data restored",
    "The market data connection has recovered; values are live again.",
)
ESCALATION_NOTICE = (
    "Market data outage persists",
    "Live market data has failed {count} times in a row; simulated values may be far from actual conditions.",
)
