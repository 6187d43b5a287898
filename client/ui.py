"""
client/ui.py -- Notification and navigation hooks the clients drive.

The dashboard and the mobile app plug their own toast and router into these
two seams. The default implementations log and keep a history, which is all a
headless embedding (or a test) needs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("sessiongate.client.ui")


@dataclass(frozen=True)
class Notification:
    level: str  # "success" | "error" | "info"
    message: str
    position: Optional[str] = None


class Notifier:
    """User-visible toasts."""

    def __init__(self, position: Optional[str] = None) -> None:
        self.position = position
        self.history: list[Notification] = []

    def notify(self, level: str, message: str) -> None:
        note = Notification(level=level, message=message, position=self.position)
        self.history.append(note)
        logger.info("[%s] %s", level, message)

    def success(self, message: str) -> None:
        self.notify("success", message)

    def error(self, message: str) -> None:
        self.notify("error", message)


class Navigator:
    """Route changes.

    Every navigation starts a new attempt; the Access Guard uses the attempt
    number to notify at most once per attempt to reach a protected view.
    """

    def __init__(self, location: str = "/") -> None:
        self.location = location
        self.history: list[str] = [location]
        self.attempt = 0

    def navigate(self, path: str, replace: bool = False) -> int:
        if replace and self.history:
            self.history[-1] = path
        else:
            self.history.append(path)
        self.location = path
        self.attempt += 1
        logger.debug("navigate -> %s (attempt %d)", path, self.attempt)
        return self.attempt
