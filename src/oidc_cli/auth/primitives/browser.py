"""Browser launching for the authorization step."""

from __future__ import annotations

import logging
import webbrowser
from typing import Protocol

logger = logging.getLogger(__name__)


class BrowserLauncher(Protocol):
    """Protocol for opening the authorization URL in a user agent.

    Implementations return False instead of raising when no browser could
    be opened; the flow then falls back to showing the URL.
    """

    def open(self, url: str) -> bool: ...


class SystemBrowser:
    """Opens URLs with the platform's default browser."""

    def open(self, url: str) -> bool:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as e:
            logger.debug(f"Browser launch raised: {e}")
            return False
        return bool(opened)


class NoBrowser:
    """Launcher for headless sessions: never opens anything."""

    def open(self, url: str) -> bool:
        return False
