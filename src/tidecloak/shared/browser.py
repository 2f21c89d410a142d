"""In-memory ``BrowserContext`` for hosts without a real page.

Used by embedded webview bridges that forward navigation to a native shell,
by server-driven test harnesses and by the test-suite. Navigations and
history rewrites are recorded instead of performed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

EXPIRED = "Thu, 01 Jan 1970 00:00:00 GMT"


class MemoryBrowser:
    """Records what a browser page would do.

    Attributes:
        session_storage: Per-tab transient storage
        cookies: Cookies currently set, by name
        navigations: URLs passed to ``assign`` in order
        history: URLs passed to ``replace_state`` in order
    """

    def __init__(self, url: str = "http://localhost/", title: str = ""):
        self._url = url
        self.title = title
        self.session_storage: dict[str, str] = {}
        self.cookies: dict[str, str] = {}
        self.navigations: list[str] = []
        self.history: list[str] = []

    @property
    def url(self) -> str:
        return self._url

    @property
    def origin(self) -> str:
        parts = urlsplit(self._url)
        return f"{parts.scheme}://{parts.netloc}"

    def assign(self, url: str) -> None:
        logger.debug(f"Navigate to {url}")
        self.navigations.append(url)

    def replace_state(self, url: str, title: str = "") -> None:
        self.history.append(url)
        self._url = url

    def set_cookie(
        self, name: str, value: str, path: str = "/", expires: str | None = None
    ) -> None:
        if expires and _is_past(expires):
            self.cookies.pop(name, None)
            return
        self.cookies[name] = value


def _is_past(expires: str) -> bool:
    try:
        return parsedate_to_datetime(expires) <= datetime.now(timezone.utc)
    except (TypeError, ValueError):
        return False
