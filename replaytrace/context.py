from __future__ import annotations

import locale
import platform
import sys
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from replaytrace.types import DeviceInfo


@dataclass
class PageContext:
    """The page the recorder is currently attached to."""

    url: str = ""
    title: str = ""
    referrer: str = ""

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    def annotate(self, data: dict[str, Any] | None) -> dict[str, Any]:
        """Merge the current url, path and title into caller-supplied event data."""
        merged = dict(data or {})
        merged.update(url=self.url, path=self.path, title=self.title)
        return merged


def _user_agent() -> str:
    return f"replaytrace-python/{platform.python_version()} ({platform.system()} {platform.machine()})"


def _language() -> str | None:
    lang, _ = locale.getlocale()
    return lang


def _timezone() -> str | None:
    return time.tzname[time.daylight] if time.tzname else None


def collect_device_info(
    page: PageContext,
    viewport: tuple[int, int] | None = None,
    screen: tuple[int, int] | None = None,
) -> DeviceInfo:
    """Read the environment descriptor once; the engine reuses it for every batch."""
    viewport_width, viewport_height = viewport if viewport else (None, None)
    screen_width, screen_height = screen if screen else (viewport_width, viewport_height)
    return DeviceInfo(
        user_agent=_user_agent(),
        platform=sys.platform,
        language=_language(),
        timezone=_timezone(),
        screen_width=screen_width,
        screen_height=screen_height,
        viewport_width=viewport_width,
        viewport_height=viewport_height,
        url=page.url,
        referrer=page.referrer,
    )
