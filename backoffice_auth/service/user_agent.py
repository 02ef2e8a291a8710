from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

UNKNOWN = "Unknown"

_TABLET = re.compile(r"tablet|ipad|playbook|silk", re.I)
_MOBILE = re.compile(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", re.I)

# First match wins; Edge and Opera carry "Chrome" and Chrome carries "Safari"
_BROWSERS = (
    ("Edge", re.compile(r"edg(e|a|ios)?/", re.I)),
    ("Opera", re.compile(r"opr/|opera", re.I)),
    ("Chrome", re.compile(r"chrome/|crios/", re.I)),
    ("Firefox", re.compile(r"firefox/|fxios/", re.I)),
    ("Safari", re.compile(r"safari/", re.I)),
)

# iOS before macOS and Android before Linux for the same reason
_OPERATING_SYSTEMS = (
    ("Windows", re.compile(r"windows", re.I)),
    ("iOS", re.compile(r"iphone|ipad|ipod", re.I)),
    ("macOS", re.compile(r"mac os x|macintosh", re.I)),
    ("Android", re.compile(r"android", re.I)),
    ("Linux", re.compile(r"linux|x11", re.I)),
)


@dataclass(frozen=True)
class ParsedUserAgent:
    device_type: str
    browser: str
    os: str

    @property
    def label(self) -> str:
        return f"{self.browser} on {self.os}"


def parse_user_agent(user_agent: Optional[str]) -> ParsedUserAgent:
    if not user_agent:
        return ParsedUserAgent(device_type="unknown", browser=UNKNOWN, os=UNKNOWN)
    if _TABLET.search(user_agent):
        device_type = "tablet"
    elif _MOBILE.search(user_agent):
        device_type = "mobile"
    else:
        device_type = "desktop"
    browser = next((name for name, rx in _BROWSERS if rx.search(user_agent)), UNKNOWN)
    os_name = next(
        (name for name, rx in _OPERATING_SYSTEMS if rx.search(user_agent)), UNKNOWN
    )
    return ParsedUserAgent(device_type=device_type, browser=browser, os=os_name)
