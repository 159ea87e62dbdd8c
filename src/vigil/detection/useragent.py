"""
User-agent parsing for threat heuristics.

Parsing is delegated to ua-parser. Only the browser family, its major
version, the OS family and whether the device is a known crawler are
kept; that is all the outdated-browser, bot and spoofing checks need.
"""

from dataclasses import dataclass
from typing import Optional

import ua_parser

# Mobile and embedded variants are checked against the desktop minimums
_BROWSER_ALIASES = {
    "Chrome Mobile": "Chrome",
    "Chrome Mobile iOS": "Chrome",
    "Chrome Mobile WebView": "Chrome",
    "Mobile Safari": "Safari",
    "Mobile Safari UI/WKWebView": "Safari",
    "Firefox Mobile": "Firefox",
    "Firefox iOS": "Firefox",
    "Edge Mobile": "Edge",
    "Opera Mobile": "Opera",
}

_UNKNOWN = "Other"


@dataclass
class UserAgentInfo:
    raw: str
    browser: Optional[str] = None
    version: Optional[int] = None
    os: Optional[str] = None
    crawler: bool = False

    def to_dict(self) -> dict:
        return {"browser": self.browser, "version": self.version, "os": self.os}


def _os_family(family: Optional[str]) -> Optional[str]:
    if not family or family == _UNKNOWN:
        return None
    # "Windows 10", "Windows XP" and plain "Windows" are one family here
    if family.startswith("Windows") and family != "Windows Phone":
        return "Windows"
    return family


def _major(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def parse_user_agent(user_agent: str) -> UserAgentInfo:
    """
    Parse a User-Agent header.

    Args:
        user_agent: Raw header value

    Returns:
        UserAgentInfo; unknown parts are None
    """
    info = UserAgentInfo(raw=user_agent)
    parsed = ua_parser.parse(user_agent)

    agent = parsed.user_agent
    if agent is not None and agent.family and agent.family != _UNKNOWN:
        info.browser = _BROWSER_ALIASES.get(agent.family, agent.family)
        info.version = _major(agent.major)

    if parsed.os is not None:
        info.os = _os_family(parsed.os.family)

    if parsed.device is not None:
        info.crawler = parsed.device.family == "Spider"

    return info
