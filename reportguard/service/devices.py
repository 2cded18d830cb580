"""Client-signal helpers: device classification, browser family, fingerprints."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional


@dataclass
class DeviceSignals:
    user_agent: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""
    platform: str = ""


def derive_fingerprint(signals: DeviceSignals) -> str:
    raw = "|".join(
        [
            signals.user_agent or "",
            signals.screen_resolution or "",
            signals.timezone or "",
            signals.language or "",
            signals.platform or "",
        ]
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def classify_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown"
    ua = user_agent.lower()
    # iPad user agents also contain "mobile"
    if "tablet" in ua or "ipad" in ua:
        return "Tablet"
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "Mobile"
    return "Desktop"


def describe_device(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    ua = user_agent.lower()
    if "iphone" in ua:
        return "iPhone"
    if "ipad" in ua:
        return "iPad"
    if "android" in ua:
        return "Android Device"
    if "windows" in ua:
        return "Windows PC"
    if "macintosh" in ua or "mac os" in ua:
        return "Mac"
    if "linux" in ua:
        return "Linux PC"
    return "Unknown Device"


def browser_family(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown"
    ua = user_agent.lower()
    # order matters: Edge and Chrome both advertise "chrome", Chrome advertises "safari"
    if "edg/" in ua or "edge" in ua:
        return "Edge"
    if "firefox" in ua:
        return "Firefox"
    if "chrome" in ua or "crios" in ua:
        return "Chrome"
    if "safari" in ua:
        return "Safari"
    return "Other"
