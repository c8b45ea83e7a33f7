from __future__ import annotations

from typing import Optional

UNKNOWN = "Unknown"

# Order matters: Edge and Chrome user agents also mention Safari, Edge also
# mentions Chrome, and iOS user agents say "like Mac OS X".
_BROWSERS = (
    ("Edg", "Edge"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)
_SYSTEMS = (
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Android", "Android"),
    ("Windows", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)


def describe_device(user_agent: Optional[str]) -> str:
    """Summarize a user agent as ``"<browser> on <os>"``.

    The result is informational only and never used for authorization.
    """
    if not user_agent:
        return f"{UNKNOWN} on {UNKNOWN}"
    browser = next((name for marker, name in _BROWSERS if marker in user_agent), UNKNOWN)
    system = next((name for marker, name in _SYSTEMS if marker in user_agent), UNKNOWN)
    return f"{browser} on {system}"
