"""
Runtime toggles owned by the relay engine
"""

from dataclasses import dataclass
from typing import Any, Dict

from capture_relay.core.helpers import utc_now_iso


def toggle_status(enabled: bool) -> Dict[str, Any]:
    return {
        "enabled": enabled,
        "status": "active" if enabled else "paused",
        "timestamp": utc_now_iso(),
    }


@dataclass
class RelayFlags:
    capture_enabled: bool = True
    intercept_enabled: bool = False
