"""
Clock tool — models don't know what time it is. This tool does.
"""

import logging
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)


class DateTimeTool:
    name = "current_time"
    description = "Return the current date and time, optionally at a UTC offset in hours."
    parameters = {
        "type": "object",
        "properties": {
            "utc_offset": {
                "type": "number",
                "description": "Hours from UTC, e.g. -5 or 5.5. Defaults to UTC.",
            },
        },
    }
    unsafe = False

    def __init__(self, now=None):
        self._now = now or (lambda: datetime.now(timezone.utc))

    def run(self, arguments: dict) -> str:
        offset = float(arguments.get("utc_offset", 0) or 0)
        if not -14 <= offset <= 14:
            raise ValueError(f"utc_offset out of range: {offset}")
        local = self._now().astimezone(timezone(timedelta(hours=offset)))
        return (
            f"{local.strftime('%Y-%m-%d %H:%M:%S, %A')} (UTC{offset:+.1f}), "
            f"unix {int(local.timestamp())}"
        )
