from __future__ import annotations

from datetime import date

from careplan_core.clock import to_iso, utc_now

__all__ = ["parse_schedule_date", "to_iso", "today_utc", "utc_now"]


def parse_schedule_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def today_utc() -> date:
    return utc_now().date()
