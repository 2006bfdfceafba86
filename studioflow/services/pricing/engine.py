"""Session pricing from a tenant's commercial-hours window.

Pure functions over studio-local datetimes; callers convert to the tenant's
timezone first.
"""

from datetime import datetime, time
from decimal import Decimal

from pydantic import BaseModel

# Index matches `datetime.weekday()`.
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DayWindow(BaseModel):
    """Commercial window for one weekday; a disabled day is closed."""

    enabled: bool = False
    start: time = time(9, 0)
    end: time = time(18, 0)


CommercialHours = dict[str, DayWindow]


def parse_commercial_hours(raw: dict | None) -> CommercialHours:
    """Build a `CommercialHours` map from the stored JSON (`"09:00"` strings)."""

    hours: CommercialHours = {}
    for day, window in (raw or {}).items():
        key = day.lower()
        if key in WEEKDAYS and isinstance(window, dict):
            hours[key] = DayWindow.model_validate(window)
    return hours


def window_for(dt: datetime, commercial_hours: CommercialHours) -> DayWindow | None:
    """Return the enabled window for `dt`'s weekday, or None when closed."""

    window = commercial_hours.get(WEEKDAYS[dt.weekday()])
    if window is None or not window.enabled:
        return None
    return window


def is_commercial_hour(dt: datetime, commercial_hours: CommercialHours) -> bool:
    # Minute granularity; both boundaries are inclusive.
    window = window_for(dt, commercial_hours)
    if window is None:
        return False
    minute = dt.time().replace(second=0, microsecond=0)
    return window.start <= minute <= window.end


def price(
    dt: datetime,
    commercial_hours: CommercialHours,
    commercial_rate: Decimal,
    after_hours_rate: Decimal,
) -> Decimal:
    """Per-photo rate for a session starting at `dt`."""

    if is_commercial_hour(dt, commercial_hours):
        return Decimal(commercial_rate)
    return Decimal(after_hours_rate)


def session_total(
    dt: datetime,
    commercial_hours: CommercialHours,
    commercial_rate: Decimal,
    after_hours_rate: Decimal,
    minimum_photos: int,
) -> Decimal:
    """Rate at `dt` multiplied by the included photo count."""

    rate = price(dt, commercial_hours, commercial_rate, after_hours_rate)
    return (rate * minimum_photos).quantize(Decimal("0.01"))
