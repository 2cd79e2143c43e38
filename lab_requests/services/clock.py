from datetime import datetime, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]

DISPLAY_FORMAT = "%Y-%m-%d %I:%M %p"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize as `2020-03-30T04:43:20.102Z`: UTC, millisecond precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def format_display(value: str | None, tz: tzinfo | None = None) -> str | None:
    if not value:
        return None
    moment = parse_iso(value)
    local = moment.astimezone(tz) if tz is not None else moment.astimezone()
    return local.strftime(DISPLAY_FORMAT)


def display_zone(name: str | None) -> tzinfo | None:
    # None means the server's local zone.
    return ZoneInfo(name) if name else None
