from datetime import datetime, timezone
from typing import Any, Iterable, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_names(values: Iterable[Any] | None) -> list[str]:
    """Stringify, trim, drop empties and duplicates while keeping order."""
    result: list[str] = []
    for value in values or ():
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in result:
            result.append(text)
    return result
