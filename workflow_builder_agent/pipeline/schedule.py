"""Schedule normalisation for the scheduled-time trigger.

The execution engine only understands five-field cron expressions
("minute hour day-of-month month day-of-week"). Collaborators sometimes
answer with prose ("every weekday at 9am"); to_cron() converts the common
phrasings and returns None for anything it cannot map with confidence.
"""

from __future__ import annotations

import re

_CRON_FIELD_RE = [
    re.compile(r"^(\*|\d{1,2})([-/,]\d{1,2})*(/\d{1,2})?$|^\*/\d{1,2}$"),          # minute
    re.compile(r"^(\*|\d{1,2})([-/,]\d{1,2})*(/\d{1,2})?$|^\*/\d{1,2}$"),          # hour
    re.compile(r"^(\*|\?|\d{1,2})([-/,]\d{1,2})*(/\d{1,2})?$|^\*/\d{1,2}$|^L$"),  # day of month
    re.compile(r"^(\*|\d{1,2}|[A-Za-z]{3})([-/,](\d{1,2}|[A-Za-z]{3}))*$|^\*/\d{1,2}$"),
    re.compile(r"^(\*|\?|[0-7]|[A-Za-z]{3})([-/,]([0-7]|[A-Za-z]{3}))*$|^\*/[0-7]$"),
]
_FIELD_RANGES = [(0, 59), (0, 23), (1, 31), (1, 12), (0, 7)]

_WEEKDAYS = {
    "sunday": 0, "monday": 1, "tuesday": 2, "wednesday": 3,
    "thursday": 4, "friday": 5, "saturday": 6,
}

_TIME_RE = re.compile(r"\b(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b|\bat\s+(\d{1,2})(?::(\d{2}))?\b")
_EVERY_N_RE = re.compile(r"every\s+(\d{1,2})\s+(minute|min|hour)s?")
_DAY_OF_MONTH_RE = re.compile(r"\bon the\s+(\d{1,2})(?:st|nd|rd|th)?\b|\b(\d{1,2})(?:st|nd|rd|th)\s+of\b")


def is_cron(value: str) -> bool:
    """True when value is a syntactically valid five-field cron expression."""
    if not isinstance(value, str):
        return False
    parts = value.split()
    if len(parts) != 5:
        return False
    for part, pattern, (lo, hi) in zip(parts, _CRON_FIELD_RE, _FIELD_RANGES):
        if not pattern.match(part):
            return False
        base, _, step = part.partition("/")
        if step and (not step.isdigit() or int(step) == 0):
            return False
        for number in re.findall(r"\d+", base):
            if not lo <= int(number) <= hi:
                return False
    return True


def _parse_time(text: str) -> tuple[int, int] | None:
    if "noon" in text:
        return 12, 0
    if "midnight" in text:
        return 0, 0
    m = _TIME_RE.search(text)
    if not m:
        return None
    if m.group(1) is not None:
        hour, minute, meridiem = int(m.group(1)), int(m.group(2) or 0), m.group(3)
        if not 1 <= hour <= 12:
            return None
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    else:
        hour, minute = int(m.group(4)), int(m.group(5) or 0)
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def to_cron(value: str) -> str | None:
    """Return a five-field cron string for value, or None when it cannot be mapped.

    Values that already are valid cron are returned unchanged (whitespace
    collapsed). Times default to 09:00 when the phrase names none.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    stripped = " ".join(value.split())
    if is_cron(stripped):
        return stripped

    text = stripped.lower()

    m = _EVERY_N_RE.search(text)
    if m:
        n, unit = int(m.group(1)), m.group(2)
        if unit.startswith("min") and 1 <= n <= 59:
            return f"*/{n} * * * *"
        if unit == "hour" and 1 <= n <= 23:
            return f"0 */{n} * * *"
        return None
    if re.search(r"\bevery minute\b", text):
        return "* * * * *"
    if re.search(r"\b(hourly|every hour)\b", text):
        return "0 * * * *"

    hour, minute = _parse_time(text) or (9, 0)

    if re.search(r"\bweekdays?\b|monday (to|through|-) friday", text):
        return f"{minute} {hour} * * 1-5"
    if re.search(r"\bweekends?\b", text):
        return f"{minute} {hour} * * 0,6"
    days = [num for name, num in _WEEKDAYS.items() if re.search(rf"\b{name}s?\b", text)]
    if days:
        return f"{minute} {hour} * * {','.join(str(d) for d in sorted(days))}"
    if re.search(r"\b(weekly|every week)\b", text):
        return f"{minute} {hour} * * 1"
    if re.search(r"\b(monthly|every month)\b", text) or _DAY_OF_MONTH_RE.search(text):
        dm = _DAY_OF_MONTH_RE.search(text)
        day = int(dm.group(1) or dm.group(2)) if dm else 1
        if not 1 <= day <= 31:
            return None
        return f"{minute} {hour} {day} * *"
    if re.search(r"\b(daily|every day|each day|every morning|every evening|every night)\b", text):
        if _parse_time(text) is None:
            if "evening" in text:
                hour, minute = 18, 0
            elif "night" in text:
                hour, minute = 21, 0
        return f"{minute} {hour} * * *"
    if _parse_time(text) is not None and re.search(r"\bat\b", text):
        return f"{minute} {hour} * * *"
    return None
