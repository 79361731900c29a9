"""
Special dates: upcoming birthdays within a lookahead window.

Birth dates are stored as ISO strings; anything unparseable is ignored.
A February 29 birthday falls on March 1 in non-leap years.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional


def parse_birth_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value.strip()) < 10:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _anniversary(born: date, year: int) -> date:
    try:
        return born.replace(year=year)
    except ValueError:
        return date(year, 3, 1)


def next_birthday(born: date, today: date) -> date:
    """The next occurrence on or after ``today``."""
    occurrence = _anniversary(born, today.year)
    if occurrence < today:
        occurrence = _anniversary(born, today.year + 1)
    return occurrence


@dataclass(frozen=True)
class UpcomingBirthday:
    occurrence: date
    days_until: int
    age: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "birthday": self.occurrence.isoformat(),
            "daysUntil": self.days_until,
            "age": self.age,
        }


def upcoming_birthday(birth_date: Any, today: date, lookahead_days: int = 30) -> Optional[UpcomingBirthday]:
    """
    Args:
        birth_date: ISO date string (or date) from the person record
        today: Reference day
        lookahead_days: Largest distance still reported

    Returns:
        The next birthday when it is at most ``lookahead_days`` away, else None
    """
    born = parse_birth_date(birth_date)
    if born is None or born > today:
        return None
    occurrence = next_birthday(born, today)
    days_until = (occurrence - today).days
    if days_until > lookahead_days:
        return None
    return UpcomingBirthday(occurrence=occurrence, days_until=days_until, age=occurrence.year - born.year)
