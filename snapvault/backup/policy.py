"""
Rotation policy: which retention tier a backup cycle produces.

A label is ``<tier>-<YYYYMMDD>``. The date part is fixed width, so labels of
one tier sort chronologically as plain strings.
"""

import enum
import functools
from datetime import date, datetime
from typing import Optional, Tuple


LABEL_DATE_FORMAT = '%Y%m%d'
SUNDAY = 6  # date.weekday()


@functools.total_ordering
class Tier(enum.Enum):
    """Retention class, ordered by precedence monthly > weekly > daily."""
    MONTHLY = 'monthly'
    WEEKLY = 'weekly'
    DAILY = 'daily'

    @property
    def precedence(self) -> int:
        return _PRECEDENCE[self.value]

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.precedence < other.precedence

    def __str__(self):
        return self.value


_PRECEDENCE = {'daily': 0, 'weekly': 1, 'monthly': 2}

# Highest precedence first
TIERS = (Tier.MONTHLY, Tier.WEEKLY, Tier.DAILY)


def make_label(tier: Tier, day: date) -> str:
    """Build the label for a tier on a given day, e.g. ``monthly-20240101``."""
    return f"{tier.value}-{day.strftime(LABEL_DATE_FORMAT)}"


def parse_label(label: str) -> Tuple[Tier, date]:
    """
    Split a label into its tier and date.

    Raises:
        ValueError: If the label is not ``<tier>-<YYYYMMDD>``
    """
    tier_part, sep, date_part = label.partition('-')
    if not sep or len(date_part) != 8:
        raise ValueError(f"Not a rotation label: {label}")

    try:
        tier = Tier(tier_part)
    except ValueError:
        raise ValueError(f"Unknown tier in label: {label}")

    try:
        day = datetime.strptime(date_part, LABEL_DATE_FORMAT).date()
    except ValueError:
        raise ValueError(f"Invalid date in label: {label}")

    return tier, day


def label_date(label: str) -> Optional[date]:
    """Date of a rotation label, or None for labels that don't follow the scheme."""
    try:
        return parse_label(label)[1]
    except ValueError:
        return None


def decide(today: date, history) -> Tuple[Tier, str]:
    """
    Select the tier and label to produce today.

    A tier with no prior capture is forced, which is how the first run of a
    dataset always produces a monthly capture. Monthly is checked before
    weekly, weekly before daily.

    Args:
        today: Date of the backup cycle
        history: Object with ``latest(tier) -> Optional[str]`` for the dataset

    Returns:
        Tuple of (tier, label)
    """
    if history.latest(Tier.MONTHLY) is None or today.day == 1:
        tier = Tier.MONTHLY
    elif history.latest(Tier.WEEKLY) is None or today.weekday() == SUNDAY:
        tier = Tier.WEEKLY
    else:
        tier = Tier.DAILY

    return tier, make_label(tier, today)
