"""
NFL season calendar utilities.

The current week is derived from the season start date: week 1 begins on the
start date and each week is seven days. Results are clamped to 1..23, which
covers the regular season and the playoffs.
"""
from datetime import date, datetime
from typing import Optional

MIN_WEEK = 1
MAX_WEEK = 23

# Default kickoff when SEASON_START_DATE is not configured
DEFAULT_START = (9, 5)


def season_start(season: int, start_date: Optional[str] = None) -> date:
    """Parse ``start_date`` (YYYY-MM-DD) or fall back to Sep 5 of ``season``."""
    if start_date:
        return datetime.strptime(start_date, "%Y-%m-%d").date()
    month, day = DEFAULT_START
    return date(season, month, day)


def current_week(
    season: int,
    start_date: Optional[str] = None,
    today: Optional[date] = None,
) -> int:
    today = today or date.today()
    start = season_start(season, start_date)
    if today < start:
        return MIN_WEEK
    week = (today - start).days // 7 + 1
    return max(MIN_WEEK, min(week, MAX_WEEK))
