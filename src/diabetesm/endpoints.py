"""
Diabetes:M API endpoints.

NOTE: These endpoints are reverse-engineered from the analytics.diabetes-m.com
web portal and may change without notice.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional


# Authentication
LOGIN = "/api/v1/user/authentication/login_v2"
LOGOUT = "/api/v1/user/authentication/logout"
VERIFY_SESSION = "/api/v1/user/authentication/verify"

# Profile
PROFILE = "/api/v1/user/profile/get_profile"
SETTINGS = "/api/v1/user/settings/get"

# Statistics
STATISTICS = "/api/v1/stats/common_stats/get"

# Diary
DIARY_ENTRIES = "/api/v1/diary/entries/list"

# Foods
FOODS_SEARCH = "/api/v1/food/search_with_servings"

# Reports
REPORTS_LIST = "/api/v1/reports/manage/list"
GENERATE_REPORT = "/api/v1/reports/manage/create"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": "DiabetesM-Python/0.1",
}

LOGIN_DEVICE = "web"
LOGIN_CLIENT = "web"

_RANGE_DAYS = {
    "today": 0,
    "7": 7,
    "7days": 7,
    "14": 14,
    "30": 30,
    "30days": 30,
    "90": 90,
    "90days": 90,
}


def browser_headers(base_url: str) -> dict[str, str]:
    """Default headers plus the Origin/Referer the portal sends."""
    return {**DEFAULT_HEADERS, "Origin": base_url, "Referer": f"{base_url}/"}


def date_range_bounds(date_range: str, today: Optional[date] = None) -> tuple[int, int]:
    """
    Millisecond bounds for a named range ("today", "7days", "30", ...).

    Unknown ranges fall back to the last 7 days. The upper bound is the end
    of today.
    """
    today = today or date.today()
    days = _RANGE_DAYS.get(date_range, 7)
    start = datetime.combine(today - timedelta(days=days), time.min)
    end = datetime.combine(today, time.max)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)
