from datetime import datetime, timedelta
from typing import Optional

from simulators.machine_sim.lib.models import SENTINEL_DATE

DATE_FORMAT = "%d.%m.%Y"


def is_sentinel(value: Optional[str]) -> bool:
    if value is None:
        return True
    s = str(value).strip()
    return not s or s.lower() == SENTINEL_DATE


def advance_date(value: Optional[str], days: int = 1) -> Optional[str]:
    """
    Advance a DD.MM.YYYY date by whole calendar days.

    Returns None for an empty or 'unknown' value, which must be left as is.
    Raises ValueError when the value is not a day-first date.
    """
    if is_sentinel(value):
        return None
    dt = datetime.strptime(str(value).strip(), DATE_FORMAT)
    return (dt + timedelta(days=days)).strftime(DATE_FORMAT)
