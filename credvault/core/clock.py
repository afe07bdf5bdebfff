# =====================================================
# FILE: credvault/core/clock.py
# Injectable UTC clock (naive datetimes, like the rest of the models)
# =====================================================

from datetime import datetime, timedelta


class SystemClock:
    def now(self) -> datetime:
        return datetime.utcnow()


class FrozenClock:
    """Manually advanced clock for tests and replays"""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2024, 6, 20, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value
