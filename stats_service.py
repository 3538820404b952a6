from __future__ import annotations
import calendar
import datetime
from typing import List, Optional, Dict
from db import (
    Clock,
    SessionRepository,
    WeightEntryRepository,
    utc_now,
)


def months_before(day: datetime.date, months: int) -> datetime.date:
    """Return the date ``months`` calendar months before ``day``."""
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return datetime.date(year, month, min(day.day, last_day))


class StatisticsService:
    """Compute workout and body weight summaries."""

    def __init__(
        self,
        session_repo: SessionRepository,
        weight_repo: WeightEntryRepository,
        clock: Clock | None = None,
        trend_months: int = 3,
        weight_history_limit: int = 100,
    ) -> None:
        self.sessions = session_repo
        self.weights = weight_repo
        self._clock = clock or utc_now
        self.trend_months = trend_months
        self.weight_history_limit = weight_history_limit

    async def workout_stats(self) -> Dict:
        """Total finished workouts, their rounded average duration and the latest one."""
        return await self.sessions.stats()

    async def weight_trend(self) -> Dict:
        """Return chart data for the trailing ``trend_months`` of body weight.

        Points are chronological. The y-range is padded by 10% of the spread,
        or by 5 units when every point has the same weight.
        """
        rows = await self.weights.fetch_history(self.weight_history_limit)
        latest: Optional[float] = rows[0][2] if rows else None
        cutoff = months_before(self._clock().date(), self.trend_months).isoformat()
        points: List[Dict] = [
            {"date": d, "weight": w} for _rid, d, w in reversed(rows) if d >= cutoff
        ]
        result: Dict = {
            "latest": latest,
            "points": points,
            "min": None,
            "max": None,
            "y_min": None,
            "y_max": None,
        }
        if not points:
            return result
        weights = [p["weight"] for p in points]
        low, high = min(weights), max(weights)
        spread = high - low
        padding = spread * 0.1 if spread > 0 else 5
        result.update(
            {
                "min": low,
                "max": high,
                "y_min": round(low - padding, 2),
                "y_max": round(high + padding, 2),
            }
        )
        return result
