"""
Merge request latency statistics.

This module turns the stored merge requests into per-squad latency figures
(time to first comment, approval and merge) and late first comment counts.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from mr_store import MergeRequestStore


_DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


@dataclass(frozen=True)
class SquadStats:
    """Aggregated latency figures for one squad; averages in fractional minutes."""

    squad: str
    total_mrs: int
    merged_mrs: int
    avg_time_to_first_comment: Optional[float]
    avg_time_to_approval: Optional[float]
    avg_time_to_merge: Optional[float]
    commented_mrs: int = 0
    approved_mrs: int = 0
    merge_timed_mrs: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'SquadStats':
        return cls(
            squad=row['squad'],
            total_mrs=int(row['total_mrs'] or 0),
            merged_mrs=int(row['merged_mrs'] or 0),
            avg_time_to_first_comment=row['avg_time_to_first_comment'],
            avg_time_to_approval=row['avg_time_to_approval'],
            avg_time_to_merge=row['avg_time_to_merge'],
            commented_mrs=int(row.get('commented_mrs') or 0),
            approved_mrs=int(row.get('approved_mrs') or 0),
            merge_timed_mrs=int(row.get('merge_timed_mrs') or 0)
        )


def validate_date(date_str: Optional[str]) -> Optional[str]:
    """
    Check a YYYY-MM-DD filter bound; empty means no bound.

    Returns:
        The date string, or None for an empty bound

    Raises:
        ValueError: If the string is not a valid calendar date
    """
    if not date_str:
        return None
    if not _DATE_PATTERN.match(date_str):
        raise ValueError(f"Invalid date '{date_str}', expected YYYY-MM-DD")
    try:
        datetime.strptime(date_str, '%Y-%m-%d')
    except ValueError:
        raise ValueError(f"Invalid date '{date_str}', expected YYYY-MM-DD")
    return date_str


def format_duration(minutes: Optional[float]) -> str:
    """
    Format a duration in minutes as ``Nd Nh Nm``, ``Nh Nm`` or ``Nm``.

    Args:
        minutes: Duration in minutes, or None

    Returns:
        Readable duration, 'N/A' when there is no value
    """
    if minutes is None or minutes != minutes:
        return 'N/A'

    days = int(minutes // (60 * 24))
    hours = int((minutes % (60 * 24)) // 60)
    mins = int(minutes % 60)

    if days > 0:
        return f"{days}d {hours}h {mins}m"
    elif hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def describe_date_range(start_date: Optional[str], end_date: Optional[str]) -> str:
    if start_date and end_date:
        return f"from {start_date} to {end_date}"
    if start_date:
        return f"from {start_date}"
    if end_date:
        return f"until {end_date}"
    return "all time"


def _weighted_mean(pairs: List[tuple]) -> Optional[float]:
    """Mean of per-group averages weighted by their sample counts."""
    total_weight = sum(weight for _, weight in pairs if weight)
    if not total_weight:
        return None
    return sum(avg * weight for avg, weight in pairs if weight and avg is not None) / total_weight


class MRStatsAnalyzer:
    """Reads latency statistics from a MergeRequestStore."""

    def __init__(self, store: MergeRequestStore):
        if store is None:
            raise ValueError("MergeRequestStore is required")
        self.store = store
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _validate_range(start_date: Optional[str], end_date: Optional[str]):
        start_date = validate_date(start_date)
        end_date = validate_date(end_date)
        if start_date and end_date and start_date > end_date:
            raise ValueError(f"Start date {start_date} is after end date {end_date}")
        return start_date, end_date

    def get_squad_stats(self, project_id: int, start_date: Optional[str] = None,
                        end_date: Optional[str] = None) -> List[SquadStats]:
        """
        Per-squad statistics for a project, excluding closed and unclassified MRs.

        Args:
            project_id: Numeric project id
            start_date: Inclusive lower bound on creation date (YYYY-MM-DD)
            end_date: Inclusive upper bound on creation date (YYYY-MM-DD)

        Returns:
            One SquadStats per squad, ordered by squad name

        Raises:
            ValueError: If a date bound is invalid
        """
        start_date, end_date = self._validate_range(start_date, end_date)
        rows = self.store.query_stats(project_id, start_date, end_date)
        stats = [SquadStats.from_row(row) for row in rows]

        self.logger.debug(
            f"Computed stats for {len(stats)} squads in project {project_id} "
            f"({describe_date_range(start_date, end_date)})"
        )
        return stats

    def count_late_first_comments(self, project_id: int, threshold_minutes: float,
                                  start_date: Optional[str] = None,
                                  end_date: Optional[str] = None) -> Dict[str, int]:
        """
        Count per squad the MRs whose first comment came strictly later than the threshold.

        Raises:
            ValueError: If the threshold is negative or a date bound is invalid
        """
        if threshold_minutes is None or threshold_minutes < 0:
            raise ValueError("Comment threshold must be a non-negative number of minutes")

        start_date, end_date = self._validate_range(start_date, end_date)
        rows = self.store.query_late_comments(project_id, threshold_minutes, start_date, end_date)
        return {row['squad']: int(row['count']) for row in rows}

    def get_overall_stats(self, squad_stats: List[SquadStats]) -> SquadStats:
        """Fold per-squad rows into a single all-squads summary."""
        return SquadStats(
            squad='ALL',
            total_mrs=sum(s.total_mrs for s in squad_stats),
            merged_mrs=sum(s.merged_mrs for s in squad_stats),
            avg_time_to_first_comment=_weighted_mean(
                [(s.avg_time_to_first_comment, s.commented_mrs) for s in squad_stats]),
            avg_time_to_approval=_weighted_mean(
                [(s.avg_time_to_approval, s.approved_mrs) for s in squad_stats]),
            avg_time_to_merge=_weighted_mean(
                [(s.avg_time_to_merge, s.merge_timed_mrs) for s in squad_stats]),
            commented_mrs=sum(s.commented_mrs for s in squad_stats),
            approved_mrs=sum(s.approved_mrs for s in squad_stats),
            merge_timed_mrs=sum(s.merge_timed_mrs for s in squad_stats)
        )

    def get_hourly_distribution(self, project_id: int, utc_offset_hours: int = 7) -> List[Dict[str, Any]]:
        """MR counts and average minutes to first comment by squad and local creation hour."""
        return self.store.query_hourly_distribution(project_id, utc_offset_hours)

    def get_after_hours_merge_requests(self, project_id: int, hour: int = 16,
                                       utc_offset_hours: int = 7) -> List[Dict[str, Any]]:
        """
        Merge requests opened at or after ``hour`` local time.

        Raises:
            ValueError: If hour is outside 0-23
        """
        if not 0 <= hour <= 23:
            raise ValueError("hour must be between 0 and 23")
        return self.store.query_created_after_hour(project_id, hour, utc_offset_hours)
