"""
CSV reporting module for merge request statistics.

This module exports the per-squad latency statistics, and optionally the
late first comment counts, to a CSV file.
"""

import csv
import logging
from datetime import datetime
from typing import Dict, List, Any, Optional
from pathlib import Path

from mr_stats import SquadStats, format_duration


class CSVReportError(Exception):
    """Custom exception for CSV reporting related errors."""
    pass


class CSVReporter:
    """
    CSV reporter for merge request statistics.

    One row per squad with the raw averages in minutes next to a readable
    duration, so the file works both for spreadsheets and for people.
    """

    def __init__(self, output_path: str):
        """
        Initialize CSV reporter with output file path.

        Args:
            output_path: Path where the CSV file will be written

        Raises:
            CSVReportError: If output path is invalid
        """
        if not output_path:
            raise CSVReportError("Output path is required")

        self.output_path = Path(output_path)
        self.logger = logging.getLogger(__name__)

        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def generate_report(self, squad_stats: List[SquadStats],
                        late_comment_counts: Optional[Dict[str, int]] = None,
                        report_info: Optional[Dict[str, Any]] = None) -> str:
        """
        Generate CSV report from per-squad statistics.

        Args:
            squad_stats: Statistics rows, one per squad
            late_comment_counts: Optional squad -> late first comment count
            report_info: Optional metadata written as comment lines
                (project, date_range, threshold_minutes)

        Returns:
            Path to the generated CSV file

        Raises:
            CSVReportError: If report generation fails
        """
        self.validate_stats(squad_stats)

        try:
            headers = self._format_csv_headers(late_comment_counts is not None)
            rows = self._format_csv_rows(squad_stats, late_comment_counts)

            with open(self.output_path, 'w', newline='', encoding='utf-8') as csvfile:
                writer = csv.writer(csvfile)

                self._write_summary_header(writer, report_info)
                writer.writerow(headers)
                writer.writerows(rows)

            self.logger.info(f"Generated CSV report with {len(squad_stats)} squads at {self.output_path}")

            return str(self.output_path)

        except OSError as e:
            raise CSVReportError(f"Failed to generate CSV report: {e}")

    def _format_csv_headers(self, include_late_comments: bool) -> List[str]:
        headers = [
            'squad',
            'total_mrs',
            'merged_mrs',
            'merged_percent',
            'avg_time_to_first_comment_minutes',
            'avg_time_to_first_comment',
            'avg_time_to_approval_minutes',
            'avg_time_to_approval',
            'avg_time_to_merge_minutes',
            'avg_time_to_merge'
        ]
        if include_late_comments:
            headers.extend(['late_first_comments', 'late_first_comments_percent'])
        return headers

    def _format_csv_rows(self, squad_stats: List[SquadStats],
                         late_comment_counts: Optional[Dict[str, int]]) -> List[List[str]]:
        rows = []

        for stats in squad_stats:
            row = [
                stats.squad,
                str(stats.total_mrs),
                str(stats.merged_mrs),
                self._format_percent(stats.merged_mrs, stats.total_mrs),
                self._format_number(stats.avg_time_to_first_comment),
                format_duration(stats.avg_time_to_first_comment),
                self._format_number(stats.avg_time_to_approval),
                format_duration(stats.avg_time_to_approval),
                self._format_number(stats.avg_time_to_merge),
                format_duration(stats.avg_time_to_merge)
            ]

            if late_comment_counts is not None:
                late = late_comment_counts.get(stats.squad, 0)
                row.extend([str(late), self._format_percent(late, stats.total_mrs)])

            rows.append(row)

        return rows

    def _write_summary_header(self, writer, report_info: Optional[Dict[str, Any]]) -> None:
        """Write report metadata as comment lines above the header row."""
        if not report_info:
            return

        writer.writerow([f"# GitLab Merge Request Statistics - Generated {datetime.now().isoformat()}"])

        project = report_info.get('project')
        if project:
            writer.writerow([f"# Project: {project}"])

        date_range = report_info.get('date_range')
        if date_range:
            writer.writerow([f"# Date Range: {date_range}"])

        threshold = report_info.get('threshold_minutes')
        if threshold is not None:
            writer.writerow([f"# First Comment Threshold: {format_duration(threshold)}"])

        writer.writerow([])

    def _format_number(self, number: Optional[float]) -> str:
        """
        Format numeric values for CSV output.

        Args:
            number: Numeric value or None

        Returns:
            Formatted number string or empty string
        """
        if number is None:
            return ""

        try:
            return f"{float(number):.2f}"
        except (ValueError, TypeError):
            return ""

    def _format_percent(self, part: int, total: int) -> str:
        if not total:
            return "0"
        return str(round(part / total * 100))

    def validate_stats(self, squad_stats: List[SquadStats]) -> bool:
        """
        Validate statistics rows before writing.

        Raises:
            CSVReportError: If validation fails
        """
        if not isinstance(squad_stats, list):
            raise CSVReportError("Squad statistics must be a list")

        for i, stats in enumerate(squad_stats):
            if not isinstance(stats, SquadStats):
                raise CSVReportError(f"Statistics row at index {i} must be a SquadStats")

        return True
