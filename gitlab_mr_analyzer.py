#!/usr/bin/env python3
"""
GitLab Merge Request Latency Analysis Tool

This tool mirrors GitLab merge requests into a local SQLite database and
reports, per squad:
- Time from MR creation to the first human comment
- Time from MR creation to the first approval
- Time from MR creation to merge

Usage:
    python gitlab_mr_analyzer.py projects
    python gitlab_mr_analyzer.py sync PROJECT_ID
    python gitlab_mr_analyzer.py stats PROJECT_ID [options]
    python gitlab_mr_analyzer.py assign-squads --squad NAME=user1,user2 [options]

Environment Variables (also read from .env):
    GITLAB_TOKEN: GitLab personal access token (required for projects/sync)
    GITLAB_GROUP: Group whose projects are listed (default: murid)
    GITLAB_API_URL: API base URL (default: https://gitlab.com/api/v4)
    GITLAB_DB_PATH: SQLite database file (default: gitlab_data.sqlite)
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from config import AnalyzerConfig, ConfigError
from csv_reporter import CSVReporter, CSVReportError
from gitlab_client import GitLabClient, GitLabAPIError, GitLabAuthenticationError
from mr_stats import MRStatsAnalyzer, SquadStats, describe_date_range, format_duration
from mr_store import MergeRequestStore, StoreError
from mr_sync import MergeRequestSynchronizer, SyncError, SyncSummary


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        verbose: Enable verbose logging output
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if verbose:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
    else:
        log_format = '%(asctime)s - %(levelname)s - %(message)s'

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_squad_assignments(values: Optional[List[str]]) -> Dict[str, List[str]]:
    """
    Parse ``NAME=user1,user2`` arguments into a squad -> usernames mapping.

    Raises:
        ValueError: If an argument is malformed
    """
    assignments: Dict[str, List[str]] = {}

    for value in values or []:
        name, sep, users = value.partition('=')
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Invalid squad assignment '{value}', expected NAME=user1,user2")

        usernames = [user.strip() for user in users.split(',') if user.strip()]
        if not usernames:
            raise ValueError(f"Squad '{name}' has no usernames")

        assignments.setdefault(name, []).extend(usernames)

    return assignments


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='Mirror GitLab merge requests and analyze review latency',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s projects
  %(prog)s sync 12345
  %(prog)s stats 12345 --start-date 2025-04-01 --threshold 60
  %(prog)s assign-squads --squad CMS=alice,bob --default-squad WEB --exclude carol

Environment Variables:
  GITLAB_TOKEN    GitLab personal access token (required for projects/sync)
        """
    )

    parser.add_argument('--env-file', help='Path to a .env file (default: search upwards for .env)')
    parser.add_argument('--db', help='SQLite database path (default: $GITLAB_DB_PATH or gitlab_data.sqlite)')
    parser.add_argument('--group', help='GitLab group name or path (default: $GITLAB_GROUP or murid)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress all output except errors')

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('projects', help="List the group's projects")

    sync_parser = subparsers.add_parser('sync', help="Fetch a project's merge requests into the database")
    sync_parser.add_argument('project_id', type=int, help='Numeric GitLab project id')

    stats_parser = subparsers.add_parser('stats', help='Show merge request statistics for a project')
    stats_parser.add_argument('project_id', type=int, help='Numeric GitLab project id')
    stats_parser.add_argument('--start-date', help='Only MRs created on or after this date (YYYY-MM-DD)')
    stats_parser.add_argument('--end-date', help='Only MRs created on or before this date (YYYY-MM-DD)')
    stats_parser.add_argument(
        '--threshold',
        type=float,
        help='Count MRs whose first comment came later than this many minutes'
    )
    stats_parser.add_argument('--output', '-o', help='Also write the statistics to this CSV file')
    stats_parser.add_argument(
        '--hourly',
        action='store_true',
        help='Show MR counts and time to first comment by local creation hour'
    )
    stats_parser.add_argument(
        '--utc-offset',
        type=int,
        default=7,
        help='Local time offset from UTC in hours for --hourly and --after-hour (default: 7)'
    )
    stats_parser.add_argument(
        '--after-hour',
        type=int,
        metavar='HOUR',
        help='List MRs created at or after this local hour (0-23)'
    )

    squads_parser = subparsers.add_parser('assign-squads', help='Classify stored merge requests into squads')
    squads_parser.add_argument(
        '--squad',
        action='append',
        metavar='NAME=USER1,USER2',
        help='Assign MRs by these authors to squad NAME (repeatable)'
    )
    squads_parser.add_argument('--default-squad', help='Squad for unclassified MRs of all other authors')
    squads_parser.add_argument(
        '--exclude',
        action='append',
        default=[],
        metavar='USERNAME',
        help='Author never given the default squad (repeatable)'
    )
    squads_parser.add_argument('--project-id', type=int, help='Only classify MRs of this project')

    return parser.parse_args(argv)


def print_sync_summary(summary: SyncSummary) -> None:
    print(f"\nSync Results for project {summary.project_id}")
    print("=" * 40)
    print(f"  Merge requests fetched: {summary.fetched}")
    print(f"  New: {summary.inserted}")
    print(f"  Updated: {summary.updated}")
    print(f"  Skipped (merged): {summary.skipped_terminal}")
    print(f"  Skipped (unchanged): {summary.skipped_unchanged}")
    if summary.has_failures:
        print(f"  Failed to save: {len(summary.failed)} (ids: {', '.join(str(i) for i in summary.failed)})")


def print_stats(squad_stats: List[SquadStats], overall: SquadStats, date_range_text: str,
                late_counts: Optional[Dict[str, int]] = None,
                threshold: Optional[float] = None) -> None:
    """
    Print merge request statistics to stdout.

    Averages are rounded to whole minutes here only; the stored and
    exported figures stay fractional.
    """
    print(f"\n----- Merge Request Statistics ({date_range_text}) -----")

    for stats in squad_stats + [overall]:
        merged_pct = round(stats.merged_mrs / stats.total_mrs * 100) if stats.total_mrs else 0
        print(f"\n[{stats.squad}]")
        print(f"Total MRs: {stats.total_mrs}")
        print(f"Merged MRs: {stats.merged_mrs} ({merged_pct}%)")
        print(f"Average time to first comment: {format_duration(stats.avg_time_to_first_comment)}")
        print(f"Average time to approval: {format_duration(stats.avg_time_to_approval)}")
        print(f"Average time to merge: {format_duration(stats.avg_time_to_merge)}")

        if late_counts is not None:
            late = late_counts.get(stats.squad, 0) if stats is not overall else sum(late_counts.values())
            late_pct = round(late / stats.total_mrs * 100) if stats.total_mrs else 0
            print(f"MRs with first comment after {format_duration(threshold)}: {late} ({late_pct}%)")

    print('------------------------------------')


def print_hourly_distribution(rows: List[Dict], utc_offset: int) -> None:
    print(f"\n----- MRs by creation hour (UTC{utc_offset:+d}) -----")
    for row in rows:
        # strftime yields NULL for a created_at SQLite cannot parse
        hour = f"{row['hour']:02d}:00" if row['hour'] is not None else "--:--"
        print(
            f"  {row['squad']:<10} {hour}  {row['mr_count']:>4} MRs  "
            f"avg to first comment: {format_duration(row['avg_minutes_until_comment'])}"
        )


def print_after_hours(rows: List[Dict], hour: int, utc_offset: int) -> None:
    print(f"\n----- MRs created at or after {hour:02d}:00 (UTC{utc_offset:+d}) -----")
    for row in rows:
        print(
            f"  {row['created_at_local']}  {row['author_username']:<20} "
            f"{format_duration(row['minutes_until_first_comment']):>12}  {row['title']}"
        )


def run_projects(config: AnalyzerConfig) -> int:
    client = GitLabClient.from_config(config)
    store = MergeRequestStore(config.database_path)
    synchronizer = MergeRequestSynchronizer(client, store, per_page=config.per_page)

    projects = synchronizer.list_group_projects(config.group_name)
    if not projects:
        print('No repositories found in this group.')
        return 0

    for project in projects:
        print(f"{project['id']:>10}  {project.get('path_with_namespace') or project.get('name')}")
    return 0


def run_sync(config: AnalyzerConfig, project_id: int, quiet: bool = False) -> int:
    client = GitLabClient.from_config(config)
    store = MergeRequestStore(config.database_path)
    synchronizer = MergeRequestSynchronizer(client, store, per_page=config.per_page)

    summary = synchronizer.sync_project_by_id(project_id)

    if not quiet:
        print_sync_summary(summary)

    return 1 if summary.has_failures else 0


def run_stats(config: AnalyzerConfig, args: argparse.Namespace) -> int:
    store = MergeRequestStore(config.database_path)
    analyzer = MRStatsAnalyzer(store)

    squad_stats = analyzer.get_squad_stats(args.project_id, args.start_date, args.end_date)
    late_counts = None
    if args.threshold is not None:
        late_counts = analyzer.count_late_first_comments(
            args.project_id, args.threshold, args.start_date, args.end_date
        )

    date_range_text = describe_date_range(args.start_date, args.end_date)

    if not args.quiet:
        if not squad_stats:
            print(f"\nNo classified merge requests found for project {args.project_id} ({date_range_text}).")
        else:
            overall = analyzer.get_overall_stats(squad_stats)
            print_stats(squad_stats, overall, date_range_text, late_counts, args.threshold)

        if args.hourly:
            print_hourly_distribution(
                analyzer.get_hourly_distribution(args.project_id, args.utc_offset), args.utc_offset
            )

        if args.after_hour is not None:
            print_after_hours(
                analyzer.get_after_hours_merge_requests(args.project_id, args.after_hour, args.utc_offset),
                args.after_hour,
                args.utc_offset
            )

    if args.output:
        project = store.get_project(args.project_id)
        reporter = CSVReporter(args.output)
        output_file = reporter.generate_report(
            squad_stats,
            late_counts,
            {
                'project': project['path_with_namespace'] if project else str(args.project_id),
                'date_range': date_range_text,
                'threshold_minutes': args.threshold
            }
        )
        if not args.quiet:
            print(f"\nDetailed results saved to: {output_file}")

    return 0


def run_assign_squads(config: AnalyzerConfig, args: argparse.Namespace) -> int:
    assignments = parse_squad_assignments(args.squad)
    if not assignments and not args.default_squad:
        print("Error: give at least one --squad or a --default-squad")
        return 1

    store = MergeRequestStore(config.database_path)
    updated = store.assign_squads(
        assignments,
        default_squad=args.default_squad,
        excluded_usernames=args.exclude,
        project_id=args.project_id
    )

    if not args.quiet:
        print(f"Assigned squads to {updated} merge requests.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main application entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_arguments(argv)

    if args.debug:
        log_level = "DEBUG"
    elif args.quiet:
        log_level = "ERROR"
    else:
        log_level = "INFO"

    setup_logging(log_level, args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = AnalyzerConfig.from_env(args.env_file, database_path=args.db, group_name=args.group)

        if args.command == 'projects':
            return run_projects(config)
        if args.command == 'sync':
            return run_sync(config, args.project_id, args.quiet)
        if args.command == 'stats':
            return run_stats(config, args)
        if args.command == 'assign-squads':
            return run_assign_squads(config, args)

        logger.error(f"Unknown command: {args.command}")
        return 1

    except GitLabAuthenticationError as e:
        logger.error(f"GitLab authentication failed: {e}")
        print("\n❌ GitLab authentication failed!")
        print("Please ensure GITLAB_TOKEN is set (environment or .env) with a valid token.")
        return 1

    except (ConfigError, ValueError) as e:
        logger.error(f"Invalid input: {e}")
        print(f"\n❌ {e}")
        return 1

    except (SyncError, GitLabAPIError) as e:
        logger.error(f"Sync failed: {e}")
        print(f"\n❌ {e}")
        return 1

    except (StoreError, CSVReportError) as e:
        logger.error(f"Storage failed: {e}")
        print(f"\n❌ {e}")
        return 1

    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
