"""
Detail enrichment for merge requests that need (re)processing.

Fetches the full note history and the approval events of a merge request
and derives the time of the first human comment and of the first approval.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from gitlab_client import GitLabClient
from pagination import walk_pages


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeRequestDetail:
    """Timestamps derived from a merge request's notes and approvals."""

    first_comment_at: Optional[str] = None
    approved_at: Optional[str] = None
    note_count: int = 0
    approval_count: int = 0


def _parse_timestamp(value: str) -> datetime:
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def earliest_timestamp(entries: List[Dict[str, Any]]) -> Optional[str]:
    """
    Return the earliest ``created_at`` string among ``entries``.

    Ordering uses the parsed instant, so mixed offsets compare correctly;
    the original string is returned unchanged. Entries without a parseable
    timestamp are ignored.
    """
    earliest_value = None
    earliest_instant = None

    for entry in entries:
        value = entry.get('created_at')
        if not value:
            continue
        try:
            instant = _parse_timestamp(value)
        except (ValueError, OverflowError) as e:
            logger.warning(f"Ignoring unparseable timestamp {value!r}: {e}")
            continue
        if earliest_instant is None or instant < earliest_instant:
            earliest_value, earliest_instant = value, instant

    return earliest_value


def first_human_comment_at(notes: List[Dict[str, Any]]) -> Optional[str]:
    """Earliest note that was not generated by GitLab itself."""
    return earliest_timestamp([note for note in notes if not note.get('system')])


def first_approval_at(approval_events: List[Dict[str, Any]]) -> Optional[str]:
    return earliest_timestamp(approval_events)


class MergeRequestEnricher:
    """
    Fetches comment and approval history for one merge request at a time.

    The enricher has no opinion on whether a merge request needs
    processing; that is the reconciler's job.
    """

    def __init__(self, gitlab_client: GitLabClient, per_page: int = 100):
        self.gitlab_client = gitlab_client
        self.per_page = per_page
        self.logger = logging.getLogger(__name__)

    def fetch_notes(self, project_id: int, mr_iid: int) -> List[Dict[str, Any]]:
        return walk_pages(
            lambda page, per_page: self.gitlab_client.list_notes(project_id, mr_iid, page, per_page),
            per_page=self.per_page,
            description=f"notes for MR !{mr_iid}"
        )

    def enrich(self, project_id: int, mr_iid: int) -> MergeRequestDetail:
        """
        Derive first comment and first approval times for a merge request.

        Args:
            project_id: Numeric project id
            mr_iid: Project-local merge request number

        Returns:
            MergeRequestDetail; missing data yields None timestamps
        """
        notes = self.fetch_notes(project_id, mr_iid)
        approval_events = self.gitlab_client.list_approval_events(project_id, mr_iid)

        detail = MergeRequestDetail(
            first_comment_at=first_human_comment_at(notes),
            approved_at=first_approval_at(approval_events),
            note_count=len(notes),
            approval_count=len(approval_events)
        )

        if detail.approved_at:
            self.logger.info(f"  Found approval timestamp: {detail.approved_at} for MR !{mr_iid}")
        else:
            self.logger.info(f"  No approval events found for MR !{mr_iid}")

        return detail


def build_merge_request_record(project_id: int, remote: Dict[str, Any],
                               detail: MergeRequestDetail) -> Dict[str, Any]:
    """
    Combine the remote payload and derived detail into a store record.

    The record never carries ``squad``; the store keeps whatever the
    classification batch assigned.
    """
    author = remote.get('author') or {}
    return {
        'id': remote['id'],
        'project_id': project_id,
        'title': remote.get('title') or '',
        'description': remote.get('description'),
        'created_at': remote['created_at'],
        'updated_at': remote['updated_at'],
        'state': remote['state'],
        'author_id': author.get('id'),
        'author_username': author.get('username'),
        'first_comment_at': detail.first_comment_at,
        'approved_at': detail.approved_at,
        'merged_at': remote.get('merged_at'),
    }
