"""
Incremental merge request synchronization.

A sync run drains the project's merge requests, asks the reconciler what to
do with each one, enriches only the new or changed ones and upserts them one
by one, so an interrupted run keeps its progress and a re-run converges.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gitlab_client import GitLabAPIError, GitLabAuthenticationError, GitLabClient
from mr_enricher import MergeRequestEnricher, build_merge_request_record
from mr_reconciler import SyncAction, decide_action
from mr_store import MergeRequestStore, StoreError
from pagination import walk_pages


class SyncError(Exception):
    """Raised when a sync run cannot start (unknown group or project)."""
    pass


@dataclass
class SyncSummary:
    """Counters for one sync run."""

    project_id: int
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_terminal: int = 0
    skipped_unchanged: int = 0
    failed: List[int] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_terminal + self.skipped_unchanged

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def record(self, action: SyncAction) -> None:
        if action is SyncAction.INSERT:
            self.inserted += 1
        elif action is SyncAction.UPDATE:
            self.updated += 1
        elif action is SyncAction.SKIP_TERMINAL:
            self.skipped_terminal += 1
        else:
            self.skipped_unchanged += 1


class MergeRequestSynchronizer:
    """
    Mirrors a GitLab project's merge requests into the local store.

    Merge requests are processed strictly one after another, including
    the nested note walk of each one.
    """

    def __init__(self, gitlab_client: GitLabClient, store: MergeRequestStore,
                 per_page: int = 100, enricher: Optional[MergeRequestEnricher] = None):
        """
        Args:
            gitlab_client: Client for the remote API
            store: Local merge request store
            per_page: Page size for every collection walk
            enricher: Detail enricher; defaults to one built on ``gitlab_client``
        """
        if gitlab_client is None:
            raise SyncError("GitLabClient is required")
        if store is None:
            raise SyncError("MergeRequestStore is required")

        self.gitlab_client = gitlab_client
        self.store = store
        self.per_page = per_page
        self.enricher = enricher or MergeRequestEnricher(gitlab_client, per_page)
        self.logger = logging.getLogger(__name__)

    def list_group_projects(self, group_name: str) -> List[Dict[str, Any]]:
        """
        Resolve a group and return all of its projects.

        Raises:
            SyncError: If the group cannot be found
        """
        try:
            group_id = self.gitlab_client.find_group_id(group_name)
        except GitLabAuthenticationError:
            raise
        except GitLabAPIError as e:
            raise SyncError(f"Failed to fetch group '{group_name}': {e}")

        if group_id is None:
            raise SyncError(f"Group '{group_name}' not found.")

        return walk_pages(
            lambda page, per_page: self.gitlab_client.list_projects(group_id, page, per_page),
            per_page=self.per_page,
            description=f"projects in group '{group_name}'"
        )

    def fetch_merge_requests(self, project_id: int) -> List[Dict[str, Any]]:
        """All merge requests of a project in any state; possibly incomplete on API failure."""
        self.logger.info("Fetching merge requests (paginated)...")
        return walk_pages(
            lambda page, per_page: self.gitlab_client.list_merge_requests(project_id, page, per_page, state="all"),
            per_page=self.per_page,
            description="merge requests"
        )

    def sync_project_by_id(self, project_id: int) -> SyncSummary:
        """
        Fetch a project's metadata and sync it.

        Raises:
            SyncError: If the project cannot be fetched
        """
        try:
            project = self.gitlab_client.get_project(project_id)
        except GitLabAuthenticationError:
            raise
        except GitLabAPIError as e:
            raise SyncError(f"Cannot access project {project_id}: {e}")
        return self.sync_project(project)

    def sync_project(self, project: Dict[str, Any]) -> SyncSummary:
        """
        Run one incremental sync for ``project``.

        Args:
            project: Project payload (id, name, path_with_namespace, created_at)

        Returns:
            SyncSummary; records that could not be persisted are listed in
            ``failed`` while the rest of the batch is still processed
        """
        project_id = project['id']
        summary = SyncSummary(project_id=project_id)

        try:
            self.store.upsert_project(project)
        except StoreError as e:
            self.logger.error(f"Failed to save project {project_id}: {e}")

        merge_requests = self.fetch_merge_requests(project_id)
        summary.fetched = len(merge_requests)

        if not merge_requests:
            self.logger.info("No merge requests found.")
            return summary

        self.logger.info(f"Found {len(merge_requests)} merge requests. Processing...")

        for mr in merge_requests:
            self._sync_merge_request(project_id, mr, summary)

        self.logger.info("All merge requests processed.")
        self.logger.info(
            f"Summary: {summary.inserted} new, {summary.updated} updated, "
            f"{summary.skipped} skipped, {len(summary.failed)} failed."
        )
        return summary

    def _sync_merge_request(self, project_id: int, mr: Dict[str, Any], summary: SyncSummary) -> None:
        mr_id = mr.get('id')
        label = f"MR !{mr.get('iid')}: \"{mr.get('title')}\""

        try:
            existing = self.store.get_merge_request(project_id, mr_id)
            decision = decide_action(mr, existing)

            if not decision.requires_detail:
                self.logger.info(f"Skipping {label} - {decision.reason}.")
                summary.record(decision.action)
                return

            if decision.action is SyncAction.UPDATE:
                self.logger.info(f"Updating {label} ({decision.reason})")
            else:
                self.logger.info(f"Processing new {label}")

            detail = self.enricher.enrich(project_id, mr['iid'])
            record = build_merge_request_record(project_id, mr, detail)
            self.store.upsert_merge_request(record)
            summary.record(decision.action)

        except StoreError as e:
            self.logger.error(f"Failed to persist {label}: {e}")
            summary.failed.append(mr_id)
        except (KeyError, TypeError) as e:
            self.logger.error(f"Malformed merge request payload for {label}: {e}")
            summary.failed.append(mr_id)
