"""
Change detection between remote merge requests and stored records.

The decision is a pure function of the remote payload and the stored row,
returned as an explicit SyncDecision so each outcome can be tested on its own.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


MERGED_STATE = 'merged'


class SyncAction(Enum):
    """What a sync run does with one remote merge request."""

    SKIP_TERMINAL = 'skip-terminal'
    SKIP_UNCHANGED = 'skip-unchanged'
    UPDATE = 'update'
    INSERT = 'insert'

    @property
    def requires_detail(self) -> bool:
        """Only inserts and updates fetch notes and approval events."""
        return self in (SyncAction.UPDATE, SyncAction.INSERT)


@dataclass(frozen=True)
class SyncDecision:
    action: SyncAction
    reason: str

    @property
    def requires_detail(self) -> bool:
        return self.action.requires_detail


def decide_action(remote: Dict[str, Any], local: Optional[Dict[str, Any]]) -> SyncDecision:
    """
    Decide whether to skip, update or insert a remote merge request.

    Only ``updated_at`` and ``state`` are compared. Other remote edits
    (title, description) that leave both untouched are not picked up.

    Args:
        remote: Merge request payload from the GitLab API
        local: Stored record for the same (id, project_id), or None

    Returns:
        SyncDecision carrying the action and a human readable reason
    """
    if local is None:
        return SyncDecision(SyncAction.INSERT, "new merge request")

    remote_state = remote.get('state')

    if local.get('state') == MERGED_STATE and remote_state == MERGED_STATE:
        return SyncDecision(SyncAction.SKIP_TERMINAL, "already processed and merged")

    if local.get('updated_at') == remote.get('updated_at') and local.get('state') == remote_state:
        return SyncDecision(SyncAction.SKIP_UNCHANGED, "no changes detected")

    changed = []
    if local.get('updated_at') != remote.get('updated_at'):
        changed.append('updated_at')
    if local.get('state') != remote_state:
        changed.append(f"state {local.get('state')} -> {remote_state}")

    return SyncDecision(SyncAction.UPDATE, f"changed: {', '.join(changed)}")
