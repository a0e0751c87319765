"""
Unit tests for merge request change detection.
"""

from mr_reconciler import SyncAction, SyncDecision, decide_action


REMOTE = {
    'id': 1001,
    'iid': 7,
    'title': 'Add login page',
    'state': 'opened',
    'updated_at': '2025-04-02T09:00:00.000Z'
}


class TestDecideAction:
    """One test per outcome of the reconciler."""

    def test_insert_when_not_stored(self):
        decision = decide_action(REMOTE, None)

        assert decision.action is SyncAction.INSERT
        assert decision.requires_detail is True

    def test_skip_unchanged(self):
        local = {'state': 'opened', 'updated_at': '2025-04-02T09:00:00.000Z'}

        decision = decide_action(REMOTE, local)

        assert decision.action is SyncAction.SKIP_UNCHANGED
        assert decision.requires_detail is False

    def test_update_on_new_updated_at(self):
        local = {'state': 'opened', 'updated_at': '2025-04-01T09:00:00.000Z'}

        decision = decide_action(REMOTE, local)

        assert decision.action is SyncAction.UPDATE
        assert 'updated_at' in decision.reason

    def test_update_on_state_change(self):
        local = {'state': 'opened', 'updated_at': '2025-04-02T09:00:00.000Z'}
        remote = dict(REMOTE, state='merged')

        decision = decide_action(remote, local)

        assert decision.action is SyncAction.UPDATE
        assert 'opened -> merged' in decision.reason

    def test_skip_terminal_even_if_updated_at_differs(self):
        local = {'state': 'merged', 'updated_at': '2025-04-01T09:00:00.000Z'}
        remote = dict(REMOTE, state='merged', updated_at='2025-06-30T00:00:00.000Z')

        decision = decide_action(remote, local)

        assert decision.action is SyncAction.SKIP_TERMINAL
        assert decision.requires_detail is False

    def test_locally_merged_but_remote_not_merged_is_update(self):
        local = {'state': 'merged', 'updated_at': '2025-04-02T09:00:00.000Z'}

        decision = decide_action(REMOTE, local)

        assert decision.action is SyncAction.UPDATE

    def test_title_change_alone_is_not_detected(self):
        local = {'state': 'opened', 'updated_at': '2025-04-02T09:00:00.000Z', 'title': 'Old title'}

        decision = decide_action(REMOTE, local)

        assert decision.action is SyncAction.SKIP_UNCHANGED

    def test_unknown_state_compared_verbatim(self):
        local = {'state': 'locked', 'updated_at': '2025-04-02T09:00:00.000Z'}
        remote = dict(REMOTE, state='locked')

        assert decide_action(remote, local).action is SyncAction.SKIP_UNCHANGED


class TestSyncAction:

    def test_requires_detail_only_for_writes(self):
        assert {a for a in SyncAction if a.requires_detail} == {SyncAction.INSERT, SyncAction.UPDATE}

    def test_decision_is_immutable_value(self):
        assert SyncDecision(SyncAction.INSERT, "x") == SyncDecision(SyncAction.INSERT, "x")
