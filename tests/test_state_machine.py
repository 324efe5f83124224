"""
State machine tests: legal edges, actor permissions and collaboration gates
"""
from types import SimpleNamespace

import pytest

from errors import (
    CollaborationLockedError,
    IllegalTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from services.state_machine import (
    Actor,
    SYSTEM_ACTOR,
    VALID_JOB_TRANSITIONS,
    allowed_targets,
    plan_transition,
)

SELLER = Actor('seller-s', 'seller')
CONTRACTOR = Actor('contractor-x', 'contractor')
OTHER_CONTRACTOR = Actor('contractor-y', 'contractor')
ADMIN = Actor('admin-a', 'admin')


def _job(status='pending', contractor_id=None, collaboration_id=None):
    return SimpleNamespace(
        id='job-1',
        seller_id=SELLER.actor_id,
        contractor_id=contractor_id,
        status=status,
        collaboration_id=collaboration_id,
    )


def _collab(status):
    return SimpleNamespace(id='collab-1', status=status)


class TestTransitionTable:
    """Test the edge table itself"""

    def test_terminal_states_have_no_exits(self):
        assert allowed_targets('completed') == []
        assert allowed_targets('cancelled') == []

    def test_every_target_is_a_known_status(self):
        for targets in VALID_JOB_TRANSITIONS.values():
            for target in targets:
                assert target in VALID_JOB_TRANSITIONS

    def test_completed_only_from_pickup_or_in_progress(self):
        sources = [s for s, targets in VALID_JOB_TRANSITIONS.items() if 'completed' in targets]
        assert sorted(sources) == ['in_progress', 'pickup_completed']

    def test_illegal_edge(self):
        with pytest.raises(IllegalTransitionError) as exc:
            plan_transition(_job('pending'), 'completed', ADMIN)
        assert exc.value.from_status == 'pending'
        assert exc.value.to_status == 'completed'

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            plan_transition(_job('pending'), 'archived', ADMIN)


class TestAssignment:
    """Test pending -> assigned"""

    def test_contractor_accepts_for_themselves(self):
        plan = plan_transition(_job(), 'assigned', CONTRACTOR)

        assert plan.patch['contractor_id'] == CONTRACTOR.actor_id
        assert plan.patch['accepted_at'] is not None
        assert plan.expect == {'contractor_id': None}

    def test_contractor_cannot_assign_someone_else(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_job(), 'assigned', CONTRACTOR, contractor_id=OTHER_CONTRACTOR.actor_id)

    def test_seller_must_name_contractor(self):
        with pytest.raises(ValidationError):
            plan_transition(_job(), 'assigned', SELLER)

        plan = plan_transition(_job(), 'assigned', SELLER, contractor_id=CONTRACTOR.actor_id)
        assert plan.patch['contractor_id'] == CONTRACTOR.actor_id

    def test_foreign_seller_cannot_assign(self):
        with pytest.raises(PermissionDeniedError):
            plan_transition(_job(), 'assigned', Actor('seller-t', 'seller'), contractor_id=CONTRACTOR.actor_id)


class TestProgress:
    """Test who may advance the work"""

    def test_assigned_contractor_advances(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'product_preparing', CONTRACTOR)
        assert plan.patch == {'status': 'product_preparing'}

    def test_other_contractor_cannot_advance(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'product_preparing', OTHER_CONTRACTOR)

    def test_seller_and_admin_cannot_do_contractor_work(self):
        job = _job('in_progress', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'completed', SELLER)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'completed', ADMIN)

    def test_completion_sets_completed_at(self):
        job = _job('in_progress', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'completed', CONTRACTOR)
        assert plan.patch['completed_at'] is not None

    def test_contractor_reports_exception_and_seller_resolves(self):
        job = _job('pickup_completed', contractor_id=CONTRACTOR.actor_id)
        plan_transition(job, 'customer_absent', CONTRACTOR)

        absent = _job('customer_absent', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(absent, 'assigned', CONTRACTOR)
        plan = plan_transition(absent, 'assigned', SELLER, scheduled_date='2026-05-01')
        assert plan.patch['scheduled_date'] == '2026-05-01'


class TestReschedule:
    """Test assigned -> reschedule_requested -> assigned"""

    def test_contractor_requests_reschedule_from_any_pre_pickup_step(self):
        for status in ('assigned', 'product_preparing', 'product_ready'):
            job = _job(status, contractor_id=CONTRACTOR.actor_id)
            plan = plan_transition(job, 'reschedule_requested', CONTRACTOR)
            assert plan.patch == {'status': 'reschedule_requested'}

    def test_owning_seller_may_request_reschedule(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'reschedule_requested', SELLER)
        assert plan.to_status == 'reschedule_requested'

    def test_outsiders_cannot_request_reschedule(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'reschedule_requested', OTHER_CONTRACTOR)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'reschedule_requested', Actor('seller-t', 'seller'))

    def test_no_reschedule_after_pickup(self):
        job = _job('pickup_completed', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(IllegalTransitionError):
            plan_transition(job, 'reschedule_requested', CONTRACTOR)

    def test_seller_approves_with_new_date(self):
        job = _job('reschedule_requested', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'assigned', SELLER, scheduled_date='2026-06-02T10:00:00')

        assert plan.from_status == 'reschedule_requested'
        assert plan.patch == {'status': 'assigned', 'scheduled_date': '2026-06-02T10:00:00'}
        assert plan.expect == {}

    def test_contractor_cannot_approve_own_request(self):
        job = _job('reschedule_requested', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'assigned', CONTRACTOR, scheduled_date='2026-06-02T10:00:00')

    def test_foreign_seller_cannot_approve(self):
        job = _job('reschedule_requested', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'assigned', Actor('seller-t', 'seller'))

    def test_admin_may_approve(self):
        job = _job('reschedule_requested', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'assigned', ADMIN)
        assert plan.patch == {'status': 'assigned'}

    def test_work_cannot_resume_without_approval(self):
        job = _job('reschedule_requested', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(IllegalTransitionError):
            plan_transition(job, 'product_preparing', CONTRACTOR)


class TestCancellation:
    """Test who may cancel"""

    def test_only_seller_or_admin_cancels_pending(self):
        plan_transition(_job('pending'), 'cancelled', SELLER)
        plan_transition(_job('pending'), 'cancelled', ADMIN)
        with pytest.raises(PermissionDeniedError):
            plan_transition(_job('pending'), 'cancelled', CONTRACTOR)

    def test_assigned_contractor_may_cancel_assigned_job(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id)
        plan = plan_transition(job, 'cancelled', CONTRACTOR, reason='van broke down')

        assert plan.patch['cancellation_reason'] == 'van broke down'
        assert plan.patch['cancelled_at'] is not None

    def test_contractor_cannot_cancel_in_progress_job(self):
        job = _job('in_progress', contractor_id=CONTRACTOR.actor_id)
        with pytest.raises(PermissionDeniedError):
            plan_transition(job, 'cancelled', CONTRACTOR)


class TestCollaborationGates:
    """Test parent-job edges while a collaboration exists"""

    def test_open_collaboration_blocks_progress(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id, collaboration_id='collab-1')
        with pytest.raises(IllegalTransitionError):
            plan_transition(job, 'product_preparing', CONTRACTOR, collaboration=_collab('open'))

    def test_open_collaboration_allows_cancel(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id, collaboration_id='collab-1')
        plan_transition(job, 'cancelled', SELLER, collaboration=_collab('open'))

    def test_active_collaboration_locks_cancel(self):
        job = _job('assigned', contractor_id=CONTRACTOR.actor_id, collaboration_id='collab-1')
        with pytest.raises(CollaborationLockedError):
            plan_transition(job, 'cancelled', SELLER, collaboration=_collab('active'))

    def test_completion_waits_for_all_tasks(self):
        job = _job('in_progress', contractor_id=CONTRACTOR.actor_id, collaboration_id='collab-1')
        with pytest.raises(IllegalTransitionError):
            plan_transition(job, 'completed', SYSTEM_ACTOR, collaboration=_collab('active'))

        plan = plan_transition(job, 'completed', SYSTEM_ACTOR, collaboration=_collab('completed'))
        assert plan.to_status == 'completed'
