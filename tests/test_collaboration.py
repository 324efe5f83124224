"""
Collaboration tests: splitting a job, accepting and completing tasks,
split payouts
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from errors import (
    AmountMismatchError,
    CollaborationLockedError,
    ConflictError,
    IllegalTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from models import CollaborationTask, Job, LedgerAccount, db, utcnow
from services import job_store, ledger

SPLIT = [
    {'description': 'Left wing rails', 'amount': 60000},
    {'description': 'Right wing rails', 'amount': 40000},
]


def _balance(actor):
    account = LedgerAccount.account_id_for(actor.actor_id, actor.role)
    return ledger.get_balance(account).balance


def _force(model, row_id, **values):
    """Overwrite columns behind the services' back."""
    db.session.execute(update(model).where(model.id == row_id).values(**values))
    db.session.commit()


@pytest.fixture
def collaboration(splitter, assigned_job, contractor):
    return splitter.create_collaboration(assigned_job.id, SPLIT, contractor)


@pytest.fixture
def active_collaboration(splitter, collaboration, contractor_y, contractor_z):
    first, second = collaboration.tasks
    splitter.accept_task(collaboration.id, first.id, contractor_y.actor_id)
    return splitter.accept_task(collaboration.id, second.id, contractor_z.actor_id)


class TestCreateCollaboration:
    """Scenario C: splitting a 100000 point job"""

    def test_split_links_parent_job(self, collaboration, assigned_job):
        job = job_store.get_job(assigned_job.id, refresh=True)

        assert collaboration.status == 'open'
        assert collaboration.total_amount == 100000
        assert [t.amount for t in collaboration.tasks] == [60000, 40000]
        assert [t.status for t in collaboration.tasks] == ['offered', 'offered']
        assert job.collaboration_id == collaboration.id

    def test_amounts_must_sum_to_final_amount(self, splitter, assigned_job, contractor):
        with pytest.raises(AmountMismatchError):
            splitter.create_collaboration(
                assigned_job.id,
                [{'amount': 70000}, {'amount': 40000}],
                contractor,
            )

    def test_update_with_wrong_total_is_rejected(self, splitter, collaboration, contractor):
        with pytest.raises(AmountMismatchError):
            splitter.update_tasks(collaboration.id, [{'amount': 70000}, {'amount': 40000}], contractor)

        collab = splitter.get_collaboration(collaboration.id, refresh=True)
        assert [t.amount for t in collab.tasks] == [60000, 40000]

    def test_update_resplits_open_collaboration(self, splitter, collaboration, contractor):
        collab = splitter.update_tasks(
            collaboration.id,
            [{'amount': 50000}, {'amount': 30000}, {'amount': 20000}],
            contractor,
        )
        assert [t.amount for t in collab.tasks] == [50000, 30000, 20000]
        assert collab.version == 2

    def test_only_assigned_contractor_splits(self, splitter, assigned_job, contractor_y):
        with pytest.raises(PermissionDeniedError):
            splitter.create_collaboration(assigned_job.id, SPLIT, contractor_y)

    def test_second_collaboration_is_locked(self, splitter, collaboration, assigned_job, contractor):
        with pytest.raises(CollaborationLockedError):
            splitter.create_collaboration(assigned_job.id, SPLIT, contractor)

    def test_task_amount_must_be_positive(self, splitter, assigned_job, contractor):
        with pytest.raises(ValidationError):
            splitter.create_collaboration(assigned_job.id, [{'amount': 100000}, {'amount': 0}], contractor)

    def test_pending_job_cannot_be_split(self, splitter, make_job, contractor):
        job = make_job()
        with pytest.raises(PermissionDeniedError):
            splitter.create_collaboration(job.id, SPLIT, contractor)


class TestAcceptance:
    """Task acceptance and activation"""

    def test_last_acceptance_activates(self, splitter, collaboration, contractor_y, contractor_z):
        first, second = collaboration.tasks

        collab = splitter.accept_task(collaboration.id, first.id, contractor_y.actor_id)
        assert collab.status == 'open'

        collab = splitter.accept_task(collaboration.id, second.id, contractor_z.actor_id)
        assert collab.status == 'active'
        assert collab.activated_at is not None
        assert sorted(t.assignee_id for t in collab.tasks) == ['contractor-y', 'contractor-z']

    def test_task_cannot_be_taken_twice(self, splitter, collaboration, contractor_y, contractor_z):
        first = collaboration.tasks[0]
        splitter.accept_task(collaboration.id, first.id, contractor_y.actor_id)

        with pytest.raises(ConflictError):
            splitter.accept_task(collaboration.id, first.id, contractor_z.actor_id)

    def test_rejection_is_recorded(self, splitter, collaboration, contractor_y):
        first = collaboration.tasks[0]
        collab = splitter.reject_task(collaboration.id, first.id, contractor_y.actor_id)

        task = collab.tasks[0]
        assert task.status == 'offered'
        assert task.rejected_by == ['contractor-y']

    def test_open_collaboration_blocks_parent_progress(self, engine, collaboration, assigned_job, contractor):
        with pytest.raises(IllegalTransitionError):
            engine.request_transition(assigned_job.id, 'product_preparing', contractor)

    def test_active_collaboration_lets_parent_progress(self, engine, active_collaboration, assigned_job, contractor):
        job = engine.request_transition(assigned_job.id, 'product_preparing', contractor)
        assert job.status == 'product_preparing'


class TestCompletion:
    """Completing every task completes the parent and splits the payout"""

    def test_tasks_wait_for_activation(self, splitter, collaboration, contractor_y):
        first = collaboration.tasks[0]
        splitter.accept_task(collaboration.id, first.id, contractor_y.actor_id)
        with pytest.raises(ValidationError):
            splitter.complete_task(collaboration.id, first.id, contractor_y)

    def test_last_completion_schedules_split_payments(
            self, engine, splitter, active_collaboration, assigned_job, advance,
            seller, contractor, contractor_y, contractor_z):
        advance(assigned_job.id, contractor, 'in_progress')
        first, second = active_collaboration.tasks
        finished_at = utcnow()

        splitter.complete_task(active_collaboration.id, first.id, contractor_y, now=finished_at)
        job = job_store.get_job(assigned_job.id, refresh=True)
        assert job.status == 'in_progress'

        collab = splitter.complete_task(active_collaboration.id, second.id, contractor_z, now=finished_at)
        job = job_store.get_job(assigned_job.id, refresh=True)

        assert collab.status == 'completed'
        assert job.status == 'completed'
        payments = ledger.find_transactions(job_id=job.id, tx_type='payment')
        assert sorted(p.amount for p in payments) == [40000, 60000]
        assert {p.status for p in payments} == {'pending'}

        settled = engine.try_settle(job.id, now=finished_at + timedelta(hours=49))
        assert len(settled) == 2
        assert _balance(contractor_y) == 60000
        assert _balance(contractor_z) == 40000
        assert ledger.find_transactions(job_id=job.id, tx_type='payment', status='pending') == []
        assert _balance(seller) == 0

    def test_parent_must_be_underway(self, splitter, active_collaboration, contractor_y, contractor_z):
        first, second = active_collaboration.tasks
        splitter.complete_task(active_collaboration.id, first.id, contractor_y)

        with pytest.raises(IllegalTransitionError):
            splitter.complete_task(active_collaboration.id, second.id, contractor_z)

        collab = splitter.get_collaboration(active_collaboration.id, refresh=True)
        assert collab.status == 'active'
        assert [t.status for t in collab.tasks] == ['completed', 'accepted']

    def test_stranger_cannot_complete_task(self, splitter, active_collaboration, other_seller):
        first = active_collaboration.tasks[0]
        with pytest.raises(PermissionDeniedError):
            splitter.complete_task(active_collaboration.id, first.id, other_seller)

    def test_job_amount_drift_blocks_final_payout(
            self, splitter, active_collaboration, assigned_job, advance, contractor, contractor_y, contractor_z):
        advance(assigned_job.id, contractor, 'in_progress')
        first, second = active_collaboration.tasks
        splitter.complete_task(active_collaboration.id, first.id, contractor_y)
        _force(Job, assigned_job.id, final_amount=90000)

        with pytest.raises(AmountMismatchError):
            splitter.complete_task(active_collaboration.id, second.id, contractor_z)

        collab = splitter.get_collaboration(active_collaboration.id, refresh=True)
        assert collab.status == 'active'
        assert job_store.get_job(assigned_job.id, refresh=True).status == 'in_progress'
        assert ledger.find_transactions(job_id=assigned_job.id, tx_type='payment') == []

    def test_payouts_must_match_held_escrow(
            self, splitter, active_collaboration, assigned_job, advance, contractor, contractor_y, contractor_z):
        advance(assigned_job.id, contractor, 'in_progress')
        first, second = active_collaboration.tasks
        splitter.complete_task(active_collaboration.id, first.id, contractor_y)
        # Tasks and job agree with each other but no longer with the 100000 held.
        _force(CollaborationTask, second.id, amount=30000)
        _force(Job, assigned_job.id, final_amount=90000)

        with pytest.raises(AmountMismatchError) as exc:
            splitter.complete_task(active_collaboration.id, second.id, contractor_z)

        assert exc.value.details == {'expected': 100000, 'actual': 90000}
        assert job_store.get_job(assigned_job.id, refresh=True).status == 'in_progress'
        assert ledger.find_transactions(job_id=assigned_job.id, tx_type='payment') == []

    def test_split_payments_reject_wrong_total(self, engine, assigned_job):
        with pytest.raises(AmountMismatchError):
            engine.schedule_split_payments(assigned_job, [('contractor-y', 60000, 'task-1')])
        assert ledger.find_transactions(job_id=assigned_job.id, tx_type='payment') == []


    def test_main_contractor_cannot_complete_parent_directly(
            self, engine, active_collaboration, assigned_job, advance, contractor):
        advance(assigned_job.id, contractor, 'in_progress')
        with pytest.raises(IllegalTransitionError):
            engine.request_transition(assigned_job.id, 'completed', contractor)


class TestCancellation:
    """Withdrawing a split and the locks an active split puts on the job"""

    def test_cancel_open_collaboration(self, splitter, collaboration, assigned_job, contractor):
        collab = splitter.cancel_collaboration(collaboration.id, contractor)

        assert collab.status == 'cancelled'
        assert job_store.get_job(assigned_job.id, refresh=True).collaboration_id is None

    def test_active_collaboration_cannot_be_cancelled(self, splitter, active_collaboration, contractor):
        with pytest.raises(CollaborationLockedError):
            splitter.cancel_collaboration(active_collaboration.id, contractor)

    def test_active_collaboration_locks_job_cancel(self, engine, active_collaboration, assigned_job, seller):
        with pytest.raises(CollaborationLockedError):
            engine.request_transition(assigned_job.id, 'cancelled', seller)
        assert _balance(seller) == 0

    def test_job_cancel_drops_open_collaboration(self, engine, splitter, collaboration, assigned_job, seller):
        engine.request_transition(assigned_job.id, 'cancelled', seller)

        collab = splitter.get_collaboration(collaboration.id, refresh=True)
        assert collab.status == 'cancelled'
        assert _balance(seller) == 100000

    def test_active_collaboration_blocks_compensation(
            self, engine, active_collaboration, assigned_job, advance, contractor, admin):
        advance(assigned_job.id, contractor, 'pickup_completed')
        engine.request_transition(assigned_job.id, 'customer_absent', contractor)

        with pytest.raises(CollaborationLockedError):
            engine.compensate(assigned_job.id, 'customer_absent', admin)
