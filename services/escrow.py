"""
Escrow Engine: binds job status changes to point movements.

- pending -> assigned: hold ``final_amount`` from the seller (completed escrow).
- -> completed: schedule a pending payment to the contractor, released after
  ESCROW_RELEASE_HOURS by ``try_settle`` unless a dispute is open.
- -> cancelled: refund whatever is still held to the seller.
- reschedule_requested -> assigned with a new date: record the schedule change.

The job write and its ledger entries commit together. Every ledger entry
carries an idempotency key ``{job_id}:{type}:{party}`` so a retried step never
moves points twice. For each job, escrow held always equals payments plus
compensations plus refunds.
"""

import logging
from datetime import timedelta

from sqlalchemy import select, update

from models import (
    db,
    CollaborationRequest,
    CollaborationTask,
    Dispute,
    Job,
    JobCompensation,
    JobScheduleChange,
    Transaction,
    generate_uuid,
    utcnow,
)
from errors import (
    AmountMismatchError,
    CollaborationLockedError,
    ConflictError,
    DisputeWindowClosedError,
    EscrowError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from services import job_store, ledger
from services.base import atomic
from services.cancellation import CancellationPolicy
from services.state_machine import plan_transition
import events

logger = logging.getLogger(__name__)

DISPUTE_DECISIONS = ("refund", "settle")


def _last_actor(job, status):
    """Who last moved ``job`` into ``status``, from its progress history."""
    for entry in reversed(job.progress_history or []):
        if entry.get("status") == status:
            return entry.get("actor_id")
    return None


class EscrowEngine:

    def __init__(self, release_hours=48, compensation_rates=None, cancellation_policy=None,
                 schedule_change_fee_rate=0):
        self.release_hours = release_hours
        self.schedule_change_fee_rate = schedule_change_fee_rate
        self.compensation_rates = compensation_rates or {
            "product_not_ready": 30,
            "customer_absent": 100,
        }
        self.cancellation_policy = cancellation_policy or CancellationPolicy()

    @classmethod
    def from_config(cls, config):
        return cls(
            release_hours=config.get("ESCROW_RELEASE_HOURS", 48),
            compensation_rates={
                "product_not_ready": config.get("COMPENSATION_PRODUCT_NOT_READY_RATE", 30),
                "customer_absent": config.get("COMPENSATION_CUSTOMER_ABSENT_RATE", 100),
            },
            cancellation_policy=CancellationPolicy.from_config(config),
            schedule_change_fee_rate=config.get("SCHEDULE_CHANGE_FEE_RATE", 0),
        )

    @property
    def release_window(self):
        return timedelta(hours=self.release_hours)

    def release_at(self, job):
        if job.completed_at is None:
            return None
        return job.completed_at + self.release_window

    # -----------------------------------------------------------------------
    # Job transitions
    # -----------------------------------------------------------------------
    def request_transition(self, job_id, to_status, actor, expected_version=None, contractor_id=None,
                           reason=None, scheduled_date=None, note=None, now=None):
        """Validate and apply a status change with its ledger effects.

        ``expected_version`` is the version the caller read; a stale value
        raises ConflictError before anything else is checked.
        """
        now = now or utcnow()
        with atomic():
            job = job_store.get_job(job_id, refresh=True)
            if expected_version is not None and job.version != expected_version:
                raise ConflictError(
                    "Job {} is at version {}, not {}".format(job_id, job.version, expected_version),
                    job_id=job_id,
                    current_version=job.version,
                )

            collaboration = self._collaboration_for(job)
            quote = None
            if to_status == "cancelled" and actor.role == "contractor":
                quote = self.cancellation_policy.enforce(job, actor.actor_id, now=now)
            old_scheduled_date = job.scheduled_date

            plan = plan_transition(
                job, to_status, actor,
                contractor_id=contractor_id,
                collaboration=collaboration,
                now=now,
                reason=reason,
                scheduled_date=job_store.parse_datetime(scheduled_date),
            )
            job = job_store.update_job(
                job_id, plan.patch, job.version,
                expect=plan.expect,
                actor_id=actor.actor_id,
                note=note or reason,
            )

            if plan.from_status == "pending" and to_status == "assigned":
                self._hold_escrow(job)
            elif plan.from_status == "reschedule_requested" and to_status == "assigned":
                if job.scheduled_date is not None and job.scheduled_date != old_scheduled_date:
                    self._record_schedule_change(job, old_scheduled_date, actor, reason, now)
            elif to_status == "completed" and (collaboration is None or collaboration.status == "cancelled"):
                self._schedule_payment(job)
            elif to_status == "cancelled":
                if quote is not None:
                    self._charge_cancellation_fee(job, quote)
                    self.cancellation_policy.record(job, actor.actor_id, quote, reason=reason, now=now)
                if collaboration is not None and collaboration.status == "open":
                    self._drop_open_collaboration(collaboration)
                self._refund_escrow(job, reason or "Job cancelled")

            events.emit(
                events.JOB_STATUS_CHANGED,
                job_id=job.id,
                from_status=plan.from_status,
                to_status=to_status,
                actor_id=actor.actor_id,
                seller_id=job.seller_id,
                contractor_id=job.contractor_id,
            )

        logger.info("Job %s: %s -> %s by %s %s", job.id, plan.from_status, to_status, actor.role, actor.actor_id)
        return job

    def check_cancellation(self, job_id, contractor_id, now=None):
        job = job_store.get_job(job_id, refresh=True)
        return self.cancellation_policy.check(job, contractor_id, now=now)

    def _collaboration_for(self, job):
        if not job.collaboration_id:
            return None
        return db.session.get(CollaborationRequest, job.collaboration_id, populate_existing=True)

    def _drop_open_collaboration(self, collaboration):
        result = db.session.execute(
            update(CollaborationRequest)
            .where(
                CollaborationRequest.id == collaboration.id,
                CollaborationRequest.version == collaboration.version,
                CollaborationRequest.status == "open",
            )
            .values(status="cancelled", version=collaboration.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Collaboration {} changed concurrently".format(collaboration.id))
        db.session.refresh(collaboration)
        events.emit(
            events.COLLABORATION_CANCELLED,
            collaboration_id=collaboration.id,
            job_id=collaboration.parent_job_id,
            requester_id=collaboration.requester_id,
            assignee_ids=[t.assignee_id for t in collaboration.tasks if t.assignee_id],
        )

    # -----------------------------------------------------------------------
    # Escrow accounting
    # -----------------------------------------------------------------------
    def held_amount(self, job_id):
        return -ledger.sum_for_job(job_id, "escrow")

    def releasable_amount(self, job_id):
        """Held escrow not yet paid out, compensated or refunded."""
        spent = (
            ledger.sum_for_job(job_id, "compensation")
            + ledger.sum_for_job(job_id, "refund")
            + ledger.sum_for_job(job_id, "payment", status="completed")
            + ledger.sum_for_job(job_id, "payment", status="pending")
        )
        return self.held_amount(job_id) - spent

    def _hold_escrow(self, job):
        amount = job.final_amount
        if not amount or amount <= 0:
            raise ValidationError("Job {} has no confirmed final_amount to hold".format(job.id), job_id=job.id)
        account = ledger.ensure_account(job.seller_id, "seller")
        ledger.append_transaction(
            account.id,
            "escrow",
            -amount,
            status="completed",
            job_id=job.id,
            key=ledger.idempotency_key(job.id, "escrow", account.id),
            description="Escrow for job {}".format(job.id),
        )
        events.emit(events.ESCROW_HELD, job_id=job.id, seller_id=job.seller_id, amount=amount)

    def _schedule_payment(self, job):
        amount = self.releasable_amount(job.id)
        if amount <= 0:
            logger.info("Job %s completed with nothing left to pay", job.id)
            return None
        account = ledger.ensure_account(job.contractor_id, "contractor")
        tx = ledger.append_transaction(
            account.id,
            "payment",
            amount,
            status="pending",
            job_id=job.id,
            key=ledger.idempotency_key(job.id, "payment", account.id),
            description="Payment for job {}".format(job.id),
        )
        events.emit(
            events.PAYMENT_SCHEDULED,
            job_id=job.id,
            contractor_id=job.contractor_id,
            amount=amount,
            release_at=self.release_at(job).isoformat(),
        )
        return tx

    def schedule_split_payments(self, job, payouts):
        """Issue one pending payment per collaboration task.

        ``payouts`` is a list of ``(assignee_id, amount, task_id)``; their sum
        must equal the escrow still releasable for the job.
        """
        total = sum(amount for _, amount, _ in payouts)
        releasable = self.releasable_amount(job.id)
        if total != releasable:
            raise AmountMismatchError(
                "Task amounts total {} but {} is held for job {}".format(total, releasable, job.id),
                expected=releasable,
                actual=total,
            )
        transactions = []
        with atomic():
            for assignee_id, amount, task_id in payouts:
                if amount <= 0:
                    continue
                account = ledger.ensure_account(assignee_id, "contractor")
                transactions.append(ledger.append_transaction(
                    account.id,
                    "payment",
                    amount,
                    status="pending",
                    job_id=job.id,
                    key=ledger.idempotency_key(job.id, "payment", task_id),
                    description="Collaboration task {} of job {}".format(task_id, job.id),
                ))
                events.emit(
                    events.PAYMENT_SCHEDULED,
                    job_id=job.id,
                    contractor_id=assignee_id,
                    amount=amount,
                    release_at=self.release_at(job).isoformat(),
                )
        return transactions

    def _refund_escrow(self, job, reason):
        for tx in ledger.find_transactions(job_id=job.id, tx_type="payment", status="pending"):
            ledger.settle_transaction(tx.id, "cancelled")

        amount = self.releasable_amount(job.id)
        if amount <= 0:
            return None
        account = ledger.ensure_account(job.seller_id, "seller")
        tx = ledger.append_transaction(
            account.id,
            "refund",
            amount,
            status="completed",
            job_id=job.id,
            key=ledger.idempotency_key(job.id, "refund", account.id),
            description="Refund for job {}: {}".format(job.id, reason),
        )
        events.emit(events.ESCROW_REFUNDED, job_id=job.id, seller_id=job.seller_id, amount=amount)
        return tx

    def _charge_cancellation_fee(self, job, quote):
        if not quote.requires_fee:
            return None
        account = ledger.ensure_account(job.contractor_id, "contractor")
        return ledger.append_transaction(
            account.id,
            "deduction",
            -quote.fee_amount,
            status="completed",
            job_id=job.id,
            key=ledger.idempotency_key(job.id, "deduction", account.id),
            description="Cancellation fee for job {} ({}%)".format(job.id, quote.fee_rate),
        )

    def _record_schedule_change(self, job, old_scheduled_date, actor, reason, now):
        """Keep the old and new visit dates of an approved reschedule.

        A contractor who asked for the reschedule pays
        ``budget_max * schedule_change_fee_rate // 100``.
        """
        requested_by = _last_actor(job, "reschedule_requested")
        fee_rate = self.schedule_change_fee_rate
        fee = 0
        if fee_rate > 0 and requested_by and requested_by == job.contractor_id:
            fee = (job.budget_max or 0) * fee_rate // 100

        change = JobScheduleChange(
            id=generate_uuid(),
            job_id=job.id,
            contractor_id=job.contractor_id,
            old_scheduled_date=old_scheduled_date,
            new_scheduled_date=job.scheduled_date,
            reason=reason,
            changed_by=actor.actor_id,
            fee_amount=fee,
            fee_rate=fee_rate if fee else 0,
            changed_at=now,
        )
        db.session.add(change)
        db.session.flush()

        if fee:
            account = ledger.ensure_account(job.contractor_id, "contractor")
            ledger.append_transaction(
                account.id,
                "deduction",
                -fee,
                status="completed",
                job_id=job.id,
                key=ledger.idempotency_key(job.id, "deduction", "schedule:{}".format(change.id)),
                description="Schedule change fee for job {} ({}%)".format(job.id, fee_rate),
            )
        events.emit(
            events.JOB_RESCHEDULED,
            job_id=job.id,
            seller_id=job.seller_id,
            contractor_id=job.contractor_id,
            actor_id=actor.actor_id,
            old_scheduled_date=old_scheduled_date.isoformat() if old_scheduled_date else None,
            new_scheduled_date=job.scheduled_date.isoformat(),
            fee_amount=fee,
        )
        logger.info("Job %s rescheduled %s -> %s (fee=%d)", job.id, old_scheduled_date, job.scheduled_date, fee)
        return change

    # -----------------------------------------------------------------------
    # Settlement
    # -----------------------------------------------------------------------
    def _open_dispute(self, job_id):
        return Dispute.query.filter_by(job_id=job_id, status="open").first()

    def try_settle(self, job_id, now=None):
        """Release pending payments for a completed job once its window passed.

        Safe to call repeatedly and from several processes: a payment that is
        already settled is skipped. Returns the transactions settled now.
        """
        now = now or utcnow()
        with atomic():
            job = job_store.get_job(job_id, refresh=True)
            if job.status != "completed" or job.completed_at is None:
                return []
            if self._open_dispute(job.id):
                logger.info("Job %s has an open dispute; settlement deferred", job.id)
                return []
            if now < self.release_at(job):
                return []

            settled = []
            for tx in ledger.find_transactions(job_id=job.id, tx_type="payment", status="pending"):
                settled.append(ledger.settle_transaction(tx.id, "completed"))
            for tx in settled:
                account = ledger.get_balance(tx.account_id)
                events.emit(
                    events.PAYMENT_SETTLED,
                    job_id=job.id,
                    contractor_id=account.owner_id,
                    amount=tx.amount,
                )

        if settled:
            logger.info("Settled %d payment(s) for job %s", len(settled), job_id)
        return settled

    def jobs_due_for_settlement(self, now=None):
        now = now or utcnow()
        cutoff = now - self.release_window
        open_disputes = select(Dispute.job_id).where(Dispute.status == "open")
        return (
            Job.query
            .join(Transaction, Transaction.job_id == Job.id)
            .filter(
                Job.status == "completed",
                Job.completed_at <= cutoff,
                Transaction.type == "payment",
                Transaction.status == "pending",
                ~Job.id.in_(open_disputes),
            )
            .distinct()
            .all()
        )

    def settle_due(self, now=None):
        """Scheduler entry point. One failing job does not stop the sweep."""
        now = now or utcnow()
        settled = 0
        for job in self.jobs_due_for_settlement(now):
            try:
                settled += len(self.try_settle(job.id, now=now))
            except ConflictError:
                logger.warning("Settlement of job %s raced another writer; will retry next run", job.id)
            except EscrowError:
                logger.exception("Settlement of job %s failed", job.id)
        return settled

    # -----------------------------------------------------------------------
    # Disputes
    # -----------------------------------------------------------------------
    def _is_task_assignee(self, job, actor):
        if actor.role != "contractor" or not job.collaboration_id:
            return False
        return CollaborationTask.query.filter_by(
            collaboration_id=job.collaboration_id,
            assignee_id=actor.actor_id,
        ).first() is not None

    def file_dispute(self, job_id, actor, reason=None, now=None):
        now = now or utcnow()
        with atomic():
            job = job_store.get_job(job_id, refresh=True)
            is_party = (
                (actor.role == "seller" and actor.actor_id == job.seller_id)
                or (actor.role == "contractor" and actor.actor_id == job.contractor_id)
                or self._is_task_assignee(job, actor)
                or actor.is_admin
            )
            if not is_party:
                raise PermissionDeniedError("Only the seller or a contractor of a job can dispute it", job_id=job_id)

            if job.status != "completed":
                raise ValidationError("Only completed jobs can be disputed", job_id=job_id, status=job.status)

            existing = self._open_dispute(job.id)
            if existing:
                return existing
            if now >= self.release_at(job) or not ledger.find_transactions(
                    job_id=job.id, tx_type="payment", status="pending"):
                raise DisputeWindowClosedError(
                    "Dispute window for job {} closed at {}".format(job.id, self.release_at(job).isoformat()),
                    job_id=job.id,
                )

            dispute = Dispute(id=generate_uuid(), job_id=job.id, filed_by=actor.actor_id, reason=reason,
                              status="open", open_key=job.id, created_at=now)
            db.session.add(dispute)
            # A concurrent filing hits the unique open_key and surfaces as ConflictError.
            db.session.flush()
            events.emit(
                events.DISPUTE_FILED,
                job_id=job.id,
                dispute_id=dispute.id,
                filed_by=actor.actor_id,
                seller_id=job.seller_id,
                contractor_id=job.contractor_id,
            )

        logger.warning("Dispute %s filed on job %s by %s", dispute.id, job.id, actor.actor_id)
        return dispute

    def resolve_dispute(self, job_id, decision, arbiter, note=None, now=None):
        """Apply the arbiter's decision: ``refund`` the seller or ``settle`` to the contractor."""
        if not (arbiter.is_admin or arbiter.is_system):
            raise PermissionDeniedError("Only an admin can resolve disputes")
        if decision not in DISPUTE_DECISIONS:
            raise ValidationError("decision must be one of {}".format(", ".join(DISPUTE_DECISIONS)))
        now = now or utcnow()

        with atomic():
            job = job_store.get_job(job_id, refresh=True)
            dispute = self._open_dispute(job.id)
            if not dispute:
                raise NotFoundError("No open dispute for job {}".format(job_id), job_id=job_id)

            if decision == "refund":
                self._refund_escrow(job, note or "Dispute resolved in favour of seller")
                new_status = "refunded"
            else:
                for tx in ledger.find_transactions(job_id=job.id, tx_type="payment", status="pending"):
                    ledger.settle_transaction(tx.id, "completed")
                new_status = "settled"

            result = db.session.execute(
                update(Dispute)
                .where(Dispute.id == dispute.id, Dispute.status == "open")
                .values(status=new_status, open_key=None, resolved_by=arbiter.actor_id, resolved_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Dispute {} was resolved concurrently".format(dispute.id))
            db.session.refresh(dispute)
            events.emit(
                events.DISPUTE_RESOLVED,
                job_id=job.id,
                dispute_id=dispute.id,
                decision=decision,
                seller_id=job.seller_id,
                contractor_id=job.contractor_id,
            )

        logger.info("Dispute %s on job %s resolved: %s", dispute.id, job.id, decision)
        return dispute

    # -----------------------------------------------------------------------
    # Compensation
    # -----------------------------------------------------------------------
    def compensate(self, job_id, kind, admin, reason=None, now=None):
        """Pay the contractor part of the escrow when the visit failed
        through no fault of theirs."""
        if not admin.is_admin:
            raise PermissionDeniedError("Only an admin can grant compensation")
        if kind not in self.compensation_rates:
            raise ValidationError("Unknown compensation type {}".format(kind))
        now = now or utcnow()

        with atomic():
            job = job_store.get_job(job_id, refresh=True)
            if job.status != kind:
                raise ValidationError("Job {} is {}, not {}".format(job.id, job.status, kind), job_id=job.id)
            collaboration = self._collaboration_for(job)
            if collaboration is not None and collaboration.status != "cancelled":
                raise CollaborationLockedError(
                    "Collaborative jobs are not compensated", job_id=job.id, collaboration_id=collaboration.id,
                )

            account = ledger.ensure_account(job.contractor_id, "contractor")
            key = ledger.idempotency_key(job.id, "compensation", "{}:{}".format(kind, account.id))
            existing = ledger.find_by_key(key)
            if existing:
                return JobCompensation.query.filter_by(job_id=job.id, compensation_type=kind).first()

            rate = self.compensation_rates[kind]
            amount = min(self.held_amount(job.id) * rate // 100, self.releasable_amount(job.id))
            if amount <= 0:
                raise ValidationError("Nothing left in escrow to compensate for job {}".format(job.id))

            ledger.append_transaction(
                account.id,
                "compensation",
                amount,
                status="completed",
                job_id=job.id,
                key=key,
                description="{} compensation for job {} ({}%)".format(kind, job.id, rate),
            )
            record = JobCompensation(
                id=generate_uuid(),
                job_id=job.id,
                contractor_id=job.contractor_id,
                compensation_type=kind,
                amount=amount,
                rate=rate,
                reason=reason,
                processed_by=admin.actor_id,
                compensated_at=now,
            )
            db.session.add(record)
            events.emit(
                events.COMPENSATION_PAID,
                job_id=job.id,
                contractor_id=job.contractor_id,
                seller_id=job.seller_id,
                amount=amount,
                kind=kind,
            )

        logger.info("Compensated contractor %s %d points for job %s (%s)", job.contractor_id, amount, job.id, kind)
        return record

    # -----------------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------------
    def escrow_summary(self, job_id):
        job = job_store.get_job(job_id)
        dispute = self._open_dispute(job.id)
        release_at = self.release_at(job)
        return {
            "job_id": job.id,
            "status": job.status,
            "held": self.held_amount(job.id),
            "compensated": ledger.sum_for_job(job.id, "compensation"),
            "refunded": ledger.sum_for_job(job.id, "refund"),
            "payment_pending": ledger.sum_for_job(job.id, "payment", status="pending"),
            "payment_completed": ledger.sum_for_job(job.id, "payment", status="completed"),
            "release_at": release_at.isoformat() if release_at else None,
            "open_dispute": dispute.to_dict() if dispute else None,
        }

    def schedule_changes(self, job_id):
        job = job_store.get_job(job_id)
        return (
            JobScheduleChange.query
            .filter_by(job_id=job.id)
            .order_by(JobScheduleChange.changed_at.asc())
            .all()
        )
