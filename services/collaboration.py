"""
Collaboration Splitter: divides one assigned job among several contractors.

The assigned contractor splits the job's ``final_amount`` into tasks. Other
contractors accept tasks; the last acceptance activates the split, and the
last completion completes the parent job and pays each task's assignee.
"""

import logging

from sqlalchemy import or_, update

from models import db, CollaborationRequest, CollaborationTask, generate_uuid, utcnow
from errors import (
    AmountMismatchError,
    CollaborationLockedError,
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from services import job_store
from services.base import atomic
from services.state_machine import SYSTEM_ACTOR
import events

logger = logging.getLogger(__name__)


def _normalize_tasks(tasks):
    if not isinstance(tasks, list) or not tasks:
        raise ValidationError("At least one task is required")
    normalized = []
    for index, task in enumerate(tasks):
        if not isinstance(task, dict):
            raise ValidationError("task {} must be an object".format(index))
        amount = task.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("task {} amount must be a positive integer".format(index))
        normalized.append({"description": task.get("description"), "amount": amount})
    return normalized


def _check_sum(job, tasks):
    total = sum(task["amount"] for task in tasks)
    if total != job.final_amount:
        raise AmountMismatchError(
            "Task amounts total {} but job amount is {}".format(total, job.final_amount),
            expected=job.final_amount,
            actual=total,
        )
    return total


class CollaborationSplitter:

    def __init__(self, escrow_engine):
        self.escrow = escrow_engine

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def get_collaboration(self, collab_id, refresh=False):
        collab = db.session.get(CollaborationRequest, collab_id, populate_existing=refresh)
        if not collab:
            raise NotFoundError("Collaboration {} not found".format(collab_id), collaboration_id=collab_id)
        return collab

    def list_open_collaborations(self):
        return (
            CollaborationRequest.query
            .filter_by(status="open")
            .order_by(CollaborationRequest.created_at.desc())
            .all()
        )

    def list_for_contractor(self, contractor_id):
        assigned = db.session.query(CollaborationTask.collaboration_id).filter(
            CollaborationTask.assignee_id == contractor_id
        )
        return (
            CollaborationRequest.query
            .filter(or_(
                CollaborationRequest.requester_id == contractor_id,
                CollaborationRequest.id.in_(assigned),
            ))
            .order_by(CollaborationRequest.created_at.desc())
            .all()
        )

    def _fresh_tasks(self, collab):
        return (
            CollaborationTask.query
            .filter_by(collaboration_id=collab.id)
            .order_by(CollaborationTask.position)
            .populate_existing()
            .all()
        )

    def _get_task(self, collab, task_id):
        for task in collab.tasks:
            if task.id == task_id:
                db.session.refresh(task)
                return task
        raise NotFoundError("Task {} not found in collaboration {}".format(task_id, collab.id), task_id=task_id)

    def _bump(self, collab, **values):
        """Version-checked write on the collaboration row."""
        values["version"] = collab.version + 1
        values["updated_at"] = utcnow()
        result = db.session.execute(
            update(CollaborationRequest)
            .where(CollaborationRequest.id == collab.id, CollaborationRequest.version == collab.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Collaboration {} changed concurrently".format(collab.id), collaboration_id=collab.id)
        db.session.refresh(collab)
        return collab

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------
    def create_collaboration(self, parent_job_id, tasks, requester):
        """Split an assigned job into tasks. Amounts must sum to final_amount."""
        tasks = _normalize_tasks(tasks)
        with atomic():
            job = job_store.get_job(parent_job_id, refresh=True)
            if requester.role != "contractor" or requester.actor_id != job.contractor_id:
                raise PermissionDeniedError("Only the assigned contractor can split a job", job_id=job.id)
            if job.status != "assigned":
                raise IllegalTransitionError(
                    job.status, "collaboration",
                    message="Only assigned jobs can be split (status: {})".format(job.status),
                )
            if job.collaboration_id:
                current = db.session.get(CollaborationRequest, job.collaboration_id)
                if current is not None and current.status != "cancelled":
                    raise CollaborationLockedError(
                        "Job {} already has collaboration {}".format(job.id, current.id),
                        collaboration_id=current.id,
                    )
            total = _check_sum(job, tasks)

            collab = CollaborationRequest(
                id=generate_uuid(),
                parent_job_id=job.id,
                requester_id=requester.actor_id,
                status="open",
                total_amount=total,
                version=1,
            )
            for position, task in enumerate(tasks):
                collab.tasks.append(CollaborationTask(
                    id=generate_uuid(),
                    position=position,
                    description=task["description"],
                    amount=task["amount"],
                    status="offered",
                    rejected_by=[],
                ))
            db.session.add(collab)
            db.session.flush()

            job_store.update_job(job.id, {"collaboration_id": collab.id}, job.version, actor_id=requester.actor_id)
            events.emit(
                events.COLLABORATION_CREATED,
                collaboration_id=collab.id,
                job_id=job.id,
                requester_id=requester.actor_id,
                total_amount=total,
            )

        logger.info("Job %s split into %d tasks (collaboration %s)", job.id, len(tasks), collab.id)
        return collab

    def update_tasks(self, collab_id, tasks, requester):
        """Re-split an open collaboration. Accepted tasks are released."""
        tasks = _normalize_tasks(tasks)
        with atomic():
            collab = self.get_collaboration(collab_id, refresh=True)
            if requester.actor_id != collab.requester_id:
                raise PermissionDeniedError("Only the requester can change the split", collaboration_id=collab.id)
            if collab.status != "open":
                raise CollaborationLockedError(
                    "Collaboration {} is {} and can no longer change".format(collab.id, collab.status),
                    collaboration_id=collab.id,
                )
            job = job_store.get_job(collab.parent_job_id, refresh=True)
            total = _check_sum(job, tasks)

            collab.tasks.clear()
            db.session.flush()
            for position, task in enumerate(tasks):
                collab.tasks.append(CollaborationTask(
                    id=generate_uuid(),
                    position=position,
                    description=task["description"],
                    amount=task["amount"],
                    status="offered",
                    rejected_by=[],
                ))
            db.session.flush()
            self._bump(collab, total_amount=total)

        return collab

    def accept_task(self, collab_id, task_id, contractor_id, now=None):
        """Claim an offered task. The last acceptance activates the split."""
        now = now or utcnow()
        with atomic():
            collab = self.get_collaboration(collab_id, refresh=True)
            if collab.status != "open":
                raise CollaborationLockedError(
                    "Collaboration {} is {}".format(collab.id, collab.status), collaboration_id=collab.id,
                )
            task = self._get_task(collab, task_id)
            if task.status != "offered":
                raise ConflictError("Task {} was already taken".format(task_id), task_id=task_id)

            result = db.session.execute(
                update(CollaborationTask)
                .where(
                    CollaborationTask.id == task_id,
                    CollaborationTask.status == "offered",
                    CollaborationTask.assignee_id.is_(None),
                )
                .values(status="accepted", assignee_id=contractor_id, accepted_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Task {} was already taken".format(task_id), task_id=task_id)
            db.session.refresh(task)

            # Serializes concurrent acceptances so exactly one sees "all accepted".
            remaining = [t for t in self._fresh_tasks(collab) if t.status == "offered"]
            if remaining:
                self._bump(collab)
            else:
                self._bump(collab, status="active", activated_at=now)
                events.emit(
                    events.COLLABORATION_ACTIVATED,
                    collaboration_id=collab.id,
                    job_id=collab.parent_job_id,
                    requester_id=collab.requester_id,
                    assignee_ids=[t.assignee_id for t in self._fresh_tasks(collab)],
                )

        logger.info("Contractor %s accepted task %s of collaboration %s", contractor_id, task_id, collab_id)
        return collab

    def reject_task(self, collab_id, task_id, contractor_id):
        with atomic():
            collab = self.get_collaboration(collab_id, refresh=True)
            if collab.status != "open":
                raise CollaborationLockedError(
                    "Collaboration {} is {}".format(collab.id, collab.status), collaboration_id=collab.id,
                )
            task = self._get_task(collab, task_id)
            if task.status != "offered":
                raise ConflictError("Task {} is no longer offered".format(task_id), task_id=task_id)
            rejected = list(task.rejected_by or [])
            if contractor_id not in rejected:
                rejected.append(contractor_id)
                task.rejected_by = rejected
            self._bump(collab)
        return collab

    def complete_task(self, collab_id, task_id, actor=None, now=None):
        """Mark a task done. The last completion completes the parent job
        and schedules one payment per task."""
        now = now or utcnow()
        with atomic():
            collab = self.get_collaboration(collab_id, refresh=True)
            if collab.status in ("completed", "cancelled"):
                raise CollaborationLockedError(
                    "Collaboration {} is {}".format(collab.id, collab.status), collaboration_id=collab.id,
                )
            if collab.status != "active":
                raise ValidationError("Tasks can be completed once every task is accepted",
                                      collaboration_id=collab.id)
            task = self._get_task(collab, task_id)
            if actor is not None and not actor.is_admin and actor.actor_id not in (task.assignee_id,
                                                                                  collab.requester_id):
                raise PermissionDeniedError("Only the assignee can complete this task", task_id=task_id)
            if task.status == "completed":
                return collab

            result = db.session.execute(
                update(CollaborationTask)
                .where(CollaborationTask.id == task_id, CollaborationTask.status == "accepted")
                .values(status="completed", completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Task {} changed concurrently".format(task_id), task_id=task_id)
            db.session.refresh(task)

            remaining = [t for t in self._fresh_tasks(collab) if t.status != "completed"]
            if remaining:
                self._bump(collab)
            else:
                self._finish(collab, now)

        logger.info("Task %s of collaboration %s completed", task_id, collab_id)
        return collab

    def _finish(self, collab, now):
        job = job_store.get_job(collab.parent_job_id, refresh=True)
        tasks = self._fresh_tasks(collab)
        total = sum(t.amount for t in tasks)
        if total != job.final_amount:
            raise AmountMismatchError(
                "Task amounts total {} but job amount is {}".format(total, job.final_amount),
                expected=job.final_amount,
                actual=total,
            )

        self._bump(collab, status="completed", completed_at=now)
        job = self.escrow.request_transition(job.id, "completed", SYSTEM_ACTOR, note="collaboration completed",
                                             now=now)
        self.escrow.schedule_split_payments(job, [(t.assignee_id, t.amount, t.id) for t in tasks])
        events.emit(
            events.COLLABORATION_COMPLETED,
            collaboration_id=collab.id,
            job_id=job.id,
            requester_id=collab.requester_id,
            assignee_ids=[t.assignee_id for t in tasks],
        )

    def cancel_collaboration(self, collab_id, actor):
        """Withdraw an open split. Refused once every task is accepted."""
        with atomic():
            collab = self.get_collaboration(collab_id, refresh=True)
            if not actor.is_admin and actor.actor_id != collab.requester_id:
                raise PermissionDeniedError("Only the requester can cancel a collaboration",
                                            collaboration_id=collab.id)
            if collab.status == "cancelled":
                return collab
            if collab.status in ("active", "completed"):
                raise CollaborationLockedError(
                    "Collaboration {} is {} and cannot be cancelled".format(collab.id, collab.status),
                    collaboration_id=collab.id,
                )
            self._bump(collab, status="cancelled")

            job = job_store.get_job(collab.parent_job_id, refresh=True)
            if job.collaboration_id == collab.id:
                job_store.update_job(job.id, {"collaboration_id": None}, job.version, actor_id=actor.actor_id)
            events.emit(
                events.COLLABORATION_CANCELLED,
                collaboration_id=collab.id,
                job_id=job.id,
                requester_id=collab.requester_id,
                assignee_ids=[t.assignee_id for t in collab.tasks if t.assignee_id],
            )

        logger.info("Collaboration %s cancelled by %s", collab_id, actor.actor_id)
        return collab
