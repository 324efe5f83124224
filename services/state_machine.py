"""
Job state machine: legal edges and who may take them.

Pure functions only. ``plan_transition`` decides whether a status change is
allowed and returns the patch and write preconditions; the Escrow Engine
applies it through the Job Store.
"""

from collections import namedtuple

from models import JOB_STATUSES, utcnow
from errors import (
    CollaborationLockedError,
    IllegalTransitionError,
    PermissionDeniedError,
    ValidationError,
)

ROLES = ("seller", "contractor", "admin", "system")


class Actor(namedtuple("Actor", ["actor_id", "role"])):
    """Authenticated caller as established by the auth adapter."""
    __slots__ = ()

    @property
    def is_admin(self):
        return self.role == "admin"

    @property
    def is_system(self):
        return self.role == "system"


SYSTEM_ACTOR = Actor("system", "system")

TransitionPlan = namedtuple("TransitionPlan", ["from_status", "to_status", "patch", "expect"])


VALID_JOB_TRANSITIONS = {
    "pending": ["assigned", "cancelled"],
    "assigned": ["product_preparing", "reschedule_requested", "cancelled"],
    "product_preparing": ["product_ready", "reschedule_requested"],
    "product_ready": ["pickup_completed", "reschedule_requested"],
    "pickup_completed": ["in_progress", "completed", "product_not_ready", "customer_absent"],
    "in_progress": ["completed", "product_not_ready", "customer_absent", "cancelled"],
    "product_not_ready": ["assigned", "cancelled"],
    "customer_absent": ["assigned", "cancelled"],
    "reschedule_requested": ["assigned", "cancelled"],
    "completed": [],
    "cancelled": [],
}

# Work steps only the assigned contractor performs.
PROGRESS_STEPS = {
    ("assigned", "product_preparing"),
    ("product_preparing", "product_ready"),
    ("product_ready", "pickup_completed"),
    ("pickup_completed", "in_progress"),
    ("pickup_completed", "completed"),
    ("in_progress", "completed"),
}

EXCEPTION_STATES = ("product_not_ready", "customer_absent")
RESUMABLE_STATES = ("product_not_ready", "customer_absent", "reschedule_requested")


def allowed_targets(status):
    return list(VALID_JOB_TRANSITIONS.get(status, []))


def _is_seller(job, actor):
    return actor.role == "seller" and actor.actor_id == job.seller_id


def _is_assigned_contractor(job, actor):
    return actor.role == "contractor" and job.contractor_id is not None and actor.actor_id == job.contractor_id


def _deny(message, job, actor):
    raise PermissionDeniedError(message, job_id=job.id, actor_id=actor.actor_id, role=actor.role)


def check_actor(job, to_status, actor, contractor_id=None):
    """Raise PermissionDeniedError unless ``actor`` may take this edge."""
    from_status = job.status
    if actor.role not in ROLES:
        _deny("Unknown role {}".format(actor.role), job, actor)
    if actor.is_system:
        return

    if from_status == "pending" and to_status == "assigned":
        if actor.role == "contractor":
            if contractor_id and contractor_id != actor.actor_id:
                _deny("Contractors can only accept jobs for themselves", job, actor)
            return
        if _is_seller(job, actor) or actor.is_admin:
            if not contractor_id:
                raise ValidationError("contractor_id is required to assign a job")
            return
        _deny("Only the owning seller, an admin or a contractor can assign this job", job, actor)

    if (from_status, to_status) in PROGRESS_STEPS:
        if not _is_assigned_contractor(job, actor):
            _deny("Only the assigned contractor can advance this job", job, actor)
        return

    if to_status in EXCEPTION_STATES or to_status == "reschedule_requested":
        if _is_assigned_contractor(job, actor) or actor.is_admin:
            return
        if to_status == "reschedule_requested" and _is_seller(job, actor):
            return
        _deny("Not allowed to report {} on this job".format(to_status), job, actor)

    if from_status in RESUMABLE_STATES and to_status == "assigned":
        if not (_is_seller(job, actor) or actor.is_admin):
            _deny("Only the owning seller or an admin can resume this job", job, actor)
        return

    if to_status == "cancelled":
        if _is_seller(job, actor) or actor.is_admin:
            return
        if _is_assigned_contractor(job, actor) and from_status == "assigned":
            # The cancellation policy checks the time window and any fee.
            return
        _deny("Not allowed to cancel this job", job, actor)

    _deny("Not allowed to move job from {} to {}".format(from_status, to_status), job, actor)


def check_collaboration(job, to_status, collaboration):
    """Gate parent-job edges on the state of its collaboration split."""
    if collaboration is None or collaboration.status == "cancelled":
        return

    if to_status == "cancelled":
        if collaboration.status in ("active", "completed"):
            raise CollaborationLockedError(
                "Job has a {} collaboration and cannot be cancelled".format(collaboration.status),
                job_id=job.id,
                collaboration_id=collaboration.id,
            )
        return

    if collaboration.status == "open" and job.status == "assigned":
        raise IllegalTransitionError(
            job.status, to_status,
            message="Collaboration {} is still open; all tasks must be accepted first".format(collaboration.id),
        )

    if to_status == "completed" and collaboration.status != "completed":
        raise IllegalTransitionError(
            job.status, to_status,
            message="Collaborative job completes when all tasks are completed",
        )


def plan_transition(job, to_status, actor, contractor_id=None, collaboration=None,
                    now=None, reason=None, scheduled_date=None):
    """Validate ``job.status -> to_status`` for ``actor`` and build the write.

    Returns a TransitionPlan. Raises ValidationError, IllegalTransitionError,
    PermissionDeniedError or CollaborationLockedError.
    """
    if to_status not in JOB_STATUSES:
        raise ValidationError("Unknown status {}".format(to_status))

    from_status = job.status
    if to_status not in VALID_JOB_TRANSITIONS.get(from_status, []):
        raise IllegalTransitionError(from_status, to_status)

    check_actor(job, to_status, actor, contractor_id=contractor_id)
    check_collaboration(job, to_status, collaboration)

    now = now or utcnow()
    patch = {"status": to_status}
    expect = {}

    if from_status == "pending" and to_status == "assigned":
        assignee = contractor_id or actor.actor_id
        patch["contractor_id"] = assignee
        patch["accepted_at"] = now
        expect["contractor_id"] = None
    elif to_status == "assigned":
        if scheduled_date is not None:
            patch["scheduled_date"] = scheduled_date
    elif to_status == "completed":
        patch["completed_at"] = now
    elif to_status == "cancelled":
        patch["cancelled_at"] = now
        patch["cancellation_reason"] = reason

    return TransitionPlan(from_status, to_status, patch, expect)
