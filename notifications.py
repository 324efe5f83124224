"""
Notification dispatch for CurtainPoint.

Reads undispatched rows from the domain event outbox and turns each into
per-user Notification records. Delivery to devices is handled elsewhere.

IMPORTANT: A bad event must never block the outbox. Failures are logged and
the event is still marked dispatched so the next run moves on.
"""

import logging

from models import db, Notification, generate_uuid, utcnow
import events

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Templates: (payload keys naming recipients, title, body)
# ---------------------------------------------------------------------------
TEMPLATES = {
    events.JOB_STATUS_CHANGED: (
        ("seller_id", "contractor_id"),
        "Job Updated",
        "Job #{short_job} is now {to_status}.",
    ),
    events.JOB_RESCHEDULED: (
        ("seller_id", "contractor_id"),
        "Visit Rescheduled",
        "The visit for job #{short_job} moved to {new_scheduled_date}.",
    ),
    events.ESCROW_HELD: (
        ("seller_id",),
        "Points Held",
        "{amount} points are held in escrow for job #{short_job}.",
    ),
    events.ESCROW_REFUNDED: (
        ("seller_id",),
        "Points Refunded",
        "{amount} points were returned to your balance for job #{short_job}.",
    ),
    events.PAYMENT_SCHEDULED: (
        ("contractor_id",),
        "Payment Scheduled",
        "{amount} points for job #{short_job} will be released after {release_at}.",
    ),
    events.PAYMENT_SETTLED: (
        ("contractor_id",),
        "Payment Released",
        "{amount} points for job #{short_job} were added to your balance.",
    ),
    events.TRANSACTION_SETTLED: (
        ("owner_id",),
        "Transaction {status}",
        "Your {type} of {amount} points is {status}.",
    ),
    events.DISPUTE_FILED: (
        ("seller_id", "contractor_id"),
        "Dispute Filed",
        "A dispute was filed on job #{short_job}. Payment is on hold until it is resolved.",
    ),
    events.DISPUTE_RESOLVED: (
        ("seller_id", "contractor_id"),
        "Dispute Resolved",
        "The dispute on job #{short_job} was resolved: {decision}.",
    ),
    events.COMPENSATION_PAID: (
        ("contractor_id", "seller_id"),
        "Compensation Paid",
        "{amount} points were paid to the contractor for job #{short_job} ({kind}).",
    ),
    events.COLLABORATION_CREATED: (
        ("requester_id",),
        "Collaboration Posted",
        "Your split of job #{short_job} is open for other contractors.",
    ),
    events.COLLABORATION_ACTIVATED: (
        ("requester_id", "assignee_ids"),
        "Collaboration Active",
        "All tasks for job #{short_job} were accepted. Work can begin.",
    ),
    events.COLLABORATION_COMPLETED: (
        ("requester_id", "assignee_ids"),
        "Collaboration Completed",
        "All tasks for job #{short_job} are done.",
    ),
    events.COLLABORATION_CANCELLED: (
        ("requester_id", "assignee_ids"),
        "Collaboration Cancelled",
        "The split of job #{short_job} was cancelled.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def _recipients(keys, payload):
    """Collect user ids named by ``keys``, skipping the acting user."""
    actor_id = payload.get("actor_id")
    recipients = []
    for key in keys:
        value = payload.get(key)
        values = value if isinstance(value, list) else [value]
        for user_id in values:
            if user_id and user_id != actor_id and user_id not in recipients:
                recipients.append(user_id)
    return recipients


def build_notifications(event):
    """Notification rows for one event. Unknown event types yield none."""
    template = TEMPLATES.get(event.event_type)
    if not template:
        return []

    keys, title, body = template
    payload = dict(event.payload or {})
    context = _SafeDict(payload)
    context["short_job"] = (payload.get("job_id") or "")[:8]

    return [
        Notification(
            id=generate_uuid(),
            user_id=user_id,
            type=event.event_type,
            title=title.format_map(context),
            body=body.format_map(context),
            data=payload,
        )
        for user_id in _recipients(keys, payload)
    ]


def dispatch_pending_events(limit=100):
    """Turn queued events into notifications. Returns events processed."""
    pending = events.pending_events(limit=limit)
    if not pending:
        return 0

    created = 0
    for event in pending:
        try:
            for notification in build_notifications(event):
                db.session.add(notification)
                created += 1
        except Exception:
            logger.exception("Failed to build notifications for event %s (%s)", event.id, event.event_type)
        event.dispatched_at = utcnow()

    db.session.commit()
    logger.info("Dispatched %d events into %d notifications", len(pending), created)
    return len(pending)


def list_notifications(user_id, unread_only=False, limit=50):
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)
    return query.order_by(Notification.created_at.desc()).limit(limit).all()
