"""
Domain events for job status and ledger settlement changes.

Events are written to the ``domain_events`` outbox in the same database
transaction as the change that produced them, so an event exists if and
only if the change committed. Delivery is left to notifications.py.
"""

import logging

from models import db, DomainEvent, generate_uuid

logger = logging.getLogger(__name__)

JOB_STATUS_CHANGED = "job.status_changed"
JOB_RESCHEDULED = "job.rescheduled"
ESCROW_HELD = "escrow.held"
ESCROW_REFUNDED = "escrow.refunded"
PAYMENT_SCHEDULED = "payment.scheduled"
PAYMENT_SETTLED = "payment.settled"
TRANSACTION_SETTLED = "transaction.settled"
DISPUTE_FILED = "dispute.filed"
DISPUTE_RESOLVED = "dispute.resolved"
COMPENSATION_PAID = "compensation.paid"
COLLABORATION_CREATED = "collaboration.created"
COLLABORATION_ACTIVATED = "collaboration.activated"
COLLABORATION_COMPLETED = "collaboration.completed"
COLLABORATION_CANCELLED = "collaboration.cancelled"


def emit(event_type, **payload):
    """Queue an event in the current session. Caller commits."""
    event = DomainEvent(id=generate_uuid(), event_type=event_type, payload=payload)
    db.session.add(event)
    logger.debug("Queued event %s %s", event_type, payload)
    return event


def pending_events(limit=100):
    """Undispatched events, oldest first."""
    return (
        DomainEvent.query
        .filter(DomainEvent.dispatched_at.is_(None))
        .order_by(DomainEvent.created_at.asc())
        .limit(limit)
        .all()
    )
