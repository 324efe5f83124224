"""
Contractor cancellation policy.

A contractor may drop an ``assigned`` job they accepted, but only within
CANCELLATION_MAX_HOURS of acceptance. Past that window the cancellation is
refused. Under CANCELLATION_MAX_DAILY cancellations that day it is free;
at or over the cap a fee of ``budget_max * CANCELLATION_FEE_RATE // 100``
is deducted.
"""

import logging
from collections import namedtuple
from datetime import timedelta

from models import db, JobCancellation, generate_uuid, utcnow
from errors import IllegalTransitionError, PermissionDeniedError

logger = logging.getLogger(__name__)

CancellationQuote = namedtuple("CancellationQuote", [
    "can_cancel",
    "requires_fee",
    "fee_amount",
    "fee_rate",
    "hours_since_acceptance",
    "cancellations_today",
    "cancellation_number",
    "reason",
])


class CancellationPolicy:

    def __init__(self, max_hours=24, max_daily=3, fee_rate=5):
        self.max_hours = max_hours
        self.max_daily = max_daily
        self.fee_rate = fee_rate

    @classmethod
    def from_config(cls, config):
        return cls(
            max_hours=config.get("CANCELLATION_MAX_HOURS", 24),
            max_daily=config.get("CANCELLATION_MAX_DAILY", 3),
            fee_rate=config.get("CANCELLATION_FEE_RATE", 5),
        )

    def _counts(self, contractor_id, now):
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = JobCancellation.query.filter(
            JobCancellation.contractor_id == contractor_id,
            JobCancellation.cancelled_at >= start_of_day,
            JobCancellation.cancelled_at < start_of_day + timedelta(days=1),
        ).count()
        total = JobCancellation.query.filter_by(contractor_id=contractor_id).count()
        return today, total

    def check(self, job, contractor_id, now=None):
        """Quote the cancellation without changing anything."""
        now = now or utcnow()

        if job.contractor_id != contractor_id:
            return CancellationQuote(False, False, 0, 0, 0, 0, 0, "Job is not assigned to this contractor")
        if job.status != "assigned":
            return CancellationQuote(False, False, 0, 0, 0, 0, 0,
                                     "Only assigned jobs can be cancelled (status: {})".format(job.status))
        if job.accepted_at is None:
            return CancellationQuote(False, False, 0, 0, 0, 0, 0, "Job has no acceptance time")

        elapsed = now - job.accepted_at
        hours = int(elapsed.total_seconds() // 3600)
        today, total = self._counts(contractor_id, now)

        if elapsed > timedelta(hours=self.max_hours):
            return CancellationQuote(
                can_cancel=False,
                requires_fee=False,
                fee_amount=0,
                fee_rate=0,
                hours_since_acceptance=hours,
                cancellations_today=today,
                cancellation_number=total + 1,
                reason="Cancellation window closed {}h after acceptance ({}h elapsed)".format(self.max_hours, hours),
            )

        requires_fee = today >= self.max_daily
        fee = (job.budget_max or 0) * self.fee_rate // 100 if requires_fee else 0

        if requires_fee:
            reason = "Daily free cancellations used ({}/{})".format(today, self.max_daily)
        else:
            reason = None

        return CancellationQuote(
            can_cancel=True,
            requires_fee=requires_fee and fee > 0,
            fee_amount=fee,
            fee_rate=self.fee_rate if requires_fee else 0,
            hours_since_acceptance=hours,
            cancellations_today=today,
            cancellation_number=total + 1,
            reason=reason,
        )

    def enforce(self, job, contractor_id, now=None):
        """Return the quote or raise if this contractor cannot cancel."""
        quote = self.check(job, contractor_id, now=now)
        if not quote.can_cancel:
            if job.contractor_id != contractor_id:
                raise PermissionDeniedError(quote.reason, job_id=job.id)
            raise IllegalTransitionError(job.status, "cancelled", message=quote.reason)
        return quote

    def record(self, job, contractor_id, quote, reason=None, now=None):
        """Write the JobCancellation row. Caller commits."""
        record = JobCancellation(
            id=generate_uuid(),
            job_id=job.id,
            contractor_id=contractor_id,
            reason=reason,
            cancellation_number=quote.cancellation_number,
            cancellations_today=quote.cancellations_today + 1,
            hours_since_acceptance=quote.hours_since_acceptance,
            fee_amount=quote.fee_amount if quote.requires_fee else 0,
            fee_rate=quote.fee_rate,
            cancelled_at=now or utcnow(),
        )
        db.session.add(record)
        logger.info(
            "Contractor %s cancelled job %s (#%d, today=%d, fee=%d)",
            contractor_id, job.id, record.cancellation_number, record.cancellations_today, record.fee_amount,
        )
        return record
