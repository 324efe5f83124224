"""
Job Store: durable construction-job records.

Every mutation names the version it was read at. The write is a single
conditional UPDATE (``WHERE id = :id AND version = :expected``) so a stale
writer fails with ConflictError instead of overwriting a newer state.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update

from models import db, Job, JOB_STATUSES, generate_uuid, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from services.base import atomic

logger = logging.getLogger(__name__)

# Fields a patch may touch. Everything else is owned by the store itself.
MUTABLE_FIELDS = {
    "status",
    "contractor_id",
    "customer_id",
    "title",
    "address",
    "items",
    "budget_min",
    "budget_max",
    "final_amount",
    "scheduled_date",
    "pickup_info",
    "is_internal",
    "customer_satisfaction",
    "satisfaction_comment",
    "collaboration_id",
    "accepted_at",
    "completed_at",
    "cancelled_at",
    "cancellation_reason",
}

PICKUP_FIELDS = ("company_name", "phone", "address", "scheduled_datetime")


def normalize_items(items):
    """Validate line items and fill in total_price.

    A supplied total_price must equal quantity * unit_price exactly.
    """
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("item {} must be an object".format(index))
        name = (item.get("name") or "").strip()
        if not name:
            raise ValidationError("item {} is missing a name".format(index))
        quantity = item.get("quantity")
        unit_price = item.get("unit_price")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError("item {} quantity must be a positive integer".format(index))
        if not isinstance(unit_price, int) or isinstance(unit_price, bool) or unit_price < 0:
            raise ValidationError("item {} unit_price must be a non-negative integer".format(index))

        expected_total = quantity * unit_price
        total_price = item.get("total_price", expected_total)
        if total_price != expected_total:
            raise ValidationError(
                "item {} total_price {} != quantity * unit_price ({})".format(index, total_price, expected_total),
                item=name,
            )
        normalized.append({
            "name": name,
            "quantity": quantity,
            "unit_price": unit_price,
            "total_price": expected_total,
        })
    return normalized


def _normalize_budget(budget):
    budget = budget or {}
    low = budget.get("min", 0)
    high = budget.get("max", low)
    for value in (low, high):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError("budget values must be non-negative integers")
    if low > high:
        raise ValidationError("budget min must not exceed max")
    return low, high


def _normalize_pickup(pickup_info):
    if pickup_info is None:
        return None
    if not isinstance(pickup_info, dict):
        raise ValidationError("pickup_info must be an object")
    return {key: pickup_info.get(key) for key in PICKUP_FIELDS if pickup_info.get(key) is not None}


def parse_datetime(value):
    """Accept a datetime or an ISO-8601 string; returns naive UTC."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid datetime: {}".format(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _history_entry(status, contractor_id=None, note=None, actor_id=None):
    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "contractor_id": contractor_id,
        "actor_id": actor_id,
        "note": note,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_job(job_id, refresh=False):
    """Return the job or raise NotFoundError.

    ``refresh`` bypasses the session identity map so the caller sees rows
    committed by other processes.
    """
    job = db.session.get(Job, job_id, populate_existing=refresh)
    if not job:
        raise NotFoundError("Job {} not found".format(job_id), job_id=job_id)
    return job


def list_jobs_by_seller(seller_id):
    return Job.query.filter_by(seller_id=seller_id).order_by(Job.created_at.desc()).all()


def list_jobs_by_contractor(contractor_id):
    return Job.query.filter_by(contractor_id=contractor_id).order_by(Job.created_at.desc()).all()


def list_jobs_by_status(status):
    if status not in JOB_STATUSES:
        raise ValidationError("Unknown status {}".format(status))
    return Job.query.filter_by(status=status).order_by(Job.created_at.desc()).all()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def create_job(spec):
    """Create a pending job from a seller's request.

    ``final_amount`` defaults to the sum of item totals when not given.
    """
    seller_id = spec.get("seller_id")
    if not seller_id:
        raise ValidationError("seller_id is required")

    items = normalize_items(spec.get("items"))
    budget_min, budget_max = _normalize_budget(spec.get("budget"))

    final_amount = spec.get("final_amount")
    if final_amount is None and items:
        final_amount = sum(item["total_price"] for item in items)
    if final_amount is not None and (not isinstance(final_amount, int) or final_amount < 0):
        raise ValidationError("final_amount must be a non-negative integer")

    satisfaction = spec.get("customer_satisfaction")
    if satisfaction is not None:
        _check_satisfaction(satisfaction)

    with atomic():
        job = Job(
            id=generate_uuid(),
            seller_id=seller_id,
            customer_id=spec.get("customer_id"),
            title=spec.get("title"),
            address=spec.get("address"),
            status="pending",
            version=1,
            items=items,
            budget_min=budget_min,
            budget_max=budget_max,
            final_amount=final_amount,
            scheduled_date=parse_datetime(spec.get("scheduled_date")),
            pickup_info=_normalize_pickup(spec.get("pickup_info")),
            is_internal=bool(spec.get("is_internal", False)),
            customer_satisfaction=satisfaction,
            progress_history=[_history_entry("pending", note="created", actor_id=seller_id)],
        )
        db.session.add(job)

    logger.info("Job %s created by seller %s (final_amount=%s)", job.id, seller_id, final_amount)
    return job


def update_job(job_id, patch, expected_version, expect=None, actor_id=None, note=None):
    """Apply ``patch`` if the job is still at ``expected_version``.

    ``expect`` adds column preconditions checked in the same UPDATE, e.g.
    ``{"contractor_id": None}`` to refuse double assignment. A status change
    appends exactly one progress_history entry in the same write.
    """
    unknown = set(patch) - MUTABLE_FIELDS
    if unknown:
        raise ValidationError("Cannot update fields: {}".format(", ".join(sorted(unknown))))

    values = dict(patch)
    if "items" in values:
        values["items"] = normalize_items(values["items"])
    if "pickup_info" in values:
        values["pickup_info"] = _normalize_pickup(values["pickup_info"])
    if "scheduled_date" in values:
        values["scheduled_date"] = parse_datetime(values["scheduled_date"])
    if values.get("customer_satisfaction") is not None:
        _check_satisfaction(values["customer_satisfaction"])

    with atomic():
        job = get_job(job_id, refresh=True)
        if job.version != expected_version:
            raise ConflictError(
                "Job {} is at version {}, not {}".format(job_id, job.version, expected_version),
                job_id=job_id,
                current_version=job.version,
            )

        if "status" in values:
            if values["status"] not in JOB_STATUSES:
                raise ValidationError("Unknown status {}".format(values["status"]))
            contractor_id = values.get("contractor_id", job.contractor_id)
            history = list(job.progress_history or [])
            history.append(
                _history_entry(values["status"], contractor_id=contractor_id, note=note, actor_id=actor_id)
            )
            values["progress_history"] = history

        conditions = [Job.id == job_id, Job.version == expected_version]
        for column_name, expected_value in (expect or {}).items():
            column = getattr(Job, column_name)
            conditions.append(column.is_(None) if expected_value is None else column == expected_value)

        values["version"] = expected_version + 1
        values["updated_at"] = utcnow()
        result = db.session.execute(
            update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Stale write rejected for job %s (expected version %s)", job_id, expected_version)
            raise ConflictError(
                "Job {} changed since version {}".format(job_id, expected_version),
                job_id=job_id,
            )
        db.session.refresh(job)

    return job


def update_final_amount(job_id, final_amount, expected_version):
    """Confirm the price. Only allowed before escrow is held."""
    if not isinstance(final_amount, int) or isinstance(final_amount, bool) or final_amount <= 0:
        raise ValidationError("final_amount must be a positive integer")
    job = get_job(job_id)
    if job.status != "pending":
        raise ValidationError("final_amount can only change while the job is pending")
    return update_job(job_id, {"final_amount": final_amount}, expected_version)


def _check_satisfaction(score):
    if not isinstance(score, int) or isinstance(score, bool) or not 1 <= score <= 5:
        raise ValidationError("customer_satisfaction must be between 1 and 5")


def record_satisfaction(job_id, score, comment=None, expected_version=None):
    """Store the customer's 1..5 rating on a completed job."""
    _check_satisfaction(score)
    job = get_job(job_id, refresh=True)
    if job.status != "completed":
        raise ValidationError("Satisfaction can only be recorded for completed jobs")
    version = expected_version if expected_version is not None else job.version
    return update_job(
        job_id,
        {"customer_satisfaction": score, "satisfaction_comment": comment},
        version,
    )
