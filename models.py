"""
CurtainPoint SQLAlchemy Models
Jobs, the point ledger, collaboration splits and their audit records.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, String, Boolean, Integer, Text, DateTime, ForeignKey, JSON,
    CheckConstraint, Index
)
from sqlalchemy.orm import relationship

db = SQLAlchemy()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    # Naive UTC: SQLite drops tzinfo on round-trip, so comparisons stay naive everywhere.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Job statuses
# ---------------------------------------------------------------------------
JOB_STATUSES = (
    "pending",
    "assigned",
    "product_preparing",
    "product_ready",
    "pickup_completed",
    "in_progress",
    "completed",
    "cancelled",
    "product_not_ready",
    "customer_absent",
    "reschedule_requested",
)

TRANSACTION_TYPES = (
    "charge", "escrow", "payment", "refund", "withdrawal", "compensation", "deduction",
)


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------
class Job(db.Model):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    seller_id = Column(String(36), nullable=False, index=True)
    contractor_id = Column(String(36), nullable=True, index=True)
    customer_id = Column(String(36), nullable=True)

    title = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    status = Column(String(30), nullable=False, default="pending")
    version = Column(Integer, nullable=False, default=1)

    items = Column(JSON, nullable=False, default=list)
    budget_min = Column(Integer, nullable=False, default=0)
    budget_max = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=True)

    scheduled_date = Column(DateTime, nullable=True)
    pickup_info = Column(JSON, nullable=True)
    is_internal = Column(Boolean, default=False)

    customer_satisfaction = Column(Integer, nullable=True)
    satisfaction_comment = Column(Text, nullable=True)

    progress_history = Column(JSON, nullable=False, default=list)
    collaboration_id = Column(String(36), nullable=True)

    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_jobs_status", "status"),
        CheckConstraint(
            "customer_satisfaction IS NULL OR (customer_satisfaction >= 1 AND customer_satisfaction <= 5)",
            name="ck_job_satisfaction",
        ),
        CheckConstraint("budget_min <= budget_max", name="ck_job_budget"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "contractor_id": self.contractor_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "address": self.address,
            "status": self.status,
            "version": self.version,
            "items": self.items or [],
            "budget": {"min": self.budget_min, "max": self.budget_max},
            "final_amount": self.final_amount,
            "scheduled_date": _iso(self.scheduled_date),
            "pickup_info": self.pickup_info,
            "is_internal": bool(self.is_internal),
            "customer_satisfaction": self.customer_satisfaction,
            "satisfaction_comment": self.satisfaction_comment,
            "progress_history": self.progress_history or [],
            "collaboration_id": self.collaboration_id,
            "accepted_at": _iso(self.accepted_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# LedgerAccount
# ---------------------------------------------------------------------------
class LedgerAccount(db.Model):
    __tablename__ = "ledger_accounts"

    # "{role}_{owner_id}", one account per owner and role
    id = Column(String(80), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    owner_role = Column(String(20), nullable=False)

    balance = Column(Integer, nullable=False, default=0)
    total_charged = Column(Integer, nullable=False, default=0)
    total_withdrawn = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transactions = relationship("Transaction", back_populates="account", lazy="dynamic")

    __table_args__ = (
        CheckConstraint("owner_role IN ('seller', 'contractor')", name="ck_ledger_owner_role"),
    )

    @staticmethod
    def account_id_for(owner_id, owner_role):
        return "{}_{}".format(owner_role, owner_id)

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_role": self.owner_role,
            "balance": self.balance,
            "total_charged": self.total_charged,
            "total_withdrawn": self.total_withdrawn,
            "version": self.version,
            "updated_at": _iso(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------
class Transaction(db.Model):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(String(80), ForeignKey("ledger_accounts.id", ondelete="RESTRICT"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    job_id = Column(String(36), nullable=True, index=True)

    # Unique per (job, type, party); duplicate settlement attempts collide here.
    idempotency_key = Column(String(160), nullable=True, unique=True)
    description = Column(Text, nullable=True)
    balance_after = Column(Integer, nullable=True)
    related_transaction_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    account = relationship("LedgerAccount", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_job_type", "job_id", "type"),
        CheckConstraint(
            "type IN ('charge', 'escrow', 'payment', 'refund', 'withdrawal', 'compensation', 'deduction')",
            name="ck_transaction_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_transaction_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "type": self.type,
            "amount": self.amount,
            "status": self.status,
            "job_id": self.job_id,
            "description": self.description,
            "balance_after": self.balance_after,
            "related_transaction_id": self.related_transaction_id,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


# ---------------------------------------------------------------------------
# CollaborationRequest / CollaborationTask
# ---------------------------------------------------------------------------
class CollaborationRequest(db.Model):
    __tablename__ = "collaboration_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    parent_job_id = Column(String(36), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    requester_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="open")  # open, active, completed, cancelled
    total_amount = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    activated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    tasks = relationship(
        "CollaborationTask",
        back_populates="collaboration",
        order_by="CollaborationTask.position",
        cascade="all, delete-orphan",
    )
    parent_job = relationship("Job", foreign_keys=[parent_job_id])

    def to_dict(self):
        return {
            "id": self.id,
            "parent_job_id": self.parent_job_id,
            "requester_id": self.requester_id,
            "status": self.status,
            "total_amount": self.total_amount,
            "version": self.version,
            "tasks": [t.to_dict() for t in self.tasks],
            "created_at": _iso(self.created_at),
            "activated_at": _iso(self.activated_at),
            "completed_at": _iso(self.completed_at),
        }


class CollaborationTask(db.Model):
    __tablename__ = "collaboration_tasks"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    collaboration_id = Column(String(36), ForeignKey("collaboration_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)
    assignee_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="offered")  # offered, accepted, completed
    rejected_by = Column(JSON, nullable=True, default=list)

    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    collaboration = relationship("CollaborationRequest", back_populates="tasks")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_collab_task_amount"),
    )

    def to_dict(self):
        return {
            "task_id": self.id,
            "description": self.description,
            "amount": self.amount,
            "assignee_id": self.assignee_id,
            "status": self.status,
            "accepted_at": _iso(self.accepted_at),
            "completed_at": _iso(self.completed_at),
        }


# ---------------------------------------------------------------------------
# Dispute
# ---------------------------------------------------------------------------
class Dispute(db.Model):
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    filed_by = Column(String(36), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="open")  # open, refunded, settled
    # job_id while open, NULL once resolved; at most one open dispute per job.
    open_key = Column(String(36), unique=True, nullable=True)
    resolved_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "filed_by": self.filed_by,
            "reason": self.reason,
            "status": self.status,
            "resolved_by": self.resolved_by,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }


# ---------------------------------------------------------------------------
# JobCancellation
# ---------------------------------------------------------------------------
class JobCancellation(db.Model):
    __tablename__ = "job_cancellations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    contractor_id = Column(String(36), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    cancellation_number = Column(Integer, nullable=False)
    cancellations_today = Column(Integer, nullable=False)
    hours_since_acceptance = Column(Integer, nullable=False, default=0)
    fee_amount = Column(Integer, nullable=False, default=0)
    fee_rate = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "reason": self.reason,
            "cancellation_number": self.cancellation_number,
            "cancellations_today": self.cancellations_today,
            "hours_since_acceptance": self.hours_since_acceptance,
            "fee_amount": self.fee_amount,
            "fee_rate": self.fee_rate,
            "cancelled_at": _iso(self.cancelled_at),
        }


# ---------------------------------------------------------------------------
# JobCompensation
# ---------------------------------------------------------------------------
class JobCompensation(db.Model):
    __tablename__ = "job_compensations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    contractor_id = Column(String(36), nullable=False, index=True)
    compensation_type = Column(String(30), nullable=False)  # product_not_ready, customer_absent
    amount = Column(Integer, nullable=False)
    rate = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    processed_by = Column(String(36), nullable=False)
    compensated_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "compensation_type": self.compensation_type,
            "amount": self.amount,
            "rate": self.rate,
            "reason": self.reason,
            "processed_by": self.processed_by,
            "compensated_at": _iso(self.compensated_at),
        }


# ---------------------------------------------------------------------------
# JobScheduleChange
# ---------------------------------------------------------------------------
class JobScheduleChange(db.Model):
    __tablename__ = "job_schedule_changes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    contractor_id = Column(String(36), nullable=True, index=True)
    old_scheduled_date = Column(DateTime, nullable=True)
    new_scheduled_date = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(36), nullable=False)
    fee_amount = Column(Integer, nullable=False, default=0)
    fee_rate = Column(Integer, nullable=False, default=0)
    changed_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "old_scheduled_date": _iso(self.old_scheduled_date),
            "new_scheduled_date": _iso(self.new_scheduled_date),
            "reason": self.reason,
            "changed_by": self.changed_by,
            "fee_amount": self.fee_amount,
            "fee_rate": self.fee_rate,
            "changed_at": _iso(self.changed_at),
        }


# ---------------------------------------------------------------------------
# DomainEvent (transactional outbox)
# ---------------------------------------------------------------------------
class DomainEvent(db.Model):
    __tablename__ = "domain_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_type = Column(String(60), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)
    dispatched_at = Column(DateTime, nullable=True, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "created_at": _iso(self.created_at),
            "dispatched_at": _iso(self.dispatched_at),
        }


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------
class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }
