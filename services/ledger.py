"""
Ledger Store: point accounts and their append-only transactions.

Balance changes go through a compare-and-swap on ``LedgerAccount.version``:
read the account, compute the new balance, then ``UPDATE ... WHERE version =
:read_version``. A lost race re-reads and retries up to LEDGER_MAX_RETRIES
times before surfacing ConflictError.

Invariant: ``balance == sum(amount of completed transactions)``. Pending
transactions never touch ``balance``.
"""

import logging

from flask import current_app
from sqlalchemy import func, update

from models import db, LedgerAccount, Transaction, TRANSACTION_TYPES, generate_uuid, utcnow
from errors import ConflictError, InsufficientBalanceError, NotFoundError, ValidationError
from services.base import atomic
import events

logger = logging.getLogger(__name__)

# Sign each transaction type must carry.
DEBIT_TYPES = ("escrow", "withdrawal", "deduction")
CREDIT_TYPES = ("charge", "payment", "refund", "compensation")

SETTLE_OUTCOMES = ("completed", "failed", "cancelled")

DEFAULT_MAX_RETRIES = 5


def _max_retries():
    try:
        return current_app.config.get("LEDGER_MAX_RETRIES", DEFAULT_MAX_RETRIES)
    except RuntimeError:
        return DEFAULT_MAX_RETRIES


def idempotency_key(job_id, tx_type, party):
    """``{job_id}:{type}:{party}``; party is an account id or a task id."""
    return "{}:{}:{}".format(job_id, tx_type, party)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
def get_balance(account_id):
    account = db.session.get(LedgerAccount, account_id, populate_existing=True)
    if not account:
        raise NotFoundError("Ledger account {} not found".format(account_id), account_id=account_id)
    return account


def ensure_account(owner_id, owner_role):
    """Get or create the account for an owner. Does not commit."""
    if owner_role not in ("seller", "contractor"):
        raise ValidationError("Ledger accounts exist for sellers and contractors only")
    account_id = LedgerAccount.account_id_for(owner_id, owner_role)
    account = db.session.get(LedgerAccount, account_id)
    if account:
        return account
    account = LedgerAccount(
        id=account_id,
        owner_id=owner_id,
        owner_role=owner_role,
        balance=0,
        total_charged=0,
        total_withdrawn=0,
        version=1,
    )
    db.session.add(account)
    db.session.flush()
    logger.info("Opened ledger account %s", account_id)
    return account


def _pending_debits(account_id):
    total = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(
            Transaction.account_id == account_id,
            Transaction.status == "pending",
            Transaction.amount < 0,
        )
        .scalar()
    )
    return int(total)


def available_balance(account_id):
    """Balance minus everything already promised by pending debits."""
    return get_balance(account_id).balance + _pending_debits(account_id)


def _apply_delta(account_id, delta, tx_type, check_floor=True):
    """CAS loop moving ``balance`` by ``delta``. Returns the new balance.

    Escrow holds and deductions may not spend points reserved by pending
    withdrawals. Completing a withdrawal spends its own reservation, so it
    is checked against the balance alone.
    """
    retries = _max_retries()
    for attempt in range(1, retries + 1):
        account = get_balance(account_id)
        new_balance = account.balance + delta
        reserved = 0
        if check_floor and delta < 0 and tx_type != "withdrawal":
            reserved = _pending_debits(account_id)
        if check_floor and delta < 0 and new_balance + reserved < 0:
            available = account.balance + reserved
            logger.warning(
                "Insufficient balance on %s: available=%s, debit=%s (%s)",
                account_id, available, -delta, tx_type,
            )
            raise InsufficientBalanceError(
                "Insufficient balance: {} available, {} required".format(available, -delta),
                account_id=account_id,
                balance=account.balance,
                available=available,
                required=-delta,
            )

        values = {
            "balance": new_balance,
            "version": account.version + 1,
            "updated_at": utcnow(),
        }
        if tx_type == "charge":
            values["total_charged"] = account.total_charged + delta
        elif tx_type == "withdrawal":
            values["total_withdrawn"] = account.total_withdrawn - delta

        result = db.session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.id == account_id, LedgerAccount.version == account.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.session.refresh(account)
            return new_balance
        logger.warning("Balance CAS lost on %s (attempt %d/%d)", account_id, attempt, retries)

    raise ConflictError("Could not update balance of {} after {} attempts".format(account_id, retries),
                        account_id=account_id)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
def _check_sign(tx_type, amount):
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError("Unknown transaction type {}".format(tx_type))
    if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
        raise ValidationError("amount must be a non-zero integer")
    if tx_type in DEBIT_TYPES and amount > 0:
        raise ValidationError("{} transactions must be negative".format(tx_type))
    if tx_type in CREDIT_TYPES and amount < 0:
        raise ValidationError("{} transactions must be positive".format(tx_type))


def find_by_key(key):
    if not key:
        return None
    return Transaction.query.filter_by(idempotency_key=key).first()


def append_transaction(account_id, tx_type, amount, status="completed", job_id=None,
                       key=None, description=None, related_transaction_id=None):
    """Record a transaction, moving the balance if it completes now.

    With an idempotency ``key`` a repeated call returns the first
    transaction unchanged instead of writing a second one.
    """
    _check_sign(tx_type, amount)
    if status not in ("pending", "completed"):
        raise ValidationError("New transactions are pending or completed")

    with atomic():
        existing = find_by_key(key)
        if existing:
            logger.info("Transaction %s already recorded as %s", key, existing.id)
            return existing

        get_balance(account_id)
        if tx_type == "withdrawal":
            available = available_balance(account_id)
            if available + amount < 0:
                raise InsufficientBalanceError(
                    "Insufficient available balance: {} available, {} requested".format(available, -amount),
                    account_id=account_id,
                    available=available,
                    required=-amount,
                )

        tx = Transaction(
            id=generate_uuid(),
            account_id=account_id,
            type=tx_type,
            amount=amount,
            status=status,
            job_id=job_id,
            idempotency_key=key,
            description=description,
            related_transaction_id=related_transaction_id,
        )
        if status == "completed":
            tx.balance_after = _apply_delta(account_id, amount, tx_type)
            tx.completed_at = utcnow()
        db.session.add(tx)
        db.session.flush()

    logger.info("Ledger %s %s %+d on %s (job=%s, %s)", tx_type, tx.id, amount, account_id, job_id, status)
    return tx


def settle_transaction(tx_id, outcome):
    """Move a pending transaction to completed, failed or cancelled.

    Settling twice to the same outcome is a no-op. Completing applies the
    amount to the balance in the same database transaction.
    """
    if outcome not in SETTLE_OUTCOMES:
        raise ValidationError("outcome must be one of {}".format(", ".join(SETTLE_OUTCOMES)))

    with atomic():
        tx = db.session.get(Transaction, tx_id, populate_existing=True)
        if not tx:
            raise NotFoundError("Transaction {} not found".format(tx_id), transaction_id=tx_id)
        if tx.status == outcome:
            return tx
        if tx.status != "pending":
            raise ValidationError(
                "Transaction {} is already {}".format(tx_id, tx.status),
                transaction_id=tx_id,
                status=tx.status,
            )

        now = utcnow()
        values = {"status": outcome, "completed_at": now}
        if outcome == "completed":
            values["balance_after"] = _apply_delta(tx.account_id, tx.amount, tx.type)

        # Only one settler can flip pending -> outcome.
        result = db.session.execute(
            update(Transaction)
            .where(Transaction.id == tx_id, Transaction.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Transaction {} was settled concurrently".format(tx_id), transaction_id=tx_id)
        db.session.refresh(tx)

        if tx.type != "payment":
            account = get_balance(tx.account_id)
            events.emit(
                events.TRANSACTION_SETTLED,
                transaction_id=tx.id,
                owner_id=account.owner_id,
                type=tx.type,
                amount=abs(tx.amount),
                status=outcome,
            )

    logger.info("Transaction %s settled as %s (%s %+d on %s)", tx.id, outcome, tx.type, tx.amount, tx.account_id)
    return tx


def record_charge(owner_id, owner_role, amount, reference=None, description=None):
    """Credit points bought through the payment gateway.

    ``reference`` is the gateway's payment id; replaying it is a no-op.
    """
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    with atomic():
        account = ensure_account(owner_id, owner_role)
        return append_transaction(
            account.id,
            "charge",
            amount,
            status="completed",
            key="charge:{}".format(reference) if reference else None,
            description=description or "Point charge",
        )


def request_withdrawal(owner_id, owner_role, amount, description=None):
    """Open a pending withdrawal; an admin settles it after the payout."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    with atomic():
        account = ensure_account(owner_id, owner_role)
        return append_transaction(
            account.id,
            "withdrawal",
            -amount,
            status="pending",
            description=description or "Withdrawal request",
        )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def list_transactions(account_id, limit=50, offset=0):
    return (
        Transaction.query
        .filter_by(account_id=account_id)
        .order_by(Transaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def find_transactions(job_id=None, tx_type=None, status=None, account_id=None):
    query = Transaction.query
    if job_id is not None:
        query = query.filter(Transaction.job_id == job_id)
    if tx_type is not None:
        query = query.filter(Transaction.type == tx_type)
    if status is not None:
        query = query.filter(Transaction.status == status)
    if account_id is not None:
        query = query.filter(Transaction.account_id == account_id)
    return query.order_by(Transaction.created_at.asc()).all()


def sum_for_job(job_id, tx_type, status="completed"):
    total = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.job_id == job_id, Transaction.type == tx_type, Transaction.status == status)
        .scalar()
    )
    return int(total)


def get_pending_payments(older_than=None):
    query = Transaction.query.filter(Transaction.type == "payment", Transaction.status == "pending")
    if older_than is not None:
        query = query.filter(Transaction.created_at <= older_than)
    return query.order_by(Transaction.created_at.asc()).all()


def verify_account(account_id):
    """Recompute the balance from completed transactions.

    Returns ``(ok, cached_balance, computed_balance)``.
    """
    account = get_balance(account_id)
    computed = (
        db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.account_id == account_id, Transaction.status == "completed")
        .scalar()
    )
    computed = int(computed)
    if computed != account.balance:
        logger.error("Ledger mismatch on %s: cached=%s computed=%s", account_id, account.balance, computed)
    return computed == account.balance, account.balance, computed
