# bundlewallet/services/reconciliation.py
"""
Read side of the ledger: history, balance summaries, audit log and totals.

Nothing here writes. The stored account balance is authoritative; ledger rows
are aggregated in SQL and never summed in Python to re-derive a balance.
Results may be served from a short-lived cache, so they can trail writes by up
to the cache TTL.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from bundlewallet.cache import TTLCache
from bundlewallet.errors import AccountNotFound, ValidationError
from bundlewallet.models import Account, ItemStatus, LedgerEntry, LedgerEntryType, Order, OrderItem, Product
from bundlewallet.schemas import LedgerEntryOut

REFUND_TYPES = (
    LedgerEntryType.ORDER_ITEM_REFUND,
    LedgerEntryType.ORDER_ITEMS_REFUND,
    LedgerEntryType.REFUND,
)


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    type: Optional[LedgerEntryType] = None
    search: Optional[str] = None  # account name, case-insensitive
    amount_filter: Optional[str] = None  # "positive" | "negative"
    page: int = 1
    limit: int = 100

    def cache_key(self, prefix: str) -> str:
        type_value = self.type.value if self.type else None
        return (f"{prefix}:{self.account_id}:{self.start}:{self.end}:{type_value}:"
                f"{self.search}:{self.amount_filter}:{self.page}:{self.limit}")


def _cached(cache: Optional[TTLCache], key: str, loader):
    if cache is None:
        return loader()
    return cache.get_or_load(key, loader)


def _apply_filters(stmt, filters: TransactionFilters):
    if filters.account_id is not None:
        stmt = stmt.where(LedgerEntry.account_id == filters.account_id)
    if filters.start is not None:
        stmt = stmt.where(LedgerEntry.created_at >= filters.start)
    if filters.end is not None:
        stmt = stmt.where(LedgerEntry.created_at <= filters.end)
    if filters.type is not None:
        stmt = stmt.where(LedgerEntry.type == filters.type)
    if filters.search:
        stmt = stmt.where(LedgerEntry.account_id.in_(
            select(Account.id).where(Account.name.ilike(f"%{filters.search}%"))
        ))
    if filters.amount_filter == "positive":
        stmt = stmt.where(LedgerEntry.amount >= 0)
    elif filters.amount_filter == "negative":
        stmt = stmt.where(LedgerEntry.amount < 0)
    elif filters.amount_filter not in (None, "", "all"):
        raise ValidationError(f"Unknown amount filter: {filters.amount_filter}")
    return stmt


def page_info(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def _require_account(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if not account:
        raise AccountNotFound(account_id)
    return account


def get_user_transactions(
    db: Session,
    account_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    type: Optional[LedgerEntryType] = None,
    limit: int = 1000,
    cache: Optional[TTLCache] = None,
) -> List[LedgerEntryOut]:
    """Newest first, capped at ``limit`` rows."""
    filters = TransactionFilters(account_id=account_id, start=start, end=end, type=type, limit=limit)

    def load():
        _require_account(db, account_id)
        stmt = _apply_filters(select(LedgerEntry), filters)
        rows = db.execute(
            stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).limit(limit)
        ).scalars().all()
        return [LedgerEntryOut.model_validate(row) for row in rows]

    return _cached(cache, filters.cache_key("user_transactions"), load)


def get_balance_summary(db: Session, account_id: int, cache: Optional[TTLCache] = None) -> Dict[str, Any]:
    def load():
        account = _require_account(db, account_id)

        rows = db.execute(
            select(LedgerEntry.type, func.sum(LedgerEntry.amount), func.count(LedgerEntry.id))
            .where(LedgerEntry.account_id == account_id)
            .group_by(LedgerEntry.type)
        ).all()
        by_type = {t.value: {"total": int(total or 0), "count": int(count)} for t, total, count in rows}

        def total(*types: LedgerEntryType) -> int:
            return sum(by_type.get(t.value, {}).get("total", 0) for t in types)

        deductions = abs(total(LedgerEntryType.LOAN_DEDUCTION))
        repayments = abs(total(LedgerEntryType.LOAN_REPAYMENT))
        statistics = {
            "total_topups": total(LedgerEntryType.TOPUP_APPROVED),
            "total_orders": abs(total(LedgerEntryType.ORDER)),
            "total_refunds": total(*REFUND_TYPES),
            "total_loan_assignments": total(LedgerEntryType.LOAN_ASSIGNMENT),
            "total_loan_repayments": repayments,
            "total_loan_deductions": deductions,
            "total_loan_balance": deductions - repayments,
        }

        return {
            "account_id": account.id,
            "current_balance": account.loan_balance,
            "has_loan": account.has_loan,
            "admin_loan_balance": account.admin_loan_balance,
            "transaction_count": sum(v["count"] for v in by_type.values()),
            "statistics": statistics,
            "by_type": by_type,
        }

    return _cached(cache, f"balance_summary:{account_id}", load)


def get_audit_log(db: Session, filters: TransactionFilters, cache: Optional[TTLCache] = None) -> Dict[str, Any]:
    if filters.page < 1 or filters.limit < 1:
        raise ValidationError("page and limit must be >= 1")

    def load():
        base = _apply_filters(select(LedgerEntry), filters)
        total = db.execute(select(func.count()).select_from(base.subquery())).scalar_one()
        rows = db.execute(
            base.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        ).scalars().all()

        return {
            "data": [LedgerEntryOut.model_validate(row) for row in rows],
            "pagination": page_info(filters.page, filters.limit, total),
        }

    return _cached(cache, filters.cache_key("audit_log"), load)


def get_transaction_statistics(db: Session, filters: TransactionFilters,
                               cache: Optional[TTLCache] = None) -> Dict[str, int]:
    def load():
        stmt = _apply_filters(
            select(
                func.count(LedgerEntry.id).label("count"),
                func.coalesce(func.sum(case((LedgerEntry.amount >= 0, LedgerEntry.amount), else_=0)), 0).label("credits"),
                func.coalesce(func.sum(case((LedgerEntry.amount < 0, LedgerEntry.amount), else_=0)), 0).label("debits"),
            ),
            filters,
        )
        totals = db.execute(stmt).one()
        credits = int(totals.credits or 0)
        debits = int(totals.debits or 0)
        return {
            "total_transactions": int(totals.count or 0),
            "total_credits": credits,
            "total_debits": debits,
            "net_balance": credits + debits,
        }

    return _cached(cache, filters.cache_key("transaction_statistics"), load)


def _start_of_today() -> datetime:
    return datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def get_balance_sheet(db: Session, start: Optional[datetime] = None, end: Optional[datetime] = None,
                      cache: Optional[TTLCache] = None) -> Dict[str, Any]:
    """
    Platform-wide totals over [start, end].

    Revenue counts Completed items only (quantity x charged unit price, falling
    back to the catalog price), bucketed by the order's creation time. Money
    movements come from the ledger. ``previous_balance`` is the sum of every
    account's last ledger balance before ``start``, or before today (UTC) when
    no start is given.
    """
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end")

    def in_range(column):
        clauses = []
        if start is not None:
            clauses.append(column >= start)
        if end is not None:
            clauses.append(column <= end)
        return clauses

    def load():
        unit_price = func.coalesce(OrderItem.unit_price_cents, Product.price_cents)
        revenue = db.execute(
            select(func.coalesce(func.sum(OrderItem.quantity * unit_price), 0))
            .select_from(OrderItem)
            .join(Order, Order.id == OrderItem.order_id)
            .join(Product, Product.id == OrderItem.product_id)
            .where(OrderItem.status == ItemStatus.COMPLETED, *in_range(Order.created_at))
        ).scalar_one()
        order_count = db.execute(
            select(func.count(Order.id)).where(*in_range(Order.created_at))
        ).scalar_one()

        rows = db.execute(
            select(LedgerEntry.type, func.sum(LedgerEntry.amount), func.count(LedgerEntry.id))
            .where(*in_range(LedgerEntry.created_at))
            .group_by(LedgerEntry.type)
        ).all()
        by_type = {t: (int(total or 0), int(count)) for t, total, count in rows}

        def total(*types: LedgerEntryType) -> int:
            return sum(by_type.get(t, (0, 0))[0] for t in types)

        def count(*types: LedgerEntryType) -> int:
            return sum(by_type.get(t, (0, 0))[1] for t in types)

        active_accounts = db.execute(
            select(func.count(func.distinct(LedgerEntry.account_id))).where(*in_range(LedgerEntry.created_at))
        ).scalar_one()

        # entries per account are appended under the balance lock, so the highest id is the latest
        cutoff = start if start is not None else _start_of_today()
        latest = (
            select(func.max(LedgerEntry.id).label("id"))
            .where(LedgerEntry.created_at < cutoff)
            .group_by(LedgerEntry.account_id)
            .subquery()
        )
        previous_balance = db.execute(
            select(func.coalesce(func.sum(LedgerEntry.balance), 0)).join(latest, LedgerEntry.id == latest.c.id)
        ).scalar_one()

        total_revenue = int(revenue)
        total_topups = total(LedgerEntryType.TOPUP_APPROVED)
        total_refunds = total(*REFUND_TYPES)
        return {
            "start": start,
            "end": end,
            "total_revenue": total_revenue,
            "total_topups": total_topups,
            "total_refunds": total_refunds,
            "total_topups_and_refunds": total_topups + total_refunds,
            "total_loan_assignments": total(LedgerEntryType.LOAN_ASSIGNMENT),
            "total_loan_repayments": abs(total(LedgerEntryType.LOAN_REPAYMENT)),
            "total_loan_deductions": abs(total(LedgerEntryType.LOAN_DEDUCTION)),
            "previous_balance": int(previous_balance),
            "order_count": int(order_count),
            "topup_count": count(LedgerEntryType.TOPUP_APPROVED),
            "refund_count": count(*REFUND_TYPES),
            "active_accounts": int(active_accounts),
            "net_cash_flow": total_topups + total_refunds - total_revenue,
        }

    return _cached(cache, f"balance_sheet:{start}:{end}", load)


def verify_ledger_chain(db: Session, account_id: int) -> Dict[str, Any]:
    """
    Walk an account's entries in creation order and check that each one
    continues the previous (previous_balance + amount == balance, and
    balance == next.previous_balance), starting from zero and ending at the
    stored balance. Reports the first entry that breaks the chain.
    """
    account = _require_account(db, account_id)

    entries = db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at, LedgerEntry.id)
        .execution_options(yield_per=500)
    ).scalars()

    expected_previous = 0
    count = 0
    first_break = None
    for entry in entries:
        count += 1
        if first_break is None and (
            entry.previous_balance != expected_previous
            or entry.previous_balance + entry.amount != entry.balance
        ):
            first_break = entry.id
        expected_previous = entry.balance

    return {
        "account_id": account.id,
        "entries": count,
        "stored_balance": account.loan_balance,
        "ledger_balance": expected_previous,
        "first_break": first_break,
        "consistent": first_break is None and expected_previous == account.loan_balance,
    }
