# bundlewallet/services/ledger.py
import logging
from typing import Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from bundlewallet.db import unit_of_work
from bundlewallet.errors import AccountNotFound, DuplicateReference, TransientStoreError
from bundlewallet.metrics import duplicate_compensations, ledger_entries_total
from bundlewallet.models import Account, LedgerEntry, LedgerEntryType
from bundlewallet.retry import RetryConfig, STORE_RETRY_CONFIG, run_with_retry

logger = logging.getLogger(__name__)

EntryType = Union[LedgerEntryType, str]

# A retried keyed write may collide with its own earlier attempt on the unique index
KEYED_RETRY_CONFIG = RetryConfig(
    max_attempts=STORE_RETRY_CONFIG.max_attempts,
    base_delay=STORE_RETRY_CONFIG.base_delay,
    max_delay=STORE_RETRY_CONFIG.max_delay,
    retryable_exceptions=(TransientStoreError, DuplicateReference),
)


def apply_ledger_entry(
    db: Session,
    account_id: int,
    amount: int,
    type: EntryType,
    description: str,
    reference: Optional[str] = None,
) -> LedgerEntry:
    """
    The only write path to ``Account.loan_balance``.

    Must run inside the caller's unit of work:
      - increment the balance in a single UPDATE ... RETURNING (no read-then-write)
      - derive previous_balance from the post-update value
      - append one LedgerEntry carrying the (previous, new) pair
    Both writes commit or roll back with the caller's transaction.
    Does not interpret ``type`` or ``reference``; deduplication is the caller's job.
    """
    entry_type = LedgerEntryType(type)

    new_balance = db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(loan_balance=Account.loan_balance + amount)
        .returning(Account.loan_balance)
    ).scalar_one_or_none()

    if new_balance is None:
        raise AccountNotFound(account_id)

    entry = LedgerEntry(
        account_id=account_id,
        amount=amount,
        balance=new_balance,
        previous_balance=new_balance - amount,
        type=entry_type,
        description=description,
        reference=reference,
    )
    db.add(entry)
    db.flush()

    ledger_entries_total.labels(entry_type.value).inc()
    logger.info(
        f"ledger: account={account_id} type={entry_type.value} amount={amount} "
        f"balance={entry.previous_balance}->{new_balance} ref={reference}"
    )
    return entry


def find_entry(db: Session, account_id: int, type: EntryType, reference: str) -> Optional[LedgerEntry]:
    return db.execute(
        select(LedgerEntry).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.type == LedgerEntryType(type),
            LedgerEntry.reference == reference,
        )
    ).scalar_one_or_none()


def apply_once(
    db: Session,
    account_id: int,
    amount: int,
    type: EntryType,
    description: str,
    reference: str,
) -> Tuple[LedgerEntry, bool]:
    """
    Apply a keyed entry unless one with the same (account, type, reference)
    already exists. Returns (entry, created).

    A concurrent writer that slips past the lookup is stopped by the unique
    index; the caller's unit of work then fails with DuplicateReference and
    re-running it lands on the existing entry.
    """
    existing = find_entry(db, account_id, type, reference)
    if existing is not None:
        duplicate_compensations.labels(LedgerEntryType(type).value).inc()
        logger.warning(f"ledger: {LedgerEntryType(type).value} {reference} already recorded, skipping")
        return existing, False
    return apply_ledger_entry(db, account_id, amount, type, description, reference), True


def post_ledger_entry(
    account_id: int,
    amount: int,
    type: EntryType,
    description: str,
    reference: Optional[str] = None,
) -> LedgerEntry:
    """
    apply_ledger_entry in its own unit of work.

    Unkeyed entries are attempted once: replaying them would apply the amount
    twice. Keyed entries are deduplicated by reference, so they are retried on
    transient store errors.
    """
    def attempt() -> LedgerEntry:
        with unit_of_work() as db:
            if reference is None:
                return apply_ledger_entry(db, account_id, amount, type, description)
            entry, _ = apply_once(db, account_id, amount, type, description, reference)
            return entry

    if reference is None:
        return attempt()
    return run_with_retry("post_ledger_entry", attempt, KEYED_RETRY_CONFIG)
