"""
Credit ledger - event-sourced credit balances.

The balance of an identity is the signed sum of its ledger_events. There
is no mutable counter; identities.credits_balance is a cached hint that
is refreshed after every append and used only when the ledger query
fails.

CRITICAL: spend() must be atomic per identity. Two concurrent spends
against one remaining credit must not both succeed. The check and the
append run in one transaction that first locks the identity row
(SELECT ... FOR UPDATE) while holding a per-identity in-process lock.
SQLite ignores FOR UPDATE, so the in-process lock is what serializes
spends there.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Optional, Dict, Any

from sqlalchemy import func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from creditgate.entitlements.errors import InsufficientCreditsError
from creditgate.models.identity import Identity
from creditgate.models.ledger_event import (
    LedgerEvent,
    LedgerEventType,
    LEDGER_EVENT_DISPLAY_TYPES,
)
from creditgate.services.identity_service import IdentityService

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class KeyedLockRegistry:
    """
    Hands out one Lock per key (an identity id, a site hash) so writers
    on the same key run one at a time within this process. Locks are
    kept for the life of the process; releasing them while a waiter holds
    a reference would let a second lock for the same key appear.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()

    def get_lock(self, key: str) -> Lock:
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = Lock()
            return self._locks[key]


_identity_locks = KeyedLockRegistry()


@dataclass
class SpendResult:
    """Result of a successful spend."""
    remaining_balance: int
    transaction_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remainingBalance": self.remaining_balance,
            "transactionId": self.transaction_id,
        }


@dataclass
class AddResult:
    """Result of a purchase or refund append."""
    new_balance: int
    transaction_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "newBalance": self.new_balance,
            "transactionId": self.transaction_id,
        }


@dataclass
class LedgerRollup:
    """Aggregate of ledger events over a window."""
    event_count: int
    total_purchased: int
    total_used: int
    total_refunded: int

    @property
    def net(self) -> int:
        return self.total_purchased + self.total_refunded - self.total_used

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventCount": self.event_count,
            "totalPurchased": self.total_purchased,
            "totalUsed": self.total_used,
            "totalRefunded": self.total_refunded,
            "net": self.net,
        }


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    return amount


class CreditLedger:
    """
    Append-only credit ledger for identities.

    Only this class appends ledger events.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _sum_deltas(self, identity_id: str) -> int:
        total = self.db.query(
            func.coalesce(func.sum(LedgerEvent.credits_delta), 0)
        ).filter(LedgerEvent.identity_id == identity_id).scalar()
        return int(total or 0)

    def get_balance(self, identity_id: str) -> int:
        """
        Authoritative balance for an identity.

        On store failure, logs a degradation warning and returns the cached
        balance (0 if that is unavailable too). Never raises.
        """
        try:
            return self._sum_deltas(identity_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(
                "Ledger balance query failed, using cached balance",
                extra={"identity_id": identity_id, "error": str(e)},
            )
            return self._cached_balance(identity_id)

    def _cached_balance(self, identity_id: str) -> int:
        try:
            cached = self.db.query(Identity.credits_balance).filter(
                Identity.id == identity_id
            ).scalar()
            return int(cached or 0)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Cached balance unavailable",
                extra={"identity_id": identity_id, "error": str(e)},
            )
            return 0

    def has_transaction(self, transaction_id: str) -> bool:
        """Check whether any ledger event carries this transaction id."""
        if not transaction_id:
            return False
        existing = self.db.query(LedgerEvent.id).filter(
            LedgerEvent.transaction_id == transaction_id
        ).first()
        return existing is not None

    def get_transactions(
        self,
        identity_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Paginated transaction history, newest first."""
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))

        base = self.db.query(LedgerEvent).filter(
            LedgerEvent.identity_id == identity_id,
            LedgerEvent.event_type.in_(LedgerEventType.ALL),
        )
        total = base.count()
        events = (
            base.order_by(LedgerEvent.created_at.desc(), LedgerEvent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        transactions = [
            {
                "id": event.id,
                "type": LEDGER_EVENT_DISPLAY_TYPES.get(event.event_type, event.event_type),
                "amount": event.credits_delta,
                "transactionId": event.transaction_id,
                "metadata": event.event_metadata or {},
                "createdAt": event.created_at.isoformat() if event.created_at else None,
            }
            for event in events
        ]

        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    def get_rollup(
        self,
        identity_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LedgerRollup:
        """Totals of purchased, used and refunded credits over a window."""
        query = self.db.query(
            func.count(LedgerEvent.id),
            func.coalesce(func.sum(case(
                (LedgerEvent.event_type == LedgerEventType.PURCHASE, LedgerEvent.credits_delta),
                else_=0,
            )), 0),
            func.coalesce(func.sum(case(
                (LedgerEvent.event_type == LedgerEventType.CONSUMPTION, -LedgerEvent.credits_delta),
                else_=0,
            )), 0),
            func.coalesce(func.sum(case(
                (LedgerEvent.event_type == LedgerEventType.REFUND, LedgerEvent.credits_delta),
                else_=0,
            )), 0),
        ).filter(LedgerEvent.identity_id == identity_id)

        if start is not None:
            query = query.filter(LedgerEvent.created_at >= start)
        if end is not None:
            query = query.filter(LedgerEvent.created_at <= end)

        count, purchased, used, refunded = query.one()
        return LedgerRollup(
            event_count=int(count or 0),
            total_purchased=int(purchased or 0),
            total_used=int(used or 0),
            total_refunded=int(refunded or 0),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def spend(
        self,
        identity_id: str,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendResult:
        """
        Atomically check the balance and append a consumption event.

        Raises:
            ValueError: If amount is not a positive integer
            InsufficientCreditsError: If balance < amount (nothing appended)
        """
        amount = _validate_amount(amount)

        with _identity_locks.get_lock(identity_id):
            try:
                identity = (
                    self.db.query(Identity)
                    .filter(Identity.id == identity_id)
                    .with_for_update()
                    .first()
                )
                if identity is None:
                    self.db.rollback()
                    raise InsufficientCreditsError(current_balance=0, requested=amount)

                balance = self._sum_deltas(identity_id)
                if balance < amount:
                    self.db.rollback()
                    logger.info(
                        "Spend rejected: insufficient credits",
                        extra={"identity_id": identity_id, "balance": balance, "requested": amount},
                    )
                    raise InsufficientCreditsError(current_balance=balance, requested=amount)

                event = LedgerEvent(
                    identity_id=identity_id,
                    event_type=LedgerEventType.CONSUMPTION,
                    credits_delta=-amount,
                    transaction_id=(metadata or {}).get("request_id"),
                    event_metadata=dict(metadata or {}),
                )
                self.db.add(event)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    "Spend failed",
                    extra={"identity_id": identity_id, "amount": amount, "error": str(e)},
                )
                raise

        remaining = balance - amount
        logger.info(
            "Credits spent",
            extra={"identity_id": identity_id, "amount": amount, "remaining_balance": remaining},
        )
        self._refresh_cached_balance(identity_id)
        return SpendResult(remaining_balance=remaining, transaction_id=event.id)

    def add(
        self,
        identity_id: str,
        amount: int,
        source_metadata: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None,
        event_type: str = LedgerEventType.PURCHASE,
    ) -> AddResult:
        """
        Append a positive-delta event.

        The ledger does not deduplicate. Callers that need idempotency pass
        a provider transaction_id and check has_transaction() first.
        """
        amount = _validate_amount(amount)
        if event_type not in (LedgerEventType.PURCHASE, LedgerEventType.REFUND):
            raise ValueError(f"add() cannot append event type {event_type!r}")

        event = LedgerEvent(
            identity_id=identity_id,
            event_type=event_type,
            credits_delta=amount,
            transaction_id=transaction_id,
            event_metadata=dict(source_metadata or {}),
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Credit add failed",
                extra={
                    "identity_id": identity_id,
                    "amount": amount,
                    "transaction_id": transaction_id,
                    "error": str(e),
                },
            )
            raise

        new_balance = self.get_balance(identity_id)
        logger.info(
            "Credits added",
            extra={
                "identity_id": identity_id,
                "amount": amount,
                "event_type": event_type,
                "transaction_id": transaction_id,
                "new_balance": new_balance,
            },
        )
        self._refresh_cached_balance(identity_id, new_balance)
        return AddResult(new_balance=new_balance, transaction_id=event.id)

    def add_once(
        self,
        identity_id: str,
        amount: int,
        transaction_id: str,
        source_metadata: Optional[Dict[str, Any]] = None,
        event_type: str = LedgerEventType.PURCHASE,
    ) -> Optional[AddResult]:
        """
        Append unless an event with this transaction id already exists.

        The existence check and the append run under the same per-identity
        lock as spend(), so two deliveries of one provider transaction
        cannot both append.

        Returns:
            AddResult, or None if the transaction was already applied
        """
        if not transaction_id:
            raise ValueError("transaction_id is required for idempotent add")

        with _identity_locks.get_lock(identity_id):
            try:
                self.db.query(Identity).filter(
                    Identity.id == identity_id
                ).with_for_update().first()
                if self.has_transaction(transaction_id):
                    self.db.rollback()
                    logger.info(
                        "Duplicate credit transaction skipped",
                        extra={"identity_id": identity_id, "transaction_id": transaction_id},
                    )
                    return None
            except SQLAlchemyError:
                self.db.rollback()
                raise
            return self.add(
                identity_id,
                amount,
                source_metadata=source_metadata,
                transaction_id=transaction_id,
                event_type=event_type,
            )

    def refund(
        self,
        identity_id: str,
        amount: int,
        source_metadata: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None,
    ) -> AddResult:
        """Refunds are new positive events, never edits of old ones."""
        return self.add(
            identity_id,
            amount,
            source_metadata=source_metadata,
            transaction_id=transaction_id,
            event_type=LedgerEventType.REFUND,
        )

    def _refresh_cached_balance(self, identity_id: str, balance: Optional[int] = None) -> None:
        """Best-effort update of identities.credits_balance."""
        try:
            if balance is None:
                balance = self._sum_deltas(identity_id)
            self.db.query(Identity).filter(Identity.id == identity_id).update(
                {Identity.credits_balance: balance}, synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(
                "Cached balance refresh failed",
                extra={"identity_id": identity_id, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Email convenience wrappers
    # ------------------------------------------------------------------

    def get_balance_by_email(self, email: str) -> int:
        identity = IdentityService(self.db).find_by_email(email)
        if identity is None:
            return 0
        return self.get_balance(identity.id)

    def add_credits_by_email(
        self,
        email: str,
        amount: int,
        source_metadata: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None,
    ) -> AddResult:
        identity = IdentityService(self.db).get_or_create(email)
        return self.add(identity.id, amount, source_metadata, transaction_id)

    def spend_by_email(
        self,
        email: str,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendResult:
        identity = IdentityService(self.db).get_or_create(email)
        return self.spend(identity.id, amount, metadata)
