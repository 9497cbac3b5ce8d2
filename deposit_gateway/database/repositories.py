"""
Persistence operations for deposits and balances.

Every method works inside the caller's session and never commits; the
deposit service owns transaction boundaries. Status changes only happen
through ``TransactionStore.transition_if_pending``, a compare-and-set on
``status = 'pending'``, and balances only change through
``BalanceLedger.credit``, an in-database increment.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deposit_gateway.core.exceptions import (
    DataIntegrityError,
    TransactionNotFound,
    UserNotFound,
)
from deposit_gateway.database.models import (
    TERMINAL_STATUSES,
    Transaction,
    TransactionStatus,
    User,
    new_id,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_LIST_LIMIT = 10
MAX_LIST_LIMIT = 100


class TransactionStore:
    """CRUD and conditional updates over the ``transactions`` table."""

    # Fields fixed at creation (or, for external_id, at attachment)
    IMMUTABLE_FIELDS = frozenset(
        {"id", "external_id", "user_id", "amount", "currency", "customer", "created_at", "credited_at"}
    )

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, transaction: Transaction) -> str:
        """
        Persist a new pending transaction.

        Args:
            transaction: Unsaved transaction

        Returns:
            str: Generated primary ID
        """
        now = utcnow()
        transaction.id = transaction.id or new_id()
        transaction.status = TransactionStatus.PENDING.value
        transaction.created_at = now
        transaction.updated_at = now
        self.db.add(transaction)
        await self.db.flush()
        return transaction.id

    async def get(self, transaction_id: str) -> Transaction:
        """
        Load a transaction by primary ID.

        Raises:
            TransactionNotFound: If no such transaction exists
        """
        transaction = await self.db.get(Transaction, transaction_id, populate_existing=True)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    async def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        """
        Look up a transaction by the processor's ID.

        More than one match violates the external ID invariant: the oldest
        row is returned and the anomaly is logged.

        Args:
            external_id: Processor transaction ID

        Returns:
            Optional[Transaction]: Matching transaction, if any
        """
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.external_id == str(external_id))
            .order_by(Transaction.created_at, Transaction.id)
            .limit(2)
            .execution_options(populate_existing=True)
        )
        matches = list(result.scalars().all())
        if not matches:
            return None
        if len(matches) > 1:
            logger.error(
                "duplicate_external_id",
                external_id=external_id,
                transaction_ids=[t.id for t in matches],
            )
        return matches[0]

    async def attach_external_id(
        self,
        transaction_id: str,
        external_id: str,
        processor_status: Optional[str] = None,
    ) -> Transaction:
        """
        Record the processor's ID on a transaction that has none yet.

        Raises:
            DataIntegrityError: If the ID is already mapped elsewhere or the
                transaction already carries a different one
        """
        external_id = str(external_id)
        values: Dict[str, Any] = {"external_id": external_id, "updated_at": utcnow()}
        if processor_status is not None:
            values["processor_status"] = processor_status
        try:
            result = await self.db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.external_id.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            logger.error(
                "external_id_conflict",
                transaction_id=transaction_id,
                external_id=external_id,
            )
            raise DataIntegrityError(
                "Processor transaction is already linked to another deposit",
                detail=str(e.orig),
            ) from e

        transaction = await self.get(transaction_id)
        if result.rowcount != 1 and transaction.external_id != external_id:
            raise DataIntegrityError(
                "Deposit is already linked to another processor transaction",
                detail=f"current={transaction.external_id} new={external_id}",
            )
        return transaction

    async def update(
        self, transaction_id: str, only_if_pending: bool = False, **fields: Any
    ) -> Transaction:
        """
        Merge non-status fields into a transaction and refresh ``updated_at``.

        With ``only_if_pending`` the write is skipped if the row has already
        left ``pending``.

        Raises:
            ValueError: If an immutable field or ``status`` is passed
            TransactionNotFound: If no such transaction exists
        """
        forbidden = set(fields) & (self.IMMUTABLE_FIELDS | {"status"})
        if forbidden:
            raise ValueError(f"Cannot update fields: {sorted(forbidden)}")

        fields["updated_at"] = utcnow()
        stmt = update(Transaction).where(Transaction.id == transaction_id)
        if only_if_pending:
            stmt = stmt.where(Transaction.status == TransactionStatus.PENDING.value)
        await self.db.execute(
            stmt
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return await self.get(transaction_id)

    async def transition_if_pending(
        self,
        transaction_id: str,
        status: str,
        message: Optional[str] = None,
        processor_status: Optional[str] = None,
        credited: bool = False,
    ) -> bool:
        """
        Move a pending transaction to a terminal status.

        Single conditional UPDATE; of any number of concurrent callers at
        most one sees ``True``.

        Args:
            transaction_id: Primary ID
            status: Terminal target status
            message: Optional processing message
            processor_status: Raw processor status that caused the change
            credited: Stamp ``credited_at`` (completed deposits)

        Returns:
            bool: Whether this call performed the transition
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        now = utcnow()
        values: Dict[str, Any] = {"status": status, "updated_at": now}
        if message is not None:
            values["processing_message"] = message
        if processor_status is not None:
            values["processor_status"] = processor_status
        if credited:
            values["credited_at"] = now

        result = await self.db.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_by_user(
        self,
        user_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        status: Optional[str] = None,
    ) -> List[Transaction]:
        """List a user's transactions, newest first."""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        stmt = select(Transaction).where(Transaction.user_id == user_id)
        if status:
            stmt = stmt.where(Transaction.status == status)
        stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def user_stats(self, user_id: str) -> Dict[str, int]:
        """
        Aggregate a user's deposits.

        Returns:
            Dict[str, int]: Counts per status, total deposited (completed
            only) and average requested amount across all deposits
        """
        result = await self.db.execute(
            select(
                Transaction.status,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount), 0),
            )
            .where(Transaction.user_id == user_id)
            .group_by(Transaction.status)
        )
        counts = {s.value: 0 for s in TransactionStatus}
        amounts = {s.value: 0 for s in TransactionStatus}
        for status, count, amount in result.all():
            counts[status] = int(count)
            amounts[status] = int(amount)

        total_count = sum(counts.values())
        total_amount = sum(amounts.values())
        return {
            "totalTransactions": total_count,
            "completed": counts[TransactionStatus.COMPLETED.value],
            "pending": counts[TransactionStatus.PENDING.value],
            "failed": counts[TransactionStatus.FAILED.value],
            "declined": counts[TransactionStatus.DECLINED.value],
            "canceled": counts[TransactionStatus.CANCELED.value],
            "totalDeposited": amounts[TransactionStatus.COMPLETED.value],
            "averageAmount": round(total_amount / total_count) if total_count else 0,
        }

    async def list_stale_pending(self, older_than: datetime, limit: int) -> List[Transaction]:
        """Pending transactions known to the processor and created before ``older_than``."""
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.external_id.is_not(None),
                Transaction.created_at < older_than,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class UserStore:
    """Read access to user profiles."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> User:
        user = await self.db.get(User, user_id, populate_existing=True)
        if user is None:
            raise UserNotFound(user_id)
        return user


class BalanceLedger:
    """The only write path for user balances."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def credit(self, user_id: str, amount: int) -> int:
        """
        Add ``amount`` to a user's balance.

        The increment is evaluated by the database, so concurrent credits to
        the same user serialize on the row and none is lost.

        Args:
            user_id: User to credit
            amount: Positive amount in the smallest currency unit

        Returns:
            int: Balance after the credit

        Raises:
            UserNotFound: If the user does not exist
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UserNotFound(user_id)
        return await self.get_balance(user_id)

    async def get_balance(self, user_id: str) -> int:
        balance = await self.db.scalar(select(User.balance).where(User.id == user_id))
        if balance is None:
            raise UserNotFound(user_id)
        return int(balance)
