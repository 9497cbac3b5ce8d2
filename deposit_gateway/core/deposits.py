"""
Deposit orchestration and reconciliation.

Orchestrates a deposit:
1. Validate the request (all violations reported together)
2. Load the user and resolve customer details
3. Persist a pending transaction
4. Create the FedaPay transaction and attach its ID
5. Manual flow: return the hosted payment URL
   Automatic flow: push the payment and poll for settlement

Every status change, whatever its source (settlement poll, redirect
callback, webhook, sweeper, admin), goes through one primitive. A
transaction leaves ``pending`` at most once: the move is a compare-and-set
on ``status = 'pending'`` committed together with the balance credit, so
racing sources cannot both win and a completed deposit is credited once.
"""
import asyncio
import time
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from deposit_gateway.config import Settings
from deposit_gateway.core.customer import first_present, resolve_customer
from deposit_gateway.core.exceptions import (
    DataIntegrityError,
    DepositError,
    ProcessorError,
    ProcessorUnavailable,
    ValidationError,
)
from deposit_gateway.database.models import (
    ProcessingType,
    Transaction,
    TransactionStatus,
)
from deposit_gateway.database.repositories import (
    BalanceLedger,
    TransactionStore,
    UserStore,
)
from deposit_gateway.integrations.fedapay_client import FedaPayClient
from deposit_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PROCESSOR_STATUS_MAP = {
    "approved": TransactionStatus.COMPLETED,
    "declined": TransactionStatus.DECLINED,
    "canceled": TransactionStatus.CANCELED,
    "cancelled": TransactionStatus.CANCELED,
    "failed": TransactionStatus.FAILED,
}

DEFAULT_MESSAGES = {
    TransactionStatus.COMPLETED: "Payment approved",
    TransactionStatus.DECLINED: "Payment declined",
    TransactionStatus.CANCELED: "Payment canceled",
    TransactionStatus.FAILED: "Payment failed",
}


def map_processor_status(observed: Optional[str]) -> TransactionStatus:
    """Map a FedaPay status onto a local status. Unknown values stay pending."""
    return PROCESSOR_STATUS_MAP.get((observed or "").strip().lower(), TransactionStatus.PENDING)


@dataclass
class DepositRequest:
    amount: int
    user_id: str
    customer: Dict[str, Any]
    description: str


@dataclass
class DepositOutcome:
    transaction: Transaction
    message: str
    payment_url: Optional[str] = None
    new_balance: Optional[int] = None


@dataclass
class TransitionResult:
    transaction: Transaction
    applied: bool
    new_balance: Optional[int] = None


def validate_deposit_request(
    amount: Any,
    user_id: Any,
    customer: Optional[Mapping[str, Any]],
    description: Optional[str],
    settings: Settings,
) -> DepositRequest:
    """
    Check a deposit request and collect every violation.

    Raises:
        ValidationError: Listing all violations found
    """
    errors: List[str] = []

    if amount is None:
        errors.append("Amount is required")
    elif isinstance(amount, bool) or not isinstance(amount, int):
        errors.append("Amount must be an integer")
    elif amount < settings.min_deposit_amount:
        errors.append(f"Minimum amount is {settings.min_deposit_amount} {settings.currency}")

    customer = dict(customer or {})
    if first_present(customer.get("phone_number")) is None:
        errors.append("Customer phone number is required")

    if first_present(user_id) is None:
        errors.append("User ID is required")

    if errors:
        raise ValidationError(errors)

    return DepositRequest(
        amount=amount,
        user_id=str(user_id).strip(),
        customer=customer,
        description=first_present(description) or f"Deposit of {amount} {settings.currency}",
    )


class DepositService:
    """
    Deposit orchestrator.

    Holds configuration and the processor client; all persistence goes
    through the session passed to each call.
    """

    def __init__(
        self,
        settings: Settings,
        processor: FedaPayClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize deposit service.

        Args:
            settings: Application settings
            processor: FedaPay client
            sleep: Awaitable used between settlement polls
        """
        self.settings = settings
        self.processor = processor
        self._sleep = sleep
        # Per-transaction serialization inside this process; the database
        # compare-and-set still decides across processes.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transaction_id] = lock
        return lock

    async def create_deposit(
        self,
        db: AsyncSession,
        amount: Any,
        user_id: Any,
        customer: Optional[Mapping[str, Any]] = None,
        description: Optional[str] = None,
        automatic: bool = False,
    ) -> DepositOutcome:
        """
        Create a deposit.

        Args:
            db: Database session
            amount: Requested amount in the smallest currency unit
            user_id: Depositing user
            customer: Caller-supplied customer fields
            description: Optional description
            automatic: Push the payment and wait for settlement

        Returns:
            DepositOutcome: Transaction plus payment URL or new balance

        Raises:
            ValidationError: Invalid request, nothing persisted
            UserNotFound: Unknown user, nothing persisted
            ProcessorError: FedaPay rejected the deposit
            ProcessorUnavailable: FedaPay unreachable, deposit left pending
        """
        flow = ProcessingType.AUTOMATIC if automatic else ProcessingType.MANUAL
        start = time.time()

        try:
            request = validate_deposit_request(
                amount, user_id, customer, description, self.settings
            )
        except ValidationError as e:
            logger.info("deposit_validation_failed", flow=flow.value, errors=e.errors)
            metrics.record_deposit_request(flow.value, "invalid", 0)
            raise

        log = logger.bind(user_id=request.user_id, flow=flow.value, amount=request.amount)

        try:
            outcome = await self._create(db, request, flow, log)
        except DepositError as e:
            metrics.record_deposit_request(flow.value, type(e).__name__, request.amount)
            raise
        finally:
            metrics.record_deposit_duration(flow.value, time.time() - start)

        metrics.record_deposit_request(flow.value, outcome.transaction.status, request.amount)
        return outcome

    async def _create(
        self,
        db: AsyncSession,
        request: DepositRequest,
        flow: ProcessingType,
        log: Any,
    ) -> DepositOutcome:
        user = await UserStore(db).get(request.user_id)
        snapshot = resolve_customer(request.customer, user, self.settings.default_country)

        store = TransactionStore(db)
        transaction = Transaction(
            user_id=user.id,
            amount=request.amount,
            currency=self.settings.currency,
            description=request.description,
            customer=snapshot.to_dict(),
            processing_type=flow.value,
            processing_message="Awaiting payment",
        )
        transaction_id = await store.create(transaction)
        await db.commit()
        log = log.bind(transaction_id=transaction_id)
        log.info("deposit_created")

        try:
            remote = await self.processor.create_remote_transaction(
                amount=request.amount,
                currency=self.settings.currency,
                description=request.description,
                customer=snapshot,
                callback_url=self.settings.callback_url,
            )
        except ProcessorUnavailable:
            await store.update(
                transaction_id,
                processing_message="Payment processor unavailable, deposit not yet submitted",
            )
            await db.commit()
            log.warning("deposit_left_pending_processor_unavailable")
            raise
        except ProcessorError as e:
            # The remote transaction never existed; nothing can settle it later.
            await self.transition(
                db,
                transaction_id,
                TransactionStatus.FAILED.value,
                message=f"Rejected by payment processor: {e.detail or e.message}",
                source="creation",
            )
            log.warning("deposit_rejected_by_processor", error=e.detail)
            raise

        try:
            transaction = await store.attach_external_id(
                transaction_id, remote.id, processor_status=remote.status
            )
            await db.commit()
        except DataIntegrityError:
            await db.rollback()
            raise
        log = log.bind(external_id=remote.id)

        try:
            token = await self.processor.generate_payment_token(remote)
        except DepositError as e:
            await store.update(transaction_id, processing_message=f"Payment link unavailable: {e.message}")
            await db.commit()
            log.warning("payment_token_failed", error=e.detail)
            raise

        transaction = await store.update(transaction_id, payment_url=token.url)
        await db.commit()

        if flow is ProcessingType.MANUAL:
            log.info("deposit_payment_url_issued")
            return DepositOutcome(
                transaction=transaction,
                message="Deposit initiated, complete the payment on the payment page",
                payment_url=token.url,
            )

        try:
            await self.processor.send_now(remote, token, self.settings.fedapay_payment_mode)
        except DepositError as e:
            # The hosted page may still be used, so the deposit stays pending.
            await store.update(transaction_id, processing_message=f"Payment push failed: {e.message}")
            await db.commit()
            log.warning("payment_push_failed", error=e.detail)
            raise

        transaction = await self._await_settlement(db, transaction, log)
        new_balance = None
        if transaction.status == TransactionStatus.COMPLETED.value:
            new_balance = await BalanceLedger(db).get_balance(transaction.user_id)
            message = "Deposit completed"
        elif transaction.is_terminal:
            message = transaction.processing_message or f"Payment {transaction.status}"
        else:
            message = "Payment request sent, awaiting confirmation"

        return DepositOutcome(
            transaction=transaction,
            message=message,
            payment_url=token.url,
            new_balance=new_balance,
        )

    async def _await_settlement(
        self, db: AsyncSession, transaction: Transaction, log: Any
    ) -> Transaction:
        """Poll FedaPay until the deposit is terminal or attempts run out."""
        attempts = self.settings.settlement_poll_attempts
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._sleep(self.settings.settlement_poll_interval_seconds)
            try:
                remote = await self.processor.fetch_remote_status(transaction.external_id)
            except ProcessorUnavailable:
                log.warning("settlement_poll_unavailable", attempt=attempt)
                continue
            except ProcessorError as e:
                log.warning("settlement_poll_rejected", attempt=attempt, error=e.detail)
                break

            reconciled = await self.reconcile(
                db, transaction.external_id, remote.status, source="poll"
            )
            if reconciled is not None:
                transaction = reconciled
            if transaction.is_terminal:
                break

        if not transaction.is_terminal:
            log.info("settlement_still_pending", attempts=attempts)
        return transaction

    async def reconcile(
        self,
        db: AsyncSession,
        external_id: str,
        observed_status: Optional[str],
        message: Optional[str] = None,
        source: str = "webhook",
    ) -> Optional[Transaction]:
        """
        Apply a status observed at FedaPay to the matching local deposit.

        Args:
            db: Database session
            external_id: FedaPay transaction ID
            observed_status: FedaPay status (approved, declined, ...)
            message: Optional human-readable context
            source: Entry point, for logs and metrics

        Returns:
            Optional[Transaction]: The deposit after reconciliation, or None
            if no deposit carries this external ID
        """
        transaction = await TransactionStore(db).find_by_external_id(external_id)
        if transaction is None:
            logger.warning(
                "reconcile_unmatched",
                external_id=external_id,
                observed_status=observed_status,
                source=source,
            )
            metrics.record_reconciliation(source, "not_found")
            return None

        target = map_processor_status(observed_status)
        if target is TransactionStatus.PENDING and not message:
            message = f"Processor status '{observed_status}', awaiting final outcome"

        result = await self._apply(
            db,
            transaction.id,
            target,
            message=message,
            processor_status=(observed_status or "").strip().lower() or None,
            source=source,
        )
        return result.transaction

    async def transition(
        self,
        db: AsyncSession,
        transaction_id: str,
        status: str,
        message: Optional[str] = None,
        source: str = "admin",
    ) -> TransitionResult:
        """
        Apply a local status to a deposit by primary ID.

        Raises:
            ValidationError: Unknown status
            TransactionNotFound: Unknown deposit
        """
        try:
            target = TransactionStatus(status)
        except ValueError as e:
            raise ValidationError(
                [f"Status must be one of: {', '.join(s.value for s in TransactionStatus)}"]
            ) from e
        return await self._apply(db, transaction_id, target, message=message, source=source)

    async def _apply(
        self,
        db: AsyncSession,
        transaction_id: str,
        target: TransactionStatus,
        message: Optional[str] = None,
        processor_status: Optional[str] = None,
        source: str = "webhook",
    ) -> TransitionResult:
        """
        The single transition primitive.

        Terminal deposits are returned untouched. A pending target only
        refreshes the informational fields. A terminal target runs the
        compare-and-set and, for ``completed``, the credit, then commits
        both together.
        """
        store = TransactionStore(db)
        async with self._lock_for(transaction_id):
            try:
                current = await store.get(transaction_id)

                if current.is_terminal:
                    await db.commit()
                    logger.info(
                        "reconcile_noop_terminal",
                        transaction_id=current.id,
                        status=current.status,
                        observed=target.value,
                        source=source,
                    )
                    metrics.record_reconciliation(source, "noop")
                    return TransitionResult(current, applied=False)

                if target is TransactionStatus.PENDING:
                    fields: Dict[str, Any] = {}
                    if message:
                        fields["processing_message"] = message
                    if processor_status:
                        fields["processor_status"] = processor_status
                    if fields:
                        current = await store.update(current.id, only_if_pending=True, **fields)
                    await db.commit()
                    metrics.record_reconciliation(source, "pending")
                    return TransitionResult(current, applied=False)

                completing = target is TransactionStatus.COMPLETED
                won = await store.transition_if_pending(
                    current.id,
                    target.value,
                    message=message or DEFAULT_MESSAGES[target],
                    processor_status=processor_status,
                    credited=completing,
                )
                new_balance = None
                if won and completing:
                    new_balance = await BalanceLedger(db).credit(current.user_id, current.amount)
                current = await store.get(current.id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if not won:
            logger.info(
                "reconcile_lost_race",
                transaction_id=current.id,
                status=current.status,
                observed=target.value,
                source=source,
            )
            metrics.record_reconciliation(source, "noop")
            return TransitionResult(current, applied=False)

        logger.info(
            "deposit_transitioned",
            transaction_id=current.id,
            external_id=current.external_id,
            status=current.status,
            source=source,
        )
        metrics.record_reconciliation(source, "applied")
        if new_balance is not None:
            logger.info(
                "balance_credited",
                transaction_id=current.id,
                user_id=current.user_id,
                amount=current.amount,
                new_balance=new_balance,
            )
            metrics.record_balance_credit(current.amount)
        return TransitionResult(current, applied=True, new_balance=new_balance)

    async def refresh_status(
        self, db: AsyncSession, transaction_id: str, source: str = "poll"
    ) -> Transaction:
        """
        Fetch a deposit's status from FedaPay and reconcile it.

        Raises:
            TransactionNotFound: Unknown deposit
            ProcessorError: Deposit was never registered with FedaPay
            ProcessorUnavailable: FedaPay unreachable
        """
        transaction = await TransactionStore(db).get(transaction_id)
        if transaction.is_terminal:
            return transaction
        if not transaction.external_id:
            raise ProcessorError(
                "Deposit was never registered with the payment processor",
                status_code=409,
            )

        remote = await self.processor.fetch_remote_status(transaction.external_id)
        reconciled = await self.reconcile(
            db, transaction.external_id, remote.status, source=source
        )
        return reconciled or transaction

    async def sweep_stale_pending(
        self,
        db: AsyncSession,
        older_than: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> int:
        """
        Refresh pending deposits that no callback or webhook has settled.

        Returns:
            int: Number of deposits that reached a terminal status
        """
        if older_than is None:
            older_than = datetime.now(timezone.utc) - timedelta(
                minutes=self.settings.sweeper_stale_after_minutes
            )
        stale = await TransactionStore(db).list_stale_pending(
            older_than, limit or self.settings.sweeper_batch_size
        )
        stale_ids = [t.id for t in stale]
        await db.commit()

        settled = 0
        for transaction_id in stale_ids:
            try:
                transaction = await self.refresh_status(db, transaction_id, source="sweeper")
            except DepositError as e:
                logger.warning(
                    "sweep_refresh_failed",
                    transaction_id=transaction_id,
                    error=e.message,
                )
                continue
            if transaction.is_terminal:
                settled += 1

        logger.info("pending_sweep_completed", candidates=len(stale_ids), settled=settled)
        metrics.record_sweep(settled)
        return settled

    async def get_transaction(self, db: AsyncSession, transaction_id: str) -> Transaction:
        return await TransactionStore(db).get(transaction_id)

    async def find_by_external_id(
        self, db: AsyncSession, external_id: str
    ) -> Optional[Transaction]:
        return await TransactionStore(db).find_by_external_id(external_id)

    async def list_user_transactions(
        self,
        db: AsyncSession,
        user_id: str,
        limit: int = 10,
        status: Optional[str] = None,
    ) -> List[Transaction]:
        if status is not None and status not in {s.value for s in TransactionStatus}:
            raise ValidationError(
                [f"Status must be one of: {', '.join(s.value for s in TransactionStatus)}"]
            )
        return await TransactionStore(db).list_by_user(user_id, limit=limit, status=status)

    async def user_stats(self, db: AsyncSession, user_id: str) -> Dict[str, int]:
        return await TransactionStore(db).user_stats(user_id)
