"""
FedaPay webhook handler with signature verification.

Implements:
- HMAC-SHA256 verification of the raw request body
- Fail-closed behaviour when no webhook secret is configured
- Event type routing to the reconciliation primitive
- Acknowledgement of every authenticated delivery, matched or not
"""
import hashlib
import hmac
import json
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from deposit_gateway.config import Settings
from deposit_gateway.core.exceptions import SignatureInvalid
from deposit_gateway.monitoring.metrics import metrics

if TYPE_CHECKING:
    from deposit_gateway.core.deposits import DepositService

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-FEDAPAY-SIGNATURE"

# Webhook event -> FedaPay transaction status it reports
EVENT_STATUSES = {
    "transaction.approved": "approved",
    "transaction.declined": "declined",
    "transaction.failed": "failed",
    "transaction.canceled": "canceled",
    "transaction.cancelled": "canceled",
}

ACK = {"received": True}


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class FedaPayWebhookHandler:
    """
    Handles FedaPay webhook deliveries.

    Reconciliation is idempotent, so a redelivered event is simply a no-op
    against an already-terminal deposit.
    """

    def __init__(self, settings: Settings, deposit_service: "DepositService"):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings holding the webhook secret
            deposit_service: Service exposing the reconciliation primitive
        """
        self.settings = settings
        self.deposit_service = deposit_service

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the signature header against the raw body.

        Args:
            payload: Raw request body as bytes
            signature: Value of the X-FEDAPAY-SIGNATURE header

        Raises:
            SignatureInvalid: Secret unset, header missing, or mismatch
        """
        secret = self.settings.fedapay_webhook_secret
        if not secret:
            logger.error("webhook_secret_not_configured")
            raise SignatureInvalid("Webhook secret not configured")

        if not signature:
            logger.warning("webhook_signature_missing")
            raise SignatureInvalid("Missing signature header")

        expected = compute_signature(payload, secret).encode("ascii")
        received = signature.strip().lower().encode("utf-8", "surrogateescape")
        if not hmac.compare_digest(expected, received):
            logger.warning("webhook_signature_verification_failed")
            raise SignatureInvalid("Signature mismatch")

    @staticmethod
    def extract_transaction_id(event: Dict[str, Any]) -> Optional[str]:
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        entity = event.get("entity") if isinstance(event.get("entity"), dict) else {}
        for candidate in (data.get("transaction_id"), data.get("id"), entity.get("id")):
            if candidate not in (None, ""):
                return str(candidate)
        return None

    @staticmethod
    def build_message(status: str, event: Dict[str, Any]) -> Optional[str]:
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        if status == "declined" and data.get("reason"):
            return f"Payment declined: {data['reason']}"
        if status == "failed" and data.get("error_message"):
            return f"Payment failed: {data['error_message']}"
        if status == "canceled" and data.get("reason"):
            return f"Payment canceled: {data['reason']}"
        return None

    async def handle(
        self, payload: bytes, signature: Optional[str], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Verify and process one delivery.

        Anything past signature verification is acknowledged, so FedaPay
        does not retry events this service cannot act on.

        Args:
            payload: Raw request body
            signature: Signature header value
            db: Database session

        Returns:
            Dict[str, Any]: Acknowledgement body

        Raises:
            SignatureInvalid: If the delivery is not authentic
        """
        start = time.time()
        try:
            self.verify_signature(payload, signature)
        except SignatureInvalid:
            metrics.record_webhook_event("unknown", "rejected", time.time() - start)
            raise

        try:
            event = json.loads(payload)
            if not isinstance(event, dict):
                raise ValueError("event body is not an object")
        except ValueError as e:
            logger.warning("webhook_malformed_payload", error=str(e))
            metrics.record_webhook_event("unknown", "malformed", time.time() - start)
            return ACK

        event_type = str(event.get("event") or event.get("name") or "unknown")
        status = EVENT_STATUSES.get(event_type)
        if status is None:
            logger.info("webhook_event_ignored", event_type=event_type)
            metrics.record_webhook_event(event_type, "ignored", time.time() - start)
            return ACK

        external_id = self.extract_transaction_id(event)
        if external_id is None:
            logger.warning("webhook_missing_transaction_id", event_type=event_type)
            metrics.record_webhook_event(event_type, "malformed", time.time() - start)
            return ACK

        try:
            transaction = await self.deposit_service.reconcile(
                db,
                external_id,
                status,
                message=self.build_message(status, event),
                source="webhook",
            )
        except Exception as e:
            logger.error(
                "webhook_processing_error",
                event_type=event_type,
                external_id=external_id,
                error=str(e),
                exc_info=True,
            )
            metrics.record_webhook_event(event_type, "error", time.time() - start)
            return ACK

        if transaction is None:
            # Logged by reconcile; counted here per event type
            metrics.record_webhook_event(event_type, "unmatched", time.time() - start)
            return ACK

        logger.info(
            "webhook_event_processed",
            event_type=event_type,
            external_id=external_id,
            transaction_id=transaction.id,
            status=transaction.status,
        )
        metrics.record_webhook_event(event_type, "processed", time.time() - start)
        return ACK
