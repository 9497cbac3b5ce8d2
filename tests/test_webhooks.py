"""
Tests for FedaPay webhook verification and processing.
"""
import json
from typing import Any, Dict

import pytest
from httpx import AsyncClient

from deposit_gateway.core.exceptions import SignatureInvalid
from deposit_gateway.database.models import TransactionStatus
from deposit_gateway.integrations.webhook_handler import (
    SIGNATURE_HEADER,
    FedaPayWebhookHandler,
    compute_signature,
)

WEBHOOK_SECRET = "whsec_test_secret"


def signed(event: Dict[str, Any], secret: str = WEBHOOK_SECRET) -> Dict[str, Any]:
    body = json.dumps(event).encode()
    return {
        "content": body,
        "headers": {SIGNATURE_HEADER: compute_signature(body, secret), "Content-Type": "application/json"},
    }


@pytest.mark.unit
class TestWebhookHandler:
    def test_extract_transaction_id_order(self) -> None:
        extract = FedaPayWebhookHandler.extract_transaction_id

        assert extract({"data": {"transaction_id": 7, "id": 8}, "entity": {"id": 9}}) == "7"
        assert extract({"data": {"id": 8}, "entity": {"id": 9}}) == "8"
        assert extract({"entity": {"id": 9}}) == "9"
        assert extract({"data": "oops"}) is None

    def test_build_message(self) -> None:
        build = FedaPayWebhookHandler.build_message

        assert build("declined", {"data": {"reason": "insufficient funds"}}) == (
            "Payment declined: insufficient funds"
        )
        assert build("failed", {"data": {"error_message": "network"}}) == "Payment failed: network"
        assert build("approved", {"data": {"reason": "x"}}) is None

    def test_missing_secret_fails_closed(self, test_settings, deposit_service) -> None:
        settings = test_settings.model_copy(update={"fedapay_webhook_secret": None})
        handler = FedaPayWebhookHandler(settings, deposit_service)
        body = b'{"name": "transaction.approved"}'

        with pytest.raises(SignatureInvalid):
            handler.verify_signature(body, compute_signature(body, WEBHOOK_SECRET))

    def test_signature_is_case_insensitive_hex(self, test_settings, deposit_service) -> None:
        handler = FedaPayWebhookHandler(test_settings, deposit_service)
        body = b"{}"

        handler.verify_signature(body, compute_signature(body, WEBHOOK_SECRET).upper())

    def test_non_ascii_signature_is_rejected(self, test_settings, deposit_service) -> None:
        handler = FedaPayWebhookHandler(test_settings, deposit_service)

        with pytest.raises(SignatureInvalid):
            handler.verify_signature(b"{}", "caf\xe9")


class TestWebhookEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_event_completes_deposit(
        self, client: AsyncClient, user, pending_deposit, fetch_transaction, fetch_balance
    ) -> None:
        deposit = await pending_deposit("1001", amount=5000)

        response = await client.post(
            "/payments/webhook",
            **signed({"name": "transaction.approved", "entity": {"id": 1001, "status": "approved"}}),
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await fetch_transaction(deposit.id)).status == TransactionStatus.COMPLETED.value
        assert await fetch_balance("u1") == 5000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self, client: AsyncClient, user, pending_deposit, fetch_balance
    ) -> None:
        await pending_deposit("1001", amount=5000)
        request = signed({"name": "transaction.approved", "entity": {"id": 1001}})

        for _ in range(3):
            response = await client.post("/payments/webhook", **request)
            assert response.status_code == 200

        assert await fetch_balance("u1") == 5000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_event_records_reason(
        self, client: AsyncClient, user, pending_deposit, fetch_transaction
    ) -> None:
        deposit = await pending_deposit("1001")

        await client.post(
            "/payments/webhook",
            **signed({"event": "transaction.declined", "data": {"transaction_id": "1001", "reason": "insufficient funds"}}),
        )

        stored = await fetch_transaction(deposit.id)
        assert stored.status == TransactionStatus.DECLINED.value
        assert stored.processing_message == "Payment declined: insufficient funds"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_mutation(
        self, client: AsyncClient, user, pending_deposit, fetch_transaction, fetch_balance
    ) -> None:
        deposit = await pending_deposit("1001", amount=5000)

        response = await client.post(
            "/payments/webhook",
            **signed({"name": "transaction.approved", "entity": {"id": 1001}}, secret="whsec_wrong"),
        )

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert (await fetch_transaction(deposit.id)).status == TransactionStatus.PENDING.value
        assert await fetch_balance("u1") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_garbled_signature_header_rejected(
        self, client: AsyncClient, user, pending_deposit, fetch_transaction
    ) -> None:
        deposit = await pending_deposit("1001")
        request = signed({"name": "transaction.approved", "entity": {"id": 1001}})
        request["headers"][SIGNATURE_HEADER] = "caf\xe9".encode("latin-1")

        response = await client.post("/payments/webhook", **request)

        assert response.status_code == 401
        assert (await fetch_transaction(deposit.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient, user) -> None:
        response = await client.post("/payments/webhook", json={"name": "transaction.approved"})

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unmatched_event_acknowledged(
        self, client: AsyncClient, user, count_transactions, fetch_balance
    ) -> None:
        response = await client.post(
            "/payments/webhook",
            **signed({"name": "transaction.approved", "entity": {"id": 424242}}),
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert await count_transactions() == 0
        assert await fetch_balance("u1") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ignored_event_type_acknowledged(
        self, client: AsyncClient, user, pending_deposit, fetch_transaction
    ) -> None:
        deposit = await pending_deposit("1001")

        response = await client.post(
            "/payments/webhook",
            **signed({"name": "customer.created", "entity": {"id": 1001}}),
        )

        assert response.status_code == 200
        assert (await fetch_transaction(deposit.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_acknowledged(self, client: AsyncClient) -> None:
        body = b"not json"

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={SIGNATURE_HEADER: compute_signature(body, WEBHOOK_SECRET)},
        )

        assert response.status_code == 200
