"""
Integration tests for the HTTP API.
"""
from typing import Any, Dict
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient

from deposit_gateway.core.exceptions import ProcessorError, ProcessorUnavailable
from deposit_gateway.database.models import TransactionStatus
from deposit_gateway.integrations.fedapay_client import ProcessorTransaction
from deposit_gateway.monitoring.health import HealthCheck


def redirect_parts(response: Any) -> tuple:
    location = urlparse(response.headers["location"])
    return location.path, {k: v[0] for k, v in parse_qs(location.query).items()}


class TestCreateDeposit:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_manual_deposit(
        self, client: AsyncClient, user, sample_deposit_data: Dict[str, Any]
    ) -> None:
        response = await client.post("/deposits/create", json=sample_deposit_data)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "pending"
        assert data["amount"] == 5000
        assert data["currency"] == "XOF"
        assert data["externalId"] == "1001"
        assert data["paymentUrl"].startswith("https://")
        assert "newBalance" not in data

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_manual_alias(
        self, client: AsyncClient, user, sample_deposit_data: Dict[str, Any], mock_processor: AsyncMock
    ) -> None:
        response = await client.post("/deposits/create/manual", json=sample_deposit_data)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["paymentUrl"].startswith("https://")
        mock_processor.send_now.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_automatic_deposit_credits_balance(
        self,
        client: AsyncClient,
        user,
        mock_processor: AsyncMock,
        sample_deposit_data: Dict[str, Any],
        fetch_balance,
    ) -> None:
        mock_processor.fetch_remote_status.return_value = ProcessorTransaction(id="1001", status="approved")

        response = await client.post("/deposits/create/automatic", json=sample_deposit_data)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["newBalance"] == 5000
        assert await fetch_balance("u1") == 5000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validation_errors_listed(self, client: AsyncClient, user, count_transactions) -> None:
        response = await client.post("/deposits/create", json={"amount": 50, "customer": {}})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Invalid deposit data"
        assert body["errors"] == [
            "Minimum amount is 100 XOF",
            "Customer phone number is required",
            "User ID is required",
        ]
        assert await count_transactions() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_amount_is_bad_request(self, client: AsyncClient, user) -> None:
        response = await client.post(
            "/deposits/create",
            json={"amount": "lots", "customer": {"phone_number": "+22997000000"}, "userId": "u1"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Invalid request data"
        assert body["errors"][0].startswith("amount")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_user_is_not_found(
        self, client: AsyncClient, user, sample_deposit_data: Dict[str, Any]
    ) -> None:
        response = await client.post("/deposits/create", json={**sample_deposit_data, "userId": "ghost"})

        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processor_unavailable_is_503(
        self,
        client: AsyncClient,
        user,
        mock_processor: AsyncMock,
        sample_deposit_data: Dict[str, Any],
        count_transactions,
    ) -> None:
        mock_processor.create_remote_transaction.side_effect = ProcessorUnavailable("timeout")

        response = await client.post("/deposits/create", json=sample_deposit_data)

        assert response.status_code == 503
        body = response.json()
        assert body["success"] is False
        assert body["retryable"] is True
        assert body["error"] == "timeout"
        assert await count_transactions() == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processor_rejection_is_400(
        self,
        client: AsyncClient,
        user,
        mock_processor: AsyncMock,
        sample_deposit_data: Dict[str, Any],
    ) -> None:
        mock_processor.create_remote_transaction.side_effect = ProcessorError(
            "Payment processor rejected the request", detail="Invalid phone number", status_code=400
        )

        response = await client.post("/deposits/create", json=sample_deposit_data)

        assert response.status_code == 400
        assert response.json()["message"] == "Payment processor rejected the request"


class TestQueryDeposits:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_deposit(self, client: AsyncClient, user, pending_deposit) -> None:
        deposit = await pending_deposit("1001")

        response = await client.get(f"/deposits/{deposit.id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == deposit.id
        assert data["externalId"] == "1001"
        assert data["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_unknown_deposit(self, client: AsyncClient) -> None:
        response = await client.get("/deposits/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "message": "Transaction not found",
            "error": "transaction_id=does-not-exist",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_with_status_filter(
        self, client: AsyncClient, user, pending_deposit, deposit_service, session_factory
    ) -> None:
        completed = await pending_deposit("1001")
        await pending_deposit("1002")
        async with session_factory() as db:
            await deposit_service.transition(db, completed.id, "completed")

        all_response = await client.get("/deposits/user/u1")
        filtered = await client.get("/deposits/user/u1", params={"status": "completed"})

        assert all_response.json()["count"] == 2
        assert filtered.json()["count"] == 1
        assert filtered.json()["data"][0]["id"] == completed.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_with_invalid_status(self, client: AsyncClient) -> None:
        response = await client.get("/deposits/user/u1", params={"status": "refunded"})

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_user_stats(self, client: AsyncClient, user, pending_deposit) -> None:
        await pending_deposit("1001", amount=1000)
        await pending_deposit("1002", amount=3000)

        response = await client.get("/deposits/user/u1/stats")

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["totalTransactions"] == 2
        assert stats["pending"] == 2
        assert stats["totalDeposited"] == 0
        assert stats["averageAmount"] == 2000


class TestStatusEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_status_update(
        self, client: AsyncClient, user, pending_deposit, fetch_balance
    ) -> None:
        deposit = await pending_deposit("1001", amount=4000)

        response = await client.put(
            f"/deposits/{deposit.id}/status", json={"status": "completed", "message": "Confirmed"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["applied"] is True
        assert body["data"]["status"] == "completed"
        assert await fetch_balance("u1") == 4000

        again = await client.put(f"/deposits/{deposit.id}/status", json={"status": "failed"})
        assert again.json()["applied"] is False
        assert again.json()["data"]["status"] == "completed"
        assert await fetch_balance("u1") == 4000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_status_update_invalid_status(
        self, client: AsyncClient, user, pending_deposit
    ) -> None:
        deposit = await pending_deposit("1001")

        response = await client.put(f"/deposits/{deposit.id}/status", json={"status": "refunded"})

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refresh(
        self, client: AsyncClient, user, pending_deposit, mock_processor: AsyncMock
    ) -> None:
        deposit = await pending_deposit("1001")
        mock_processor.fetch_remote_status.return_value = ProcessorTransaction(id="1001", status="canceled")

        response = await client.post(f"/deposits/{deposit.id}/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "canceled"


class TestCallback:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approved_redirects_to_success(
        self, client: AsyncClient, user, pending_deposit, mock_processor: AsyncMock, fetch_balance
    ) -> None:
        deposit = await pending_deposit("1001", amount=5000)
        mock_processor.fetch_remote_status.return_value = ProcessorTransaction(id="1001", status="approved")

        response = await client.get("/payments/callback", params={"id": "1001", "status": "approved"})

        assert response.status_code == 302
        path, query = redirect_parts(response)
        assert response.headers["location"].startswith("http://client.test/")
        assert path == "/payment-success"
        assert query == {"transaction_id": deposit.id, "amount": "5000"}
        assert await fetch_balance("u1") == 5000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_query_status_is_not_trusted(
        self, client: AsyncClient, user, pending_deposit, mock_processor: AsyncMock, fetch_balance
    ) -> None:
        deposit = await pending_deposit("1001", amount=5000)
        mock_processor.fetch_remote_status.return_value = ProcessorTransaction(id="1001", status="declined")

        response = await client.get("/payments/callback", params={"id": "1001", "status": "approved"})

        path, query = redirect_parts(response)
        assert path == "/payment-failed"
        assert query == {"transaction_id": deposit.id, "reason": "declined"}
        assert await fetch_balance("u1") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_redirect(
        self, client: AsyncClient, user, pending_deposit
    ) -> None:
        deposit = await pending_deposit("1001")

        response = await client.get("/payments/callback", params={"id": "1001"})

        path, query = redirect_parts(response)
        assert path == "/payment-pending"
        assert query == {"transaction_id": deposit.id}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_id(self, client: AsyncClient) -> None:
        response = await client.get("/payments/callback")

        assert response.status_code == 302
        path, query = redirect_parts(response)
        assert path == "/payment-failed"
        assert query == {"error": "missing_id"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client: AsyncClient, user) -> None:
        response = await client.get("/payments/callback", params={"id": "424242"})

        path, query = redirect_parts(response)
        assert path == "/payment-failed"
        assert query == {"error": "transaction_not_found"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processor_unavailable_uses_local_state(
        self, client: AsyncClient, user, pending_deposit, mock_processor: AsyncMock
    ) -> None:
        deposit = await pending_deposit("1001")
        mock_processor.fetch_remote_status.side_effect = ProcessorUnavailable("timeout")

        response = await client.get("/payments/callback", params={"id": "1001", "status": "approved"})

        path, query = redirect_parts(response)
        assert path == "/payment-pending"
        assert query == {"transaction_id": deposit.id}


class TestMonitoring:
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness_fails_without_database(self, client: AsyncClient, mocker) -> None:
        mocker.patch.object(
            HealthCheck,
            "readiness",
            AsyncMock(return_value={"status": "not_ready", "checks": {}}),
        )

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "deposit_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
