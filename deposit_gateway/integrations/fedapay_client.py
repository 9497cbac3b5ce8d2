"""
FedaPay REST client with retry logic and typed error classification.

Implements:
- Explicit configuration per client instance (no module-level API key)
- Bounded timeouts on every call
- Circuit breaker pattern
- Exponential backoff for idempotent reads only
- Error classification at the point of failure:
  ProcessorError for rejections, ProcessorUnavailable for outages
"""
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deposit_gateway.config import Settings
from deposit_gateway.core.customer import CustomerSnapshot
from deposit_gateway.core.exceptions import ProcessorError, ProcessorUnavailable
from deposit_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProcessorTransaction:
    """A transaction as FedaPay reports it."""

    id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class PaymentToken:
    token: str
    url: str


class CircuitBreaker:
    """
    Circuit breaker for FedaPay API calls.

    Only outages (ProcessorUnavailable) count as failures; a rejected request
    proves the processor is up.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            ProcessorUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ProcessorUnavailable("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except ProcessorUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class FedaPayClient:
    """
    Async wrapper for the FedaPay v1 REST API.

    Features:
    - Transaction creation and hosted-page token generation
    - Mobile-money push for automatic deposits
    - Status retrieval with retry
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize FedaPay client.

        Args:
            settings: Application settings holding credentials and environment
            transport: Optional httpx transport (tests inject a MockTransport)
            circuit_breaker: Optional shared circuit breaker
        """
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            base_url=settings.processor_base_url,
            timeout=httpx.Timeout(settings.fedapay_timeout_seconds),
            headers={
                "Authorization": f"Bearer {settings.fedapay_secret_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

        logger.info(
            "fedapay_client_initialized",
            environment=settings.fedapay_environment,
            base_url=settings.processor_base_url,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return str(body)[:200]

    async def _send(
        self, operation: str, method: str, path: str, payload: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise ProcessorUnavailable(f"{operation} timed out") from e
        except httpx.TransportError as e:
            raise ProcessorUnavailable(f"{operation} transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProcessorUnavailable(
                f"{operation} returned HTTP {response.status_code}"
            )
        if response.status_code in (401, 403):
            raise ProcessorError(
                "Payment processor authentication failed",
                detail=self._error_message(response),
                status_code=502,
                processor_status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProcessorError(
                "Payment processor rejected the request",
                detail=self._error_message(response),
                status_code=400,
                processor_status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProcessorError(
                "Invalid response from payment processor",
                detail=response.text[:200],
            ) from e
        if not isinstance(body, dict):
            raise ProcessorError(
                "Invalid response from payment processor", detail=str(body)[:200]
            )
        return body

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send one API call through the circuit breaker and record metrics.

        Raises:
            ProcessorError: Request rejected or response unusable
            ProcessorUnavailable: Timeout, network failure, 5xx/429, open circuit
        """
        start = time.time()
        try:
            body = await self.circuit_breaker.call(self._send, operation, method, path, payload)
        except ProcessorUnavailable as e:
            metrics.record_processor_error("unavailable")
            metrics.record_processor_call(operation, "error", time.time() - start)
            logger.warning("fedapay_unavailable", operation=operation, error=e.detail)
            raise
        except ProcessorError as e:
            metrics.record_processor_error(
                "rejected" if e.status_code == 400 else "invalid_response"
            )
            metrics.record_processor_call(operation, "error", time.time() - start)
            logger.error(
                "fedapay_api_error",
                operation=operation,
                processor_status_code=e.processor_status_code,
                error=e.detail,
            )
            raise

        metrics.record_processor_call(operation, "success", time.time() - start)
        return body

    @staticmethod
    def _unwrap(body: Dict[str, Any], key: str) -> Dict[str, Any]:
        """FedaPay wraps resources as ``{"v1/<key>": {...}}``."""
        for candidate in (f"v1/{key}", key):
            value = body.get(candidate)
            if isinstance(value, dict):
                return value
        return body

    def _to_transaction(self, body: Dict[str, Any]) -> ProcessorTransaction:
        data = self._unwrap(body, "transaction")
        if data.get("id") is None:
            raise ProcessorError(
                "Invalid response from payment processor",
                detail="transaction id missing",
            )
        status = str(data.get("status") or "pending").lower()
        return ProcessorTransaction(id=str(data["id"]), status=status, raw=data)

    async def create_remote_transaction(
        self,
        amount: int,
        currency: str,
        description: str,
        customer: CustomerSnapshot,
        callback_url: str,
    ) -> ProcessorTransaction:
        """
        Create a FedaPay transaction.

        Not retried: a repeated POST would create a second remote transaction.

        Args:
            amount: Amount in the smallest currency unit
            currency: ISO currency code
            description: Description shown on the payment page
            customer: Resolved customer snapshot
            callback_url: Where the hosted page redirects after payment

        Returns:
            ProcessorTransaction: Created remote transaction
        """
        payload = {
            "description": description,
            "amount": amount,
            "currency": {"iso": currency},
            "callback_url": callback_url,
            "customer": {
                "firstname": customer.firstname,
                "lastname": customer.lastname,
                "email": customer.email,
                "phone_number": {
                    "number": customer.phone_number,
                    "country": customer.country.lower(),
                },
            },
        }
        logger.info("creating_fedapay_transaction", amount=amount, currency=currency)

        transaction = self._to_transaction(
            await self._request("create_transaction", "POST", "/transactions", payload)
        )
        logger.info(
            "fedapay_transaction_created",
            external_id=transaction.id,
            status=transaction.status,
        )
        return transaction

    async def generate_payment_token(
        self, processor_transaction: ProcessorTransaction
    ) -> PaymentToken:
        """
        Generate the hosted payment page token for a transaction.

        Raises:
            ProcessorError: If FedaPay returns no payment URL
        """
        body = await self._request(
            "generate_token", "POST", f"/transactions/{processor_transaction.id}/token"
        )
        data = self._unwrap(body, "token")
        if not data.get("url"):
            raise ProcessorError(
                "Payment processor did not return a payment URL",
                detail=f"external_id={processor_transaction.id}",
            )
        return PaymentToken(token=str(data.get("token") or ""), url=str(data["url"]))

    async def send_now(
        self,
        processor_transaction: ProcessorTransaction,
        token: PaymentToken,
        mode: str,
    ) -> Dict[str, Any]:
        """
        Push a mobile-money payment prompt to the customer's phone.

        Args:
            processor_transaction: Transaction to pay
            token: Token from generate_payment_token
            mode: FedaPay payment mode (e.g. ``mtn_open``, ``moov``)

        Returns:
            Dict[str, Any]: Raw FedaPay response
        """
        logger.info(
            "fedapay_send_now",
            external_id=processor_transaction.id,
            mode=mode,
        )
        return await self._request("send_now", "POST", f"/{mode}", {"token": token.token})

    async def fetch_remote_status(self, processor_transaction_id: str) -> ProcessorTransaction:
        """
        Retrieve a FedaPay transaction's current status.

        Retried with exponential backoff on outages only.

        Args:
            processor_transaction_id: FedaPay transaction ID

        Returns:
            ProcessorTransaction: Current remote state
        """
        body: Dict[str, Any] = {}
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProcessorUnavailable),
            stop=stop_after_attempt(self.settings.fedapay_max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        ):
            with attempt:
                body = await self._request(
                    "retrieve_transaction", "GET", f"/transactions/{processor_transaction_id}"
                )
        return self._to_transaction(body)
