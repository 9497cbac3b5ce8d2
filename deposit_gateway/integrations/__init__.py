"""External integrations: FedaPay API client and webhook handling."""
from .fedapay_client import CircuitBreaker, FedaPayClient, PaymentToken, ProcessorTransaction
from .webhook_handler import FedaPayWebhookHandler

__all__ = [
    "CircuitBreaker",
    "FedaPayClient",
    "PaymentToken",
    "ProcessorTransaction",
    "FedaPayWebhookHandler",
]
