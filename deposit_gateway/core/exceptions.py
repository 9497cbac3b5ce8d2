"""
Deposit gateway error taxonomy.

Each exception is raised at the point of failure with its HTTP status and a
message that is safe to show to API callers. Raw processor or driver detail
travels in ``detail`` and is only rendered outside production.
"""
from typing import Any, Dict, List, Optional


class DepositError(Exception):
    """Base exception for all deposit gateway errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self, include_detail: bool = False) -> Dict[str, Any]:
        """Convert to the API error body."""
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.retryable:
            body["retryable"] = True
        if include_detail and self.detail:
            body["error"] = self.detail
        return body


class ValidationError(DepositError):
    """Deposit request failed validation. Lists every violation."""

    status_code = 400

    def __init__(self, errors: List[str], message: str = "Invalid deposit data"):
        super().__init__(message)
        self.errors = list(errors)

    def to_dict(self, include_detail: bool = False) -> Dict[str, Any]:
        body = super().to_dict(include_detail)
        body["errors"] = self.errors
        return body


class UserNotFound(DepositError):
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("User not found", detail=f"user_id={user_id}")
        self.user_id = user_id


class TransactionNotFound(DepositError):
    status_code = 404

    def __init__(self, transaction_id: str):
        super().__init__("Transaction not found", detail=f"transaction_id={transaction_id}")
        self.transaction_id = transaction_id


class ProcessorError(DepositError):
    """
    The processor rejected a request or answered with something unusable.

    Rejections of caller data (invalid phone, email...) map to 400, malformed
    processor responses map to 502.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        processor_status_code: Optional[int] = None,
    ):
        super().__init__(message, detail=detail, status_code=status_code)
        self.processor_status_code = processor_status_code


class ProcessorUnavailable(DepositError):
    """Network failure, timeout, processor 5xx or open circuit. Safe to retry."""

    status_code = 503
    retryable = True

    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            "Payment processor temporarily unavailable, please retry", detail=detail
        )


class SignatureInvalid(DepositError):
    status_code = 401

    def __init__(self, detail: Optional[str] = None):
        super().__init__("Invalid webhook signature", detail=detail)


class DataIntegrityError(DepositError):
    """Stored data violates an identity invariant (e.g. external ID clash)."""

    status_code = 500
