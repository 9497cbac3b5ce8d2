"""
Pydantic schemas for API request/response models.

Wire names are camelCase (``userId``, ``transactionId``) except inside the
customer object, which keeps FedaPay's field names.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CustomerInput(BaseModel):
    """Customer fields supplied by the caller. All optional except phone."""

    firstname: Optional[str] = Field(default=None, max_length=100)
    lastname: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class CreateDepositRequest(BaseModel):
    """
    Request schema for creating a deposit.

    Business rules (minimum amount, required phone and user) are checked by
    the deposit service so that every violation is reported at once.
    """

    amount: Optional[int] = Field(default=None, description="Amount in the smallest currency unit")
    customer: CustomerInput = Field(default_factory=CustomerInput)
    description: Optional[str] = Field(default=None, max_length=255)
    user_id: Optional[str] = Field(default=None, alias="userId", description="User identifier")

    model_config = ConfigDict(
        populate_by_name=True,
        coerce_numbers_to_str=True,
        json_schema_extra={
            "examples": [
                {
                    "amount": 5000,
                    "customer": {
                        "firstname": "Koffi",
                        "lastname": "Agbo",
                        "email": "koffi@example.com",
                        "phone_number": "+22997000000",
                        "country": "BJ",
                    },
                    "description": "Wallet top-up",
                    "userId": "u1",
                }
            ]
        },
    )


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DepositResponse(CamelModel):
    """Response schema for deposit creation."""

    success: bool = True
    message: str
    transaction_id: str
    external_id: Optional[str] = None
    amount: int
    currency: str
    status: str
    payment_url: Optional[str] = None
    new_balance: Optional[int] = None


class TransactionEnvelope(BaseModel):
    success: bool = True
    data: Dict[str, Any]


class TransactionListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[Dict[str, Any]]


class UserStatsResponse(BaseModel):
    success: bool = True
    data: Dict[str, int]


class StatusUpdateRequest(BaseModel):
    """Administrative status override."""

    status: str = Field(..., description="Target status (completed, failed, declined, canceled)")
    message: Optional[str] = Field(default=None, max_length=500)


class StatusUpdateResponse(BaseModel):
    success: bool = True
    applied: bool = Field(..., description="False when the deposit was already final")
    data: Dict[str, Any]


class WebhookResponse(BaseModel):
    received: bool = True


class ErrorResponse(BaseModel):
    """Error body returned for every handled failure."""

    success: bool = False
    message: str
    errors: Optional[List[str]] = None
    retryable: Optional[bool] = Field(default=None, description="Set when the same request may be retried")
    error: Optional[str] = Field(default=None, description="Raw detail, non-production only")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    message: Optional[str] = None
    checks: Optional[Dict[str, Any]] = None
