"""Core deposit logic: error taxonomy, customer resolution, orchestration."""
from .customer import CustomerSnapshot, resolve_customer
from .exceptions import (
    DataIntegrityError,
    DepositError,
    ProcessorError,
    ProcessorUnavailable,
    SignatureInvalid,
    TransactionNotFound,
    UserNotFound,
    ValidationError,
)

__all__ = [
    "CustomerSnapshot",
    "resolve_customer",
    "DepositError",
    "ValidationError",
    "UserNotFound",
    "TransactionNotFound",
    "ProcessorError",
    "ProcessorUnavailable",
    "SignatureInvalid",
    "DataIntegrityError",
]
