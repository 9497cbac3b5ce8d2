"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateDepositRequest,
    DepositResponse,
    ErrorResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)

__all__ = [
    "app",
    "CreateDepositRequest",
    "DepositResponse",
    "ErrorResponse",
    "StatusUpdateRequest",
    "StatusUpdateResponse",
]
