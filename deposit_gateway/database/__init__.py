"""Database package for the deposit gateway."""
from .connection import close_db, get_db, init_db
from .models import Base, ProcessingType, Transaction, TransactionStatus, User
from .repositories import BalanceLedger, TransactionStore, UserStore

__all__ = [
    "Base",
    "Transaction",
    "TransactionStatus",
    "ProcessingType",
    "User",
    "TransactionStore",
    "UserStore",
    "BalanceLedger",
    "get_db",
    "init_db",
    "close_db",
]
