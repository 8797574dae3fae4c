from .manager import OperationalCounters, SessionManager
from .transactions import TransactionContext, TransactionRegistry

__all__ = [
    "OperationalCounters",
    "SessionManager",
    "TransactionContext",
    "TransactionRegistry",
]
