"""
blocklog - append-only, hash-chained audit ledger.
"""

__version__ = "0.1.0"

from .core import AuditLedger, AppendError, ChainForkError
from .schemas import Action, AuditEvent
from .shared_ledger import create_ledger, get_shared_ledger

__all__ = [
    "__version__",
    "AuditLedger",
    "AppendError",
    "ChainForkError",
    "Action",
    "AuditEvent",
    "create_ledger",
    "get_shared_ledger",
]
