"""State management module for tracking applied resources."""

from .manager import StateLockError, StateStore
from .models import PendingOperation, StateDocument, StateRecord

__all__ = [
    "PendingOperation",
    "StateDocument",
    "StateLockError",
    "StateRecord",
    "StateStore",
]
