"""Background workers."""
from .pending_sweeper import start_pending_sweeper

__all__ = ["start_pending_sweeper"]
