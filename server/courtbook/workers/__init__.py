"""Background workers for the court booking engine."""

from .expiration_worker import ExpirationSweepWorker
from .reconciliation_worker import ReconciliationWorker

__all__ = ["ExpirationSweepWorker", "ReconciliationWorker"]
