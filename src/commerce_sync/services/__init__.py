"""Synchronization engine services."""

from commerce_sync.services.backfill import BackfillService
from commerce_sync.services.coordinator import SyncCoordinator
from commerce_sync.services.identity import IdentityResolver
from commerce_sync.services.pagination import Paginator
from commerce_sync.services.rate_limit import RateLimiter
from commerce_sync.services.upserter import RecordUpserter
from commerce_sync.services.webhooks import WebhookVerifier

__all__ = [
    "BackfillService",
    "IdentityResolver",
    "Paginator",
    "RateLimiter",
    "RecordUpserter",
    "SyncCoordinator",
    "WebhookVerifier",
]
