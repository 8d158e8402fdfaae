"""Exceptions raised by the sync engine."""


class SyncError(Exception):
    """Base class for sync engine errors."""


class AuthenticationFailure(SyncError):
    """Webhook signature did not match the shared secret."""


class NotOnboarded(SyncError):
    """Shop domain has no store record."""

    def __init__(self, shop_domain: str):
        super().__init__(f"store not onboarded: {shop_domain}")
        self.shop_domain = shop_domain


class UpstreamError(SyncError):
    """Upstream API answered with an error status or could not be reached."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


class IdentityConflict(SyncError):
    """Customer record could not be created, typically a unique-key race."""


class MalformedPayload(SyncError):
    """Payload lacks a required field or cannot be decoded."""
