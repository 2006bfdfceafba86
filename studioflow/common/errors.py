"""Error taxonomy shared by the booking, gallery and reconciliation flows."""


class StudioError(Exception):
    """Base class for expected, caller-visible failures."""


class ValidationError(StudioError):
    """Bad input from a caller; surfaced immediately and never retried."""


class SelectionLockedError(ValidationError):
    """The gallery selection was already finalized."""


class NotFoundError(StudioError):
    """A tenant, gallery, photo or payment does not exist."""


class GalleryExpiredError(StudioError):
    """The gallery link is past its `link_expires_at`."""


class NotConfiguredError(StudioError):
    """The tenant has no active gateway or WhatsApp instance.

    Call sites treat this as the manual alternate path, not as a failure.
    """

    def __init__(self, tenant_id: str, integration: str) -> None:
        super().__init__(f"{integration} not configured for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.integration = integration


class GatewayError(StudioError):
    """The payment provider rejected a call or could not be reached.

    `status_code` is None when the request never got an HTTP response
    (timeout or connection error).
    """

    def __init__(self, status_code: int | None, provider_message: str) -> None:
        super().__init__(f"gateway error status={status_code} message={provider_message}")
        self.status_code = status_code
        self.provider_message = provider_message

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class InvalidWebhookError(StudioError):
    """A webhook body from which no charge id could be extracted."""


class ReconciliationError(StudioError):
    """A downstream step failed after the payment status was written."""


class TransientError(StudioError):
    """A retryable infrastructure failure; the provider should redeliver."""


class InvalidTransitionError(ValueError):
    """A status change not allowed by a transition table."""
