"""
Pipeline error taxonomy.

Every error carries whether a retry can help (``retryable``) and the HTTP
status the API layer answers with.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for settlement and dispatch failures"""

    retryable: bool = False
    status_code: int = 500

    def __init__(self, message: str, *, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class WebhookAuthenticationError(PipelineError):
    """Inbound signature missing, malformed or wrong"""

    status_code = 401


class PayloadValidationError(PipelineError):
    """Inbound body is not a usable notification"""

    status_code = 400


class NotFoundError(PipelineError):
    status_code = 404


class PaymentNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class InvalidTransitionError(PipelineError):
    """Order status edge outside the allowed state machine"""

    status_code = 409

    def __init__(self, current: str, target: str, *, order_id: Optional[str] = None):
        super().__init__(
            f"Invalid order transition {current} -> {target}",
            context={"order_id": order_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class TransientError(PipelineError):
    retryable = True
    status_code = 503


class ProviderUnavailableError(TransientError):
    """Payment provider could not be queried for the authoritative status"""


class DeliveryFailedError(TransientError):
    """Subscriber answered non-2xx or could not be reached"""

    def __init__(self, message: str, *, status_code: Optional[int] = None, context: Optional[dict] = None):
        super().__init__(message, context=context)
        self.response_status = status_code


class EventSchemaError(PipelineError):
    """Built event resource failed validation. Indicates a programming error."""

    status_code = 500


class QueueClosedError(TransientError):
    """Delivery queue is draining and no longer accepts jobs"""
