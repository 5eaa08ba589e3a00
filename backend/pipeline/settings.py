"""
Pipeline Settings
=================
Environment-driven configuration for settlement, outbound webhooks
and the delivery queue.
"""

import os


def _float_list(raw: str) -> tuple[float, ...]:
    return tuple(float(part) for part in raw.split(",") if part.strip())


class PipelineSettings:
    """Pipeline configuration from environment"""

    ENV = os.getenv("ENV", "development")

    # Delivery queue
    QUEUE_BACKEND = os.getenv("WEBHOOK_QUEUE_BACKEND", "memory")  # memory | redis
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    QUEUE_NAME = os.getenv("WEBHOOK_QUEUE_NAME", "webhook-queue")
    MAX_CONCURRENT = int(os.getenv("WEBHOOK_MAX_CONCURRENT", "5"))
    MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3"))
    RETRY_DELAYS = _float_list(os.getenv("WEBHOOK_RETRY_DELAYS", "5,15,30"))  # seconds
    QUEUE_POLL_INTERVAL = float(os.getenv("WEBHOOK_QUEUE_POLL_INTERVAL", "0.5"))
    FINISHED_JOB_RETENTION = float(os.getenv("WEBHOOK_FINISHED_JOB_RETENTION", "3600"))  # seconds
    DEAD_LETTER_LIMIT = int(os.getenv("WEBHOOK_DEAD_LETTER_LIMIT", "1000"))

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_HTTP_TIMEOUT", "10"))
    USER_AGENT = os.getenv("WEBHOOK_USER_AGENT", "Checkout-Webhook/1.0")
    RESPONSE_BODY_LIMIT = int(os.getenv("WEBHOOK_RESPONSE_LIMIT", "2000"))

    # Payment provider (Mercado Pago)
    PROVIDER_API_URL = os.getenv("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
    PROVIDER_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN", "")
    PROVIDER_WEBHOOK_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET", "")

    # Purchase tracking collaborator
    TRACKING_ENDPOINT = os.getenv(
        "TRACKING_ENDPOINT",
        os.getenv("APP_URL", "http://localhost:3000") + "/api/tracking/event",
    )


settings = PipelineSettings()
