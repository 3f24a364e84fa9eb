"""Schema package exports."""

from .jobs import Job, JobVariant, OutboxEvent, WebhookNonce

__all__ = ["Job", "JobVariant", "OutboxEvent", "WebhookNonce"]
