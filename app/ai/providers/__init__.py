"""Provider implementations."""

from app.ai.providers.base import ProgressCallback, Provider, ProviderOptions, ProviderPayload, ProviderResult, ProviderVariant
from app.ai.providers.mock import MockOptions, MockProvider
from app.ai.providers.workflow import WorkflowOptions, WorkflowProvider

__all__ = ["ProgressCallback", "Provider", "ProviderOptions", "ProviderPayload", "ProviderResult", "ProviderVariant", "MockOptions", "MockProvider", "WorkflowOptions", "WorkflowProvider"]
