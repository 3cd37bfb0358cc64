"""Reasoning provider implementations."""

from research_orchestrator.orchestrator.backend.base import (
    ProviderConnectionError,
    ProviderError,
    ProviderRequest,
    ProviderResult,
    ProviderTimeoutError,
    ProviderUsage,
    ReasoningProvider,
)
from research_orchestrator.orchestrator.backend.echo_provider import EchoProvider
from research_orchestrator.orchestrator.backend.http_provider import HttpReasoningProvider

__all__ = [
    "EchoProvider",
    "HttpReasoningProvider",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderRequest",
    "ProviderResult",
    "ProviderTimeoutError",
    "ProviderUsage",
    "ReasoningProvider",
]
