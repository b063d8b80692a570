"""External execution capabilities driven by worker bridges."""

from teambridge.providers.base import (
    BaseProvider,
    ExecutionRequest,
    ExecutionResult,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from teambridge.providers.factory import build_provider, ensure_provider_probe, probe_provider

__all__ = [
    "BaseProvider",
    "ExecutionRequest",
    "ExecutionResult",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "build_provider",
    "ensure_provider_probe",
    "probe_provider",
]
