"""
SDK for AI Credit Gate.

Provides the generation provider clients.
"""

from .errors import ProviderError
from .provider_client import (
    CannedProviderClient,
    GenerateOptions,
    LiveProviderClient,
    ProviderClient,
    build_provider_client,
)

__all__ = [
    "CannedProviderClient",
    "GenerateOptions",
    "LiveProviderClient",
    "ProviderClient",
    "ProviderError",
    "build_provider_client",
]
