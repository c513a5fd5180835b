"""Step execution providers and their registry."""

from .base import BaseProvider, FunctionProvider, Provider
from .builtin import EchoProvider, SleepProvider, builtin_providers
from .registry import ProviderConfig, ProviderRateLimitConfig, ProviderRegistry

__all__ = [
    "BaseProvider",
    "EchoProvider",
    "FunctionProvider",
    "Provider",
    "ProviderConfig",
    "ProviderRateLimitConfig",
    "ProviderRegistry",
    "SleepProvider",
    "builtin_providers",
]
