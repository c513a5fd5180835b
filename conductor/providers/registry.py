"""Registry of named providers with rate-limit and timeout policies.

The registry is filled at startup and read during execution. Lookups fail
fast with a typed error when a provider is unknown or disabled, so a bad
provider name surfaces at validation time rather than mid-run.

Example:
    >>> registry = ProviderRegistry()
    >>> registry.register(EchoProvider(), ProviderConfig(timeout=30))
    >>> outputs = await registry.execute_with_policy("echo", {}, {"message": "hi"})
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Callable, Dict, List, Literal, Optional

from ..exceptions import (
    ProviderDisabledError,
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    RateLimitExceededError,
)
from ..utils.retry import RateLimiter
from .base import Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderRateLimitConfig:
    """At most ``requests`` calls per ``window`` seconds.

    Attributes:
        strategy: ``reject`` raises immediately when the window is full,
            ``queue`` waits for a free slot
    """

    requests: int
    window: float
    strategy: Literal["reject", "queue"] = "reject"


@dataclass(frozen=True)
class ProviderConfig:
    """Registry-level policy for one provider."""

    enabled: bool = True
    timeout: Optional[float] = None
    rate_limit: Optional[ProviderRateLimitConfig] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ProviderRegistry:
    """Typed registry of providers keyed by name."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """Initialize an empty registry.

        Args:
            clock: Monotonic clock for rate limiting (defaults to ``time.monotonic``)
        """
        self._providers: Dict[str, Provider] = {}
        self._configs: Dict[str, ProviderConfig] = {}
        self._explicit_config: Dict[str, bool] = {}
        self._limiters: Dict[str, RateLimiter] = {}
        self._clock = clock
        self._lock = Lock()
        self._stats: Dict[str, Dict[str, int]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider: Provider, config: Optional[ProviderConfig] = None) -> None:
        """Register a provider.

        Raises:
            ProviderError: If a provider with the same name is already registered
        """
        if not provider.name:
            raise ProviderError("Provider name must not be empty", provider=repr(provider))

        with self._lock:
            if provider.name in self._providers:
                raise ProviderError(
                    f"Provider {provider.name} is already registered", provider=provider.name
                )
            self._providers[provider.name] = provider
            self._configs[provider.name] = config or ProviderConfig()
            self._explicit_config[provider.name] = config is not None
            self._stats[provider.name] = {"calls": 0, "failures": 0, "timeouts": 0, "rate_limited": 0}

        logger.debug(f"Registered provider: {provider.name} (kind: {provider.kind})")

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._providers.pop(name, None) is not None
            self._configs.pop(name, None)
            self._explicit_config.pop(name, None)
            self._limiters.pop(name, None)
            self._stats.pop(name, None)
        if removed:
            logger.debug(f"Unregistered provider: {name}")
        return removed

    def update_config(self, name: str, **changes: Any) -> ProviderConfig:
        """Replace fields of a provider's registry config.

        Raises:
            ProviderNotFoundError: If the provider is not registered
        """
        with self._lock:
            if name not in self._providers:
                raise ProviderNotFoundError(f"Provider {name} not found", provider=name)
            updated = replace(self._configs[name], **changes)
            self._configs[name] = updated
            self._explicit_config[name] = True
            self._limiters.pop(name, None)
        logger.info(f"Updated configuration for provider: {name}")
        return updated

    def enable(self, name: str) -> None:
        self.update_config(name, enabled=True)

    def disable(self, name: str) -> None:
        self.update_config(name, enabled=False)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> Provider:
        """Look up an enabled provider.

        Raises:
            ProviderNotFoundError: Unknown name
            ProviderDisabledError: Provider is registered but disabled
        """
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self.list_names()) or "none"
            raise ProviderNotFoundError(
                f"Provider {name} not found. Available providers: {available}", provider=name
            )
        if not self._configs[name].enabled:
            raise ProviderDisabledError(f"Provider {name} is disabled", provider=name)
        return provider

    def get_config(self, name: str) -> Optional[ProviderConfig]:
        return self._configs.get(name)

    def has(self, name: str) -> bool:
        return name in self._providers

    def is_enabled(self, name: str) -> bool:
        config = self._configs.get(name)
        return bool(config and config.enabled)

    def list_names(self) -> List[str]:
        return list(self._providers)

    def list_by_kind(self, kind: str) -> List[Provider]:
        return [p for p in self._providers.values() if p.kind == kind]

    def list_enabled(self) -> List[Provider]:
        return [p for name, p in self._providers.items() if self._configs[name].enabled]

    def validate_provider(self, name: str, config: Dict[str, Any]) -> bool:
        """Run the provider's own config validation.

        Raises:
            ProviderNotFoundError: Unknown name
            ProviderDisabledError: Provider is disabled
        """
        return bool(self.get(name).validate(config))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _limiter_for(self, name: str) -> Optional[RateLimiter]:
        rate_limit = self._configs[name].rate_limit
        if rate_limit is None:
            return None
        with self._lock:
            limiter = self._limiters.get(name)
            if limiter is None:
                limiter = RateLimiter(rate_limit.requests, rate_limit.window, clock=self._clock)
                self._limiters[name] = limiter
            return limiter

    async def execute_with_policy(
        self, name: str, config: Dict[str, Any], inputs: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Execute a provider applying its rate limit and timeout.

        Args:
            name: Provider name
            config: Provider configuration from the step
            inputs: Resolved step inputs

        Returns:
            Provider outputs

        Raises:
            ProviderNotFoundError: Unknown provider
            ProviderDisabledError: Provider is disabled
            RateLimitExceededError: Window full and strategy is ``reject``
            ProviderTimeoutError: Call exceeded the configured timeout; the
                late result is discarded
        """
        provider = self.get(name)
        policy = self._configs[name]
        stats = self._stats[name]

        limiter = self._limiter_for(name)
        if limiter is not None:
            if policy.rate_limit.strategy == "queue":
                await limiter.acquire()
            elif not limiter.try_acquire():
                stats["rate_limited"] += 1
                raise RateLimitExceededError(
                    f"Provider {name} rate limit exceeded "
                    f"({policy.rate_limit.requests} requests per {policy.rate_limit.window}s)",
                    provider=name,
                )

        stats["calls"] += 1
        try:
            if policy.timeout:
                try:
                    return await asyncio.wait_for(provider.execute(config, inputs), policy.timeout)
                except asyncio.TimeoutError:
                    stats["timeouts"] += 1
                    raise ProviderTimeoutError(
                        f"Provider {name} execution timed out after {policy.timeout}s", provider=name
                    ) from None
            return await provider.execute(config, inputs)
        except Exception:
            stats["failures"] += 1
            raise

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider status for monitoring."""
        stats: Dict[str, Dict[str, Any]] = {}
        for name, provider in self._providers.items():
            config = self._configs[name]
            limiter = self._limiters.get(name)
            stats[name] = {
                "kind": provider.kind,
                "enabled": config.enabled,
                "has_config": self._explicit_config.get(name, False),
                "required_inputs": provider.required_inputs(),
                "outputs": provider.outputs(),
                "timeout": config.timeout,
                "rate_limit": (
                    {
                        "requests": config.rate_limit.requests,
                        "window": config.rate_limit.window,
                        "strategy": config.rate_limit.strategy,
                    }
                    if config.rate_limit
                    else None
                ),
                "rate_limit_status": limiter.get_status() if limiter else None,
                **self._stats.get(name, {}),
            }
        return stats

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers
