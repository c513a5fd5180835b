"""Abstract base class for step execution providers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)


class Provider(ABC):
    """Named, pluggable execution unit.

    The engine only relies on this contract; provider internals (API calls,
    credentials, local processing) are never inspected.

    Attributes:
        name: Unique registry key
        kind: Step-kind tag used for grouping (e.g. ``script-generation``)
    """

    name: str = ""
    kind: str = "generic"

    @abstractmethod
    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Run the provider.

        Args:
            config: Provider configuration from the step definition
            inputs: Resolved step inputs

        Returns:
            Output mapping
        """
        pass

    def validate(self, config: Dict[str, Any]) -> bool:
        """Check a step's provider configuration."""
        return True

    def required_inputs(self) -> List[str]:
        return []

    def outputs(self) -> List[str]:
        return []

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, kind={self.kind!r})"


class BaseProvider(Provider):
    """Provider base with declarative inputs, outputs and config keys.

    Subclasses set ``name``, ``kind``, ``REQUIRED_INPUTS``, ``OUTPUTS`` and
    ``REQUIRED_CONFIG_KEYS`` and implement :meth:`execute`.
    """

    REQUIRED_INPUTS: Sequence[str] = ()
    OUTPUTS: Sequence[str] = ()
    REQUIRED_CONFIG_KEYS: Sequence[str] = ()
    DEFAULT_CONFIG: Dict[str, Any] = {}

    def __init__(self, name: Optional[str] = None, kind: Optional[str] = None):
        if name:
            self.name = name
        if kind:
            self.kind = kind
        if not self.name:
            raise ValueError(f"{self.__class__.__name__} requires a provider name")

    def validate(self, config: Dict[str, Any]) -> bool:
        """Check required config keys, then provider-specific rules."""
        for key in self.REQUIRED_CONFIG_KEYS:
            if key not in config:
                logger.warning(f"[{self.name}] Missing required config key: {key}")
                return False
        return self.validate_config(config)

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Override for provider-specific config validation."""
        return True

    def required_inputs(self) -> List[str]:
        return list(self.REQUIRED_INPUTS)

    def outputs(self) -> List[str]:
        return list(self.OUTPUTS)

    def merge_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        return {**self.DEFAULT_CONFIG, **config}

    def create_output(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Build the output mapping, declared outputs first.

        Missing declared outputs are logged, extra keys are kept.
        """
        result: Dict[str, Any] = {}
        for output in self.OUTPUTS:
            if output in data:
                result[output] = data[output]
            else:
                logger.warning(f"[{self.name}] Expected output '{output}' not found in result")

        for key, value in data.items():
            if key not in result:
                result[key] = value
        return result


ProviderFunction = Callable[[Dict[str, Any], Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class FunctionProvider(BaseProvider):
    """Adapter turning a plain callable into a provider.

    Sync callables run in the default executor so they do not block the
    event loop.

    Example:
        >>> provider = FunctionProvider("upper", lambda cfg, inp: {"text": inp["text"].upper()},
        ...                             required_inputs=["text"], outputs=["text"])
    """

    def __init__(
        self,
        name: str,
        func: ProviderFunction,
        kind: str = "function",
        required_inputs: Sequence[str] = (),
        outputs: Sequence[str] = (),
        required_config_keys: Sequence[str] = (),
    ):
        super().__init__(name=name, kind=kind)
        self.func = func
        self.REQUIRED_INPUTS = tuple(required_inputs)
        self.OUTPUTS = tuple(outputs)
        self.REQUIRED_CONFIG_KEYS = tuple(required_config_keys)

    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(config, inputs)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, self.func, config, inputs)
            if inspect.isawaitable(result):
                result = await result
        return self.create_output(dict(result or {}))
