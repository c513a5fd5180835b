"""Demo providers for exercising pipeline definitions locally."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from .base import BaseProvider

logger = logging.getLogger(__name__)


class EchoProvider(BaseProvider):
    """Returns its inputs merged with ``config["outputs"]``.

    Setting ``config["fail"]`` makes every call raise, which is handy for
    trying out retry and error policies.
    """

    name = "echo"
    kind = "demo"

    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        if config.get("fail"):
            raise RuntimeError(str(config.get("fail_message", "echo provider configured to fail")))
        return self.create_output({**inputs, **config.get("outputs", {})})


class SleepProvider(BaseProvider):
    """Waits ``inputs["seconds"]`` (or ``config["seconds"]``) and reports the delay."""

    name = "sleep"
    kind = "demo"
    OUTPUTS = ("slept",)

    def validate_config(self, config: Dict[str, Any]) -> bool:
        seconds = config.get("seconds", 0)
        return isinstance(seconds, (int, float)) and seconds >= 0

    async def execute(self, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        seconds = float(inputs.get("seconds", config.get("seconds", 0)))
        logger.debug(f"[{self.name}] sleeping {seconds}s")
        await asyncio.sleep(seconds)
        return self.create_output({"slept": seconds})


def builtin_providers() -> list[BaseProvider]:
    return [EchoProvider(), SleepProvider()]
