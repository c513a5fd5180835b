"""Loading pipeline definitions from JSON/YAML documents."""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Mapping, Union

import pydantic
import yaml

from ..exceptions import ValidationError
from .workflow_engine.steps import PipelineDefinition

logger = logging.getLogger(__name__)

PipelineSource = Union[PipelineDefinition, Mapping[str, Any], str, Path]


def _format_pydantic_errors(error: pydantic.ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return messages


def parse_pipeline(data: Mapping[str, Any]) -> PipelineDefinition:
    """Validate a pipeline document.

    Args:
        data: Parsed document; camelCase keys (``onError``, ``dependsOn``,
            ``maxAttempts``) and snake_case keys are both accepted

    Raises:
        ValidationError: If the document does not describe a valid pipeline
    """
    if not isinstance(data, Mapping):
        raise ValidationError(f"Pipeline definition must be a mapping, got {type(data).__name__}")

    try:
        return PipelineDefinition.model_validate(dict(data))
    except pydantic.ValidationError as e:
        errors = _format_pydantic_errors(e)
        raise ValidationError(
            f"Invalid pipeline definition: {errors[0]}",
            pipeline_id=data.get("id"),
            errors=errors,
        ) from e


def _looks_like_path(source: str) -> bool:
    if "\n" in source or len(source) > 1024:
        return False
    try:
        return Path(source).is_file()
    except OSError:
        return False


def _parse_text(text: str, suffix: str = "") -> Any:
    if suffix == ".json":
        return json.loads(text)
    if suffix in (".yaml", ".yml"):
        return yaml.safe_load(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return yaml.safe_load(text)


def load_pipeline(source: PipelineSource) -> PipelineDefinition:
    """Load a pipeline from a model, mapping, file path or JSON/YAML text.

    Raises:
        ValidationError: Unparseable document or invalid definition
    """
    if isinstance(source, PipelineDefinition):
        return source
    if isinstance(source, Mapping):
        return parse_pipeline(source)

    suffix = ""
    if isinstance(source, Path) or _looks_like_path(source):
        path = Path(source)
        suffix = path.suffix.lower()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"Cannot read pipeline file {path}: {e}") from e
        logger.debug(f"Loading pipeline from {path}")
    else:
        text = source

    try:
        data = _parse_text(text, suffix)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"Failed to parse pipeline document: {e}") from e

    if data is None:
        raise ValidationError("Pipeline document is empty")
    return parse_pipeline(data)


def create_sample_pipeline(topic: str) -> PipelineDefinition:
    """Build a four-step content pipeline wired to the demo ``echo`` provider.

    ``create-video`` and ``synthesize-voice`` both depend on
    ``generate-script`` and form the second wave.
    """
    return parse_pipeline(
        {
            "id": f"pipeline-{int(time.time() * 1000)}",
            "name": f"Content Creation: {topic}",
            "description": f"Automated content creation pipeline for {topic}",
            "version": "1.0.0",
            "onError": "stop",
            "maxRetries": 3,
            "timeout": 600,
            "steps": [
                {
                    "id": "generate-script",
                    "name": "Generate Script",
                    "type": "script-generation",
                    "provider": "echo",
                    "config": {
                        "outputs": {
                            "script": f"A short educational script about {topic}.",
                            "title": topic.title(),
                            "estimatedDuration": 5,
                        }
                    },
                    "inputs": {"topic": topic, "duration": 5, "style": "educational"},
                    "outputs": ["script", "title", "estimatedDuration"],
                    "retry": {"maxAttempts": 3, "delay": 2, "backoff": "exponential"},
                },
                {
                    "id": "create-video",
                    "name": "Create Video",
                    "type": "video-creation",
                    "provider": "echo",
                    "config": {"outputs": {"videoUrl": "memory://video.mp4"}},
                    "inputs": {
                        "script": "${generate-script.script}",
                        "style": "professional",
                        "duration": "${generate-script.estimatedDuration}",
                    },
                    "outputs": ["videoUrl"],
                    "dependsOn": ["generate-script"],
                    "retry": {"maxAttempts": 2, "delay": 5, "backoff": "linear"},
                },
                {
                    "id": "synthesize-voice",
                    "name": "Synthesize Voice",
                    "type": "voice-synthesis",
                    "provider": "echo",
                    "config": {"outputs": {"audioUrl": "memory://voice.mp3"}},
                    "inputs": {"text": "${generate-script.script}", "voiceId": "default-voice"},
                    "outputs": ["audioUrl"],
                    "dependsOn": ["generate-script"],
                    "retry": {"maxAttempts": 3, "delay": 1, "backoff": "exponential"},
                },
                {
                    "id": "store-video",
                    "name": "Store Video",
                    "type": "storage",
                    "provider": "echo",
                    "config": {"outputs": {"storedAt": "memory://archive"}},
                    "inputs": {
                        "fileUrl": "${create-video.videoUrl}",
                        "fileName": "${generate-script.title}.mp4",
                    },
                    "outputs": ["storedAt"],
                    "dependsOn": ["create-video"],
                    "retry": {"maxAttempts": 3, "delay": 2, "backoff": "exponential"},
                },
            ],
        }
    )
