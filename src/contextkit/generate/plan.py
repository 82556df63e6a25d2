"""Strict schemas for model output: the plan and the generated artifact.

Model replies are decoded as one JSON object (optionally inside a single
fenced code block) and validated with pydantic. Nothing is scraped out of free
text; anything that does not validate is a decode failure.
"""

from __future__ import annotations

import re
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from contextkit.errors import GenerationError, PlanningError

_FENCE_RE = re.compile(r"\A```(?:json)?\s*\n(.*)\n```\Z", re.DOTALL)

M = TypeVar("M", bound=BaseModel)


class PlanStep(BaseModel):
    """One intended change."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    action: Literal["create", "modify", "delete"]
    description: str = Field(min_length=1)


class Plan(BaseModel):
    """Structured plan returned in the planning state."""

    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    steps: list[PlanStep] = Field(min_length=1)
    sources: list[str] = Field(default_factory=list)


class FileOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    content: str


class DiffOutput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = Field(min_length=1)
    diff: str = Field(min_length=1)


class GenerationOutput(BaseModel):
    """Full files and/or unified diffs, plus the ids of the sources used."""

    model_config = ConfigDict(extra="forbid")

    files: list[FileOutput] = Field(default_factory=list)
    diffs: list[DiffOutput] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _has_changes(self) -> GenerationOutput:
        if not self.files and not self.diffs:
            raise ValueError("output must contain at least one file or diff")
        return self


def _decode(raw: str, schema: type[M]) -> M:
    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    return schema.model_validate_json(text)


def decode_plan(raw: str) -> Plan:
    """Decode a planning reply.

    Raises:
        PlanningError: The reply is not a valid plan object.
    """
    try:
        return _decode(raw, Plan)
    except ValidationError as exc:
        raise PlanningError(
            f"Model plan did not match the plan schema: {exc.error_count()} error(s)\n{exc}"
        ) from exc


def decode_output(raw: str) -> GenerationOutput:
    """Decode an expansion or repair reply.

    Raises:
        GenerationError: The reply is not a valid output object.
    """
    try:
        return _decode(raw, GenerationOutput)
    except ValidationError as exc:
        raise GenerationError(
            f"Model output did not match the output schema: {exc.error_count()} error(s)\n{exc}"
        ) from exc


def plan_schema_hint() -> str:
    """Compact JSON shape shown to the model in the stricter retry instruction."""
    return (
        '{"summary": "<one sentence>", '
        '"steps": [{"path": "<file>", "action": "create|modify|delete", "description": "<what>"}], '
        '"sources": ["<chunk id>", ...]}'
    )
