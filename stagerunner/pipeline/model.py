"""Immutable run-time pipeline built from a validated definition."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from stagerunner._ids import generate_run_id
from stagerunner.errors import ConfigError
from stagerunner.pipeline.schema import (
    CredentialRef,
    EnvValue,
    PipelineDefinition,
    PipelineSpec,
    StageSpec,
)


@dataclass(frozen=True)
class Pipeline:
    """An ordered, validated sequence of stages with shared env and credentials."""

    name: str
    stages: tuple[StageSpec, ...]
    env: Mapping[str, EnvValue]
    credentials: frozenset[str]
    base_dir: Path
    run_id: str = field(default_factory=generate_run_id)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def stage(self, name: str) -> StageSpec:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    @classmethod
    def from_definition(
        cls,
        definition: PipelineDefinition,
        *,
        base_dir: Path | None = None,
        overrides: Mapping[str, str] | None = None,
    ) -> Pipeline:
        """Build a Pipeline from a loaded definition, applying ``--var`` overrides."""
        env: dict[str, EnvValue] = dict(definition.spec.env)
        for key, value in (overrides or {}).items():
            if isinstance(env.get(key), CredentialRef):
                raise ConfigError(f"Cannot override credential-backed variable '{key}'")
            env[key] = value
        return define_pipeline(
            definition.spec.stages,
            env,
            credentials=definition.spec.credentials,
            name=definition.metadata.name,
            base_dir=base_dir,
        )


def define_pipeline(
    stages: Sequence[StageSpec | Mapping[str, Any]],
    env: Mapping[str, EnvValue | Mapping[str, str]] | None = None,
    *,
    credentials: Sequence[str] = (),
    name: str = "pipeline",
    base_dir: Path | None = None,
) -> Pipeline:
    """Validate stages and env, returning an immutable :class:`Pipeline`.

    Stage names must be unique and every credential a stage or the shared
    env references must be declared in *credentials*. No side effects.

    Raises:
        ConfigError: If the definition is invalid.
    """
    try:
        spec = PipelineSpec.model_validate(
            {
                "env": dict(env or {}),
                "credentials": list(credentials),
                "stages": list(stages),
            }
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline '{name}':\n{e}") from e

    return Pipeline(
        name=name,
        stages=tuple(spec.stages),
        env=MappingProxyType(dict(spec.env)),
        credentials=frozenset(spec.credentials),
        base_dir=(base_dir or Path.cwd()).resolve(),
    )
