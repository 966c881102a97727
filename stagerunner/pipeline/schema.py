"""Pydantic models for pipeline YAML definitions."""

from __future__ import annotations

import re
import shlex
from pathlib import PurePosixPath
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PLACEHOLDER_RE = re.compile(r"\$\{(\w+)\}")

_SHELL_OPERATORS: frozenset[str] = frozenset(
    {"|", "||", "&&", ";", ";;", ">", ">>", "<", "<<", "<<<", "(", ")", "{", "}", "&"}
)


class CredentialRef(BaseModel):
    """Opaque pointer to a secret, resolved by a CredentialStore at run time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    credential: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"<credential:{self.credential}>"


EnvValue = str | CredentialRef


def parse_command(command: str) -> list[str]:
    """Tokenize *command* with :func:`shlex.split`, rejecting shell syntax.

    Commands never run through a shell, so operators would be passed to the
    tool as literal arguments; refusing them up front gives a clear error.
    """
    try:
        tokens = shlex.split(command)
    except ValueError as exc:
        raise ValueError(f"invalid command syntax: {exc}") from None
    if not tokens:
        raise ValueError("empty command")
    for tok in tokens:
        if tok in _SHELL_OPERATORS:
            raise ValueError(
                f"shell operator '{tok}' is not allowed in '{command}'; "
                "split it into separate commands"
            )
    return tokens


def _normalize_argv(entry: Any) -> list[str]:
    if isinstance(entry, str):
        return parse_command(entry)
    if isinstance(entry, list):
        if not entry:
            raise ValueError("empty command")
        if not all(isinstance(tok, str | int | float) for tok in entry):
            raise ValueError(f"command arguments must be strings: {entry!r}")
        return [str(tok) for tok in entry]
    raise ValueError(f"command must be a string or a list of arguments, got {type(entry).__name__}")


def _check_relative(value: str, what: str) -> str:
    path = PurePosixPath(value)
    if path.is_absolute():
        raise ValueError(f"{what} '{value}' must be relative to the workspace")
    if ".." in path.parts:
        raise ValueError(f"{what} '{value}' must not leave the workspace")
    return value


class StageSpec(BaseModel):
    """One stage: an ordered list of argv invocations run in the workspace.

    YAML accepts either ``command`` (a single string or argv list) or
    ``commands`` (a list of them); both normalize to ``commands``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", coerce_numbers_to_str=True)

    name: str = Field(min_length=1)
    description: str = ""
    commands: list[list[str]] = Field(min_length=1)
    env: dict[str, EnvValue] = {}
    abort_on_failure: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)
    artifacts: list[str] = []
    working_dir: str | None = None
    network: bool = False

    @model_validator(mode="before")
    @classmethod
    def _merge_command(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "command" not in data:
            return data
        if "commands" in data:
            raise ValueError("use either 'command' or 'commands', not both")
        data = dict(data)
        data["commands"] = [data.pop("command")]
        return data

    @field_validator("commands", mode="before")
    @classmethod
    def _normalize_commands(cls, value: Any) -> Any:
        if not isinstance(value, list):
            raise ValueError("'commands' must be a list")
        return [_normalize_argv(entry) for entry in value]

    @field_validator("artifacts")
    @classmethod
    def _validate_artifacts(cls, value: list[str]) -> list[str]:
        return [_check_relative(v, "artifact path") for v in value]

    @field_validator("working_dir")
    @classmethod
    def _validate_working_dir(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_relative(value, "working_dir")

    @model_validator(mode="after")
    def _validate_network_timeout(self) -> StageSpec:
        if self.network and self.timeout_seconds is None:
            raise ValueError(
                f"Stage '{self.name}' is marked network: true and must set timeout_seconds"
            )
        return self

    def credential_refs(self) -> set[str]:
        return {v.credential for v in self.env.values() if isinstance(v, CredentialRef)}


class PipelineMetadata(BaseModel):
    name: str
    description: str = ""


class PipelineSpec(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    env: dict[str, EnvValue] = {}
    credentials: list[str] = []
    stages: list[StageSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def _validate_stages(self) -> PipelineSpec:
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: '{stage.name}'")
            seen.add(stage.name)

        declared = set(self.credentials)
        for key, value in self.env.items():
            if isinstance(value, CredentialRef) and value.credential not in declared:
                raise ValueError(
                    f"Pipeline env '{key}' references undeclared credential '{value.credential}'"
                )
        for stage in self.stages:
            undeclared = sorted(stage.credential_refs() - declared)
            if undeclared:
                raise ValueError(
                    f"Stage '{stage.name}' references undeclared credential '{undeclared[0]}'"
                )

        # Secrets reach tools through the environment only, never argv.
        for stage in self.stages:
            merged = {**self.env, **stage.env}
            for argv in stage.commands:
                for arg in argv:
                    for var in PLACEHOLDER_RE.findall(arg):
                        if isinstance(merged.get(var), CredentialRef):
                            raise ValueError(
                                f"Stage '{stage.name}' interpolates credential-backed "
                                f"variable '{var}' into a command argument; "
                                "let the tool read it from the environment instead"
                            )
        return self


class PipelineDefinition(BaseModel):
    apiVersion: str
    kind: Literal["Pipeline"]
    metadata: PipelineMetadata
    spec: PipelineSpec
