"""Load and validate pipeline YAML definitions."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from stagerunner._yaml import load_yaml_model
from stagerunner.errors import ConfigError
from stagerunner.pipeline.model import Pipeline
from stagerunner.pipeline.schema import PipelineDefinition


def load_pipeline(path: Path) -> PipelineDefinition:
    """Read a YAML file and validate it as a PipelineDefinition."""
    return load_yaml_model(path, PipelineDefinition, ConfigError)


def load_pipeline_file(
    path: Path,
    *,
    overrides: Mapping[str, str] | None = None,
    base_dir: Path | None = None,
) -> Pipeline:
    """Load *path* and build a runnable Pipeline.

    The workspace defaults to the directory holding the pipeline file.
    """
    definition = load_pipeline(path)
    return Pipeline.from_definition(
        definition,
        base_dir=base_dir or path.parent,
        overrides=overrides,
    )
