"""Pipeline module: ordered stages, each running external tools."""

from stagerunner.pipeline.executor import (
    ExecutionResult,
    Executor,
    RunResult,
    RunStatus,
    run_pipeline,
)
from stagerunner.pipeline.loader import load_pipeline, load_pipeline_file
from stagerunner.pipeline.model import Pipeline, define_pipeline
from stagerunner.pipeline.schema import (
    CredentialRef,
    PipelineDefinition,
    PipelineSpec,
    StageSpec,
)
from stagerunner.pipeline.state import StageStatus

__all__ = [
    "CredentialRef",
    "ExecutionResult",
    "Executor",
    "Pipeline",
    "PipelineDefinition",
    "PipelineSpec",
    "RunResult",
    "RunStatus",
    "StageSpec",
    "StageStatus",
    "define_pipeline",
    "load_pipeline",
    "load_pipeline_file",
    "run_pipeline",
]
