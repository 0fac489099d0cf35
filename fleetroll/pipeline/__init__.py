"""Source -> Build -> Deploy pipeline."""

from .controller import DeployResult, PipelineController, PipelineRun
from .process import ProcessExecutor, ProcessResult, kill_process_tree
from .stages import (
    BuildStage,
    CallableBuildStage,
    CommandBuildStage,
    SourceStage,
    StaticSource,
)

__all__ = [
    "DeployResult",
    "PipelineController",
    "PipelineRun",
    "ProcessExecutor",
    "ProcessResult",
    "kill_process_tree",
    "BuildStage",
    "CallableBuildStage",
    "CommandBuildStage",
    "SourceStage",
    "StaticSource",
]
