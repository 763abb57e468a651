"""
Orchestrator configuration.

Combines explicit arguments, WORKFLOW_* environment variables and the
pipeline's `defaults` section into one OrchestratorConfig.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from kanban.lib.constants import (
    DEFAULT_DB_PATH,
    DEFAULT_LOG_DIR_NAME,
    MAX_PARALLEL_ENV,
    WORKFLOW_ENV_PREFIX,
)
from kanban.lib.pipeline import PipelineConfig, load_pipeline_config

DEFAULT_IDLE_SECONDS = 30
DEFAULT_MODEL = "sonnet"


@dataclass
class OrchestratorConfig:
    """Runtime settings for one orchestrator instance."""
    repo_path: Path
    once: bool
    idle_seconds: float
    log_dir: Path
    db_path: Path
    model: str
    verbose: bool
    max_parallel: int
    pipeline: PipelineConfig
    workflow_env: dict[str, str] = field(default_factory=dict)


def collect_workflow_env(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Every WORKFLOW_* variable, passed through to sessions."""
    environ = os.environ if environ is None else environ
    return {k: v for k, v in environ.items() if k.startswith(WORKFLOW_ENV_PREFIX)}


def resolve_max_parallel(
    explicit: int | None,
    environ: dict[str, str],
    pipeline: PipelineConfig,
) -> int:
    """Explicit value > WORKFLOW_MAX_PARALLEL env var > pipeline default > 1.

    Raises:
        ValueError: If the chosen value isn't an integer >= 1.
    """
    if explicit is not None:
        value, source = explicit, "argument"
    elif environ.get(MAX_PARALLEL_ENV):
        raw = environ[MAX_PARALLEL_ENV]
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{MAX_PARALLEL_ENV} must be an integer, got {raw!r}") from None
        source = MAX_PARALLEL_ENV
    else:
        value, source = pipeline.defaults.get(MAX_PARALLEL_ENV, 1), "pipeline defaults"

    if not isinstance(value, int) or value < 1:
        raise ValueError(f"max_parallel must be >= 1 (from {source}), got {value!r}")
    return value


def load_orchestrator_config(
    repo_path: Path,
    once: bool = False,
    idle_seconds: float = DEFAULT_IDLE_SECONDS,
    log_dir: Path | None = None,
    db_path: Path | None = None,
    model: str = DEFAULT_MODEL,
    verbose: bool = False,
    max_parallel: int | None = None,
    pipeline: PipelineConfig | None = None,
    environ: dict[str, str] | None = None,
) -> OrchestratorConfig:
    """Build OrchestratorConfig, loading the pipeline for the repo if not given.

    Creates the log directory.

    Raises:
        ValueError: Invalid max_parallel or idle_seconds.
        PipelineConfigError: Invalid pipeline config.
    """
    environ = dict(os.environ) if environ is None else environ
    repo_path = Path(repo_path).resolve()

    if idle_seconds < 0:
        raise ValueError(f"idle_seconds must be >= 0, got {idle_seconds}")

    if pipeline is None:
        pipeline = load_pipeline_config(repo_path)

    log_dir = Path(log_dir) if log_dir else repo_path / DEFAULT_LOG_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)

    return OrchestratorConfig(
        repo_path=repo_path,
        once=once,
        idle_seconds=idle_seconds,
        log_dir=log_dir,
        db_path=Path(db_path) if db_path else repo_path / DEFAULT_DB_PATH,
        model=model,
        verbose=verbose,
        max_parallel=resolve_max_parallel(max_parallel, environ, pipeline),
        pipeline=pipeline,
        workflow_env=collect_workflow_env(environ),
    )
