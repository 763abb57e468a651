"""
Pipeline configuration.

The pipeline is an ordered list of phases. Each phase has a display name, the
status value written to stage frontmatter, exactly one of a `skill` (spawns an
agent session) or a `resolver` (lightweight automation run by the loop), and
the names of the phases it may move to. "Done" is the terminal target.

Config is layered: the embedded default, replaced by the global config file
when present, then overlaid by the repo's `.kanban-workflow.yaml`:
- repo `phases` REPLACE global phases entirely
- repo `entry_phase` replaces global entry_phase
- `defaults` are merged key by key (repo wins)
- `cron` jobs are merged by job name (repo wins)
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kanban.lib.constants import (
    COLUMN_READY,
    DONE_TARGET,
    GLOBAL_CONFIG_PATH,
    REPO_CONFIG_NAME,
    WHITESPACE_RE,
)
from kanban.lib.validate import collect_errors

logger = logging.getLogger(__name__)


class PipelineConfigError(Exception):
    """Pipeline config file is unreadable or invalid."""
    pass


DEFAULT_PIPELINE = {
    "workflow": {
        "entry_phase": "Design",
        "phases": [
            {"name": "Design", "skill": "phase-design", "status": "Design",
             "transitions_to": ["Build", "User Design Feedback"]},
            {"name": "User Design Feedback", "skill": "user-design-feedback", "status": "User Design Feedback",
             "transitions_to": ["Build"]},
            {"name": "Build", "skill": "phase-build", "status": "Build",
             "transitions_to": ["Automatic Testing"]},
            {"name": "Automatic Testing", "skill": "automatic-testing", "status": "Automatic Testing",
             "transitions_to": ["Manual Testing"]},
            {"name": "Manual Testing", "skill": "manual-testing", "status": "Manual Testing",
             "transitions_to": ["Finalize"]},
            {"name": "Finalize", "skill": "phase-finalize", "status": "Finalize",
             "transitions_to": ["Done", "PR Created"]},
            {"name": "PR Created", "resolver": "pr-status", "status": "PR Created",
             "transitions_to": ["Done", "Addressing Comments"]},
            {"name": "Addressing Comments", "skill": "review-cycle", "status": "Addressing Comments",
             "transitions_to": ["PR Created"]},
        ],
        "defaults": {
            "WORKFLOW_REMOTE_MODE": False,
            "WORKFLOW_AUTO_DESIGN": False,
            "WORKFLOW_MAX_PARALLEL": 1,
            "WORKFLOW_GIT_PLATFORM": "auto",
            "WORKFLOW_LEARNINGS_THRESHOLD": 10,
        },
    },
}


def to_column_key(name: str) -> str:
    """Board column key for a phase display name: "Manual Testing" -> "manual_testing"."""
    return WHITESPACE_RE.sub("_", name.strip().lower())


@dataclass
class PipelineState:
    """One phase of the pipeline."""
    name: str
    status: str
    transitions_to: list[str]
    skill: str | None = None
    resolver: str | None = None

    @property
    def column(self) -> str:
        return to_column_key(self.name)

    @property
    def is_skill(self) -> bool:
        return self.skill is not None and self.resolver is None

    @property
    def is_resolver(self) -> bool:
        return self.resolver is not None and self.skill is None


@dataclass
class CronJobConfig:
    enabled: bool = False
    interval_seconds: int = 300


@dataclass
class PipelineConfig:
    """Validated pipeline config with lookups by name and status."""
    entry_phase: str
    phases: list[PipelineState]
    defaults: dict = field(default_factory=dict)
    human_refinement_types: list[str] = field(default_factory=list)
    cron: dict[str, CronJobConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "PipelineConfig":
        workflow = raw["workflow"]
        phases = [
            PipelineState(
                name=p["name"],
                status=p["status"],
                transitions_to=list(p["transitions_to"]),
                skill=p.get("skill"),
                resolver=p.get("resolver"),
            )
            for p in workflow["phases"]
        ]
        cron = {
            name: CronJobConfig(enabled=job["enabled"], interval_seconds=job["interval_seconds"])
            for name, job in (raw.get("cron") or {}).items()
        }
        return cls(
            entry_phase=workflow["entry_phase"],
            phases=phases,
            defaults=dict(workflow.get("defaults") or {}),
            human_refinement_types=list(workflow.get("human_refinement_types") or []),
            cron=cron,
        )

    def state_by_name(self, name: str) -> PipelineState | None:
        for state in self.phases:
            if state.name == name:
                return state
        return None

    def state_by_status(self, status: str) -> PipelineState | None:
        for state in self.phases:
            if state.status == status:
                return state
        return None

    def entry_state(self) -> PipelineState:
        state = self.state_by_name(self.entry_phase)
        if state is None:
            raise PipelineConfigError(f'Entry phase "{self.entry_phase}" not found in pipeline config')
        return state

    def statuses(self) -> list[str]:
        return [s.status for s in self.phases]

    def skill_states(self) -> list[PipelineState]:
        return [s for s in self.phases if s.is_skill]

    def resolver_states(self) -> list[PipelineState]:
        return [s for s in self.phases if s.is_resolver]

    def automatable_columns(self) -> set[str]:
        """Columns Discovery may pick work from: ready_for_work plus skill phases."""
        return {COLUMN_READY} | {s.column for s in self.skill_states()}


def default_pipeline() -> PipelineConfig:
    return PipelineConfig.from_dict(copy.deepcopy(DEFAULT_PIPELINE))


def merge_configs(base: dict, repo: dict | None) -> dict:
    """Overlay a (partial) repo config onto a full base config."""
    if not repo:
        return base

    merged = copy.deepcopy(base)
    repo_workflow = repo.get("workflow") or {}
    workflow = merged["workflow"]

    if "entry_phase" in repo_workflow:
        workflow["entry_phase"] = repo_workflow["entry_phase"]
    if "phases" in repo_workflow:
        workflow["phases"] = repo_workflow["phases"]
    if "human_refinement_types" in repo_workflow:
        workflow["human_refinement_types"] = repo_workflow["human_refinement_types"]
    workflow["defaults"] = {
        **(workflow.get("defaults") or {}),
        **(repo_workflow.get("defaults") or {}),
    }

    if repo.get("cron"):
        merged["cron"] = {**(merged.get("cron") or {}), **repo["cron"]}

    return merged


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise PipelineConfigError(f"Failed to read {path}: {e}") from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PipelineConfigError(f"{path} must contain a mapping")
    return data


def _check_schema(data: dict, source: str) -> None:
    errors = collect_errors(data, "pipeline")
    if errors:
        raise PipelineConfigError(f"Invalid pipeline config ({source}): " + "; ".join(errors))


def load_pipeline_config(repo_path: Path | None = None, global_config_path: Path | None = None) -> PipelineConfig:
    """Load the effective pipeline for a repo.

    Priority: repo config > global config > embedded default. The merged
    result is validated against the pipeline schema and the graph checks.

    Raises:
        PipelineConfigError: If any layer is unreadable or the result is invalid.
    """
    global_path = Path(global_config_path or Path(GLOBAL_CONFIG_PATH).expanduser())

    if global_path.exists():
        base = _read_yaml(global_path)
        _check_schema(base, str(global_path))
        logger.debug(f"[CONFIG] Loaded global pipeline config from {global_path}")
    else:
        base = copy.deepcopy(DEFAULT_PIPELINE)

    repo_config = None
    if repo_path is not None:
        repo_file = Path(repo_path) / REPO_CONFIG_NAME
        if repo_file.exists():
            # Repo config may be partial; only the merged result is validated
            repo_config = _read_yaml(repo_file)
            logger.debug(f"[CONFIG] Loaded repo pipeline config from {repo_file}")

    merged = merge_configs(base, repo_config)
    _check_schema(merged, "merged")

    config = PipelineConfig.from_dict(merged)
    errors, warnings = validate_pipeline(config)
    for warning in warnings:
        logger.warning(f"[CONFIG] {warning}")
    if errors:
        raise PipelineConfigError("Invalid pipeline config: " + "; ".join(errors))
    return config


def validate_pipeline(config: PipelineConfig) -> tuple[list[str], list[str]]:
    """Static and graph checks on a pipeline.

    Returns:
        (errors, warnings). Cycles are fine as long as every phase can
        still reach Done.
    """
    errors: list[str] = []
    warnings: list[str] = []
    names = [p.name for p in config.phases]
    name_set = set(names)

    seen: set[str] = set()
    for name in names:
        if name in seen:
            errors.append(f'Duplicate state name: "{name}"')
        seen.add(name)

    status_owner: dict[str, str] = {}
    for phase in config.phases:
        if phase.status in status_owner:
            errors.append(
                f'Duplicate status value "{phase.status}" used by both '
                f'"{status_owner[phase.status]}" and "{phase.name}"'
            )
        status_owner[phase.status] = phase.name

    if config.entry_phase not in name_set:
        errors.append(f'entry_phase "{config.entry_phase}" does not reference an existing state name')

    for phase in config.phases:
        for target in phase.transitions_to:
            if target != DONE_TARGET and target not in name_set:
                errors.append(f'State "{phase.name}": transitions_to target "{target}" does not exist in the pipeline')

    targeted = {config.entry_phase}
    for phase in config.phases:
        targeted.update(t for t in phase.transitions_to if t != DONE_TARGET)
    for phase in config.phases:
        if phase.name not in targeted:
            warnings.append(
                f'State "{phase.name}" is not reachable from any other state\'s transitions_to or entry_phase'
            )

    # Backward closure: who can eventually reach Done
    can_reach_done = {p.name for p in config.phases if DONE_TARGET in p.transitions_to}
    changed = True
    while changed:
        changed = False
        for phase in config.phases:
            if phase.name in can_reach_done:
                continue
            if any(t in can_reach_done for t in phase.transitions_to if t != DONE_TARGET):
                can_reach_done.add(phase.name)
                changed = True
    for phase in config.phases:
        if phase.name not in can_reach_done:
            errors.append(f'State "{phase.name}" cannot reach Done via any transition path')

    # Forward walk from the entry phase
    adjacency = {p.name: [t for t in p.transitions_to if t != DONE_TARGET] for p in config.phases}
    reachable: set[str] = set()
    queue = [config.entry_phase]
    while queue:
        current = queue.pop(0)
        if current in reachable:
            continue
        reachable.add(current)
        queue.extend(t for t in adjacency.get(current, []) if t not in reachable)
    for phase in config.phases:
        if phase.name not in reachable:
            errors.append(f'State "{phase.name}" is not reachable from entry_phase "{config.entry_phase}"')

    return errors, warnings
