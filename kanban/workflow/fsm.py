"""Stage pipeline state machine using transitions library.

Builds a transitions.Machine from the configured pipeline so phase moves are
checked against the declared `transitions_to` lists:
- one state per phase status, plus "Complete"
- one trigger per transition target name ("Build" -> "to_build",
  "Done" -> "to_done")

Usage:
    from kanban.workflow.fsm import PipelineFSM

    fsm = PipelineFSM(pipeline)
    fsm.resolve_transition_target("Finalize", "PR Created")  # "PR Created"
    fsm.resolve_transition_target("Finalize", "Done")  # "Complete"
    fsm.resolve_transition_target("Design", "Done")  # None
"""

import logging

from transitions import Machine

from kanban.lib.constants import COMPLETE_STATUS, DONE_TARGET
from kanban.lib.pipeline import PipelineConfig, to_column_key

logger = logging.getLogger(__name__)


def trigger_for(target_name: str) -> str:
    """Trigger name for moving to a transition target."""
    return f"to_{to_column_key(target_name)}"


def build_transitions(pipeline: PipelineConfig) -> list[dict]:
    """Translate phase transitions_to lists into transitions dicts."""
    result = []
    for phase in pipeline.phases:
        for target in phase.transitions_to:
            if target == DONE_TARGET:
                dest = COMPLETE_STATUS
            else:
                target_state = pipeline.state_by_name(target)
                if target_state is None:
                    logger.warning(f"[FSM] {phase.name}: unknown transition target '{target}', ignoring")
                    continue
                dest = target_state.status
            result.append({"trigger": trigger_for(target), "source": phase.status, "dest": dest})
    return result


class PipelineFSM:
    """Transition checks for stage statuses.

    Wraps a transitions.Machine built from the pipeline config. The machine
    is used as a lookup table; statuses are persisted by callers in stage
    frontmatter, not here.
    """

    def __init__(self, pipeline: PipelineConfig):
        self.pipeline = pipeline
        self.transitions = build_transitions(pipeline)
        states = pipeline.statuses() + [COMPLETE_STATUS]
        self.machine = Machine(
            states=states,
            transitions=self.transitions,
            initial=pipeline.entry_state().status,
            auto_transitions=False,  # Only declared transitions
        )

    def available_targets(self, status: str) -> list[str]:
        """Target names reachable in one move from a status."""
        state = self.pipeline.state_by_status(status)
        if state is None:
            return []
        triggers = set(self.machine.get_triggers(status))
        return [t for t in state.transitions_to if trigger_for(t) in triggers]

    def can_transition(self, from_status: str, to_name: str) -> bool:
        if from_status not in self.machine.states:
            return False
        return trigger_for(to_name) in self.machine.get_triggers(from_status)

    def resolve_transition_target(self, from_status: str, to_name: str) -> str | None:
        """Status to write for a move, or None if the move isn't allowed.

        Args:
            from_status: Current status value (from frontmatter)
            to_name: Target state name (from transitions_to), or "Done"
        """
        if not self.can_transition(from_status, to_name):
            logger.debug(f"[FSM] '{to_name}' is not a valid transition from '{from_status}'")
            return None
        event = self.machine.events[trigger_for(to_name)]
        return event.transitions[from_status][0].dest
