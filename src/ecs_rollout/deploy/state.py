"""Deployment state tracking."""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class DeploymentState(str, Enum):
    """States of one install/upgrade/task run."""
    IDLE = "idle"
    REGISTERING = "registering"
    CONVERGING = "converging"
    STABLE = "stable"                      # Terminal: success
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"            # Terminal: original error re-raised
    ROLLBACK_FAILED = "rollback_failed"    # Terminal: RollbackError raised


TRANSITIONS: Dict[DeploymentState, FrozenSet[DeploymentState]] = {
    DeploymentState.IDLE: frozenset({DeploymentState.REGISTERING, DeploymentState.FAILED}),
    DeploymentState.REGISTERING: frozenset({DeploymentState.CONVERGING, DeploymentState.FAILED}),
    DeploymentState.CONVERGING: frozenset({DeploymentState.STABLE, DeploymentState.FAILED}),
    DeploymentState.FAILED: frozenset({DeploymentState.ROLLING_BACK}),
    DeploymentState.ROLLING_BACK: frozenset({DeploymentState.ROLLED_BACK, DeploymentState.ROLLBACK_FAILED}),
    DeploymentState.STABLE: frozenset(),
    DeploymentState.ROLLED_BACK: frozenset(),
    DeploymentState.ROLLBACK_FAILED: frozenset(),
}


class DeploymentStateError(Exception):
    """Exception raised for invalid state transitions"""
    pass


@dataclass(frozen=True)
class DeployOptions:
    """Per-run switches, passed explicitly to every orchestrator operation."""
    rollback: bool = False
    deregister: bool = False
    timeout_s: Optional[int] = None        # None: use the settings default
    desired_count: Optional[int] = None    # None: use the settings default


@dataclass
class DeploymentRun:
    """Mutable record of a single run: current state, history and cleanup hints."""
    operation: str
    target: str
    state: DeploymentState = DeploymentState.IDLE
    history: List[Tuple[DeploymentState, float]] = field(default_factory=list)
    cleanup_hints: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.state, time.time()))

    def transition(self, new_state: DeploymentState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise DeploymentStateError(
                f"Invalid state transition from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"{self.operation} {self.target}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append((new_state, time.time()))

    @property
    def states(self) -> List[DeploymentState]:
        return [state for state, _ in self.history]


@dataclass
class DeploymentResult:
    """Returned by a successful orchestrator operation."""
    task_definition_arn: Optional[str]
    final_state: DeploymentState
    history: List[DeploymentState] = field(default_factory=list)
    cleanup_hints: List[str] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: DeploymentRun, task_definition_arn: Optional[str]) -> "DeploymentResult":
        return cls(
            task_definition_arn=task_definition_arn,
            final_state=run.state,
            history=run.states,
            cleanup_hints=list(run.cleanup_hints),
        )
