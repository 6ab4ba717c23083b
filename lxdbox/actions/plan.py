"""Plans for top-level machine operations.

`plan()` maps an operation and the observed container state to the ordered
steps that bring the machine to the requested state. It performs no I/O;
`compose()` probes the state once and delegates to it.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from lxdbox.core.errors import UnknownContainerState
from lxdbox.models.machine import CanonicalState

NC = CanonicalState.NOT_CREATED
S = CanonicalState.STOPPED
F = CanonicalState.FROZEN
R = CanonicalState.RUNNING


class Operation(Enum):
    """Top-level operations a host can request."""

    UP = "up"
    HALT = "halt"
    SUSPEND = "suspend"
    RESUME = "resume"
    RELOAD = "reload"
    DESTROY = "destroy"
    PROVISION = "provision"
    SNAPSHOT_LIST = "snapshot_list"
    SNAPSHOT_SAVE = "snapshot_save"
    SNAPSHOT_RESTORE = "snapshot_restore"
    SNAPSHOT_DELETE = "snapshot_delete"

    @property
    def verb(self) -> str:
        """Past participle used in "Machine cannot be ... while ..." messages."""
        return VERBS[self]


VERBS = {
    Operation.UP: "started",
    Operation.HALT: "stopped",
    Operation.SUSPEND: "suspended",
    Operation.RESUME: "resumed",
    Operation.RELOAD: "reloaded",
    Operation.DESTROY: "destroyed",
    Operation.PROVISION: "provisioned",
    Operation.SNAPSHOT_LIST: "inspected",
    Operation.SNAPSHOT_SAVE: "snapshotted",
    Operation.SNAPSHOT_RESTORE: "restored",
    Operation.SNAPSHOT_DELETE: "modified",
}


class DriverCall(Enum):
    """Driver methods a plan can invoke."""

    CREATE = "create"
    RESUME = "resume"
    HALT = "halt"
    SUSPEND = "suspend"
    DESTROY = "destroy"
    SNAPSHOT_LIST = "snapshot_list"
    SNAPSHOT_SAVE = "snapshot_save"
    SNAPSHOT_RESTORE = "snapshot_restore"
    SNAPSHOT_DELETE = "snapshot_delete"


class Hook(Enum):
    """Host collaborators run after the container is up."""

    SYNCED_FOLDERS = "synced_folders"
    WAIT_FOR_COMMUNICATOR = "wait_for_communicator"
    PROVISION = "provision"


class StepKind(Enum):
    VALIDATE = "validate"
    MESSAGE = "message"
    CONFIRM = "confirm"
    DRIVER = "driver"
    HOOK = "hook"
    ERROR = "error"


@dataclass(frozen=True)
class Step:
    """One entry of a plan."""
    kind: StepKind
    level: Optional[str] = None
    text: Optional[str] = None
    call: Optional[DriverCall] = None
    hook: Optional[Hook] = None
    args: Tuple = ()

    @classmethod
    def validate(cls) -> "Step":
        return cls(StepKind.VALIDATE)

    @classmethod
    def message(cls, level: str, text: str) -> "Step":
        return cls(StepKind.MESSAGE, level=level, text=text)

    @classmethod
    def confirm(cls, text: str, declined: str) -> "Step":
        """A yes/no question; `declined` is shown if the answer is no."""
        return cls(StepKind.CONFIRM, text=text, args=(declined,))

    @classmethod
    def driver(cls, call: DriverCall, *args) -> "Step":
        return cls(StepKind.DRIVER, call=call, args=tuple(args))

    @classmethod
    def run_hook(cls, hook: Hook) -> "Step":
        return cls(StepKind.HOOK, hook=hook)

    @classmethod
    def error(cls, text: str) -> "Step":
        return cls(StepKind.ERROR, level="error", text=text)

    def __str__(self) -> str:
        if self.kind is StepKind.DRIVER:
            return f"driver:{self.call.value}"
        if self.kind is StepKind.HOOK:
            return f"hook:{self.hook.value}"
        if self.kind in (StepKind.MESSAGE, StepKind.ERROR, StepKind.CONFIRM):
            return f"{self.kind.value}:{self.text}"
        return self.kind.value


POST_BOOT = [
    Step.run_hook(Hook.SYNCED_FOLDERS),
    Step.run_hook(Hook.WAIT_FOR_COMMUNICATOR),
    Step.run_hook(Hook.PROVISION),
]

ALREADY_RUNNING = Step.message("info", "Machine is already running.")
NOT_CREATED_WARNING = Step.message("warn", "Machine has not been created yet.")


def _plan_up(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return [
            Step.message("info", "Machine has not been created yet, starting..."),
            Step.driver(DriverCall.CREATE),
            Step.driver(DriverCall.RESUME),
            *POST_BOOT,
        ]
    if state in (S, F):
        return _plan_resume(state, snapshot_name)
    return [ALREADY_RUNNING]


def _plan_halt(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return []
    if state is S:
        return [Step.message("info", "Machine is already stopped.")]
    return [Step.message("info", "Stopping machine..."), Step.driver(DriverCall.HALT)]


def _plan_suspend(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return []
    if state is S:
        return [Step.error("Machine cannot be suspended while stopped.")]
    if state is F:
        return [Step.message("info", "Machine is already suspended.")]
    return [Step.message("info", "Suspending machine..."), Step.driver(DriverCall.SUSPEND)]


def _plan_resume(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return []
    if state is R:
        return [ALREADY_RUNNING]
    return [
        Step.message("info", "Resuming machine..."),
        Step.driver(DriverCall.RESUME),
        *POST_BOOT,
    ]


def _plan_reload(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return []
    if state is S:
        return [Step.message("info", "Starting machine..."), Step.driver(DriverCall.RESUME)]
    return [
        Step.message("info", "Stopping machine..."),
        Step.driver(DriverCall.HALT),
        Step.message("info", "Starting machine..."),
        Step.driver(DriverCall.RESUME),
    ]


def _plan_destroy(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return [Step.message("info", "Machine has not been created.")]
    return [
        Step.confirm(
            "Are you sure you want to destroy this machine?",
            declined="Machine will not be destroyed.",
        ),
        Step.driver(DriverCall.HALT),
        Step.message("info", "Destroying machine and associated data..."),
        Step.driver(DriverCall.DESTROY),
    ]


def _plan_provision(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
    if state is NC:
        return []
    return [Step.run_hook(Hook.PROVISION)]


def _snapshot_planner(call: DriverCall, needs_name: bool, message: Optional[str]):
    def _plan_snapshot(state: CanonicalState, snapshot_name: Optional[str]) -> List[Step]:
        if needs_name and not snapshot_name:
            raise ValueError(f"{call.value} requires a snapshot name")
        if state is NC:
            return [NOT_CREATED_WARNING]

        steps = []
        if message:
            steps.append(Step.message("info", message.format(name=snapshot_name)))
        args = (snapshot_name,) if needs_name else ()
        steps.append(Step.driver(call, *args))
        return steps

    return _plan_snapshot


PLANNERS: Dict[Operation, Callable[[CanonicalState, Optional[str]], List[Step]]] = {
    Operation.UP: _plan_up,
    Operation.HALT: _plan_halt,
    Operation.SUSPEND: _plan_suspend,
    Operation.RESUME: _plan_resume,
    Operation.RELOAD: _plan_reload,
    Operation.DESTROY: _plan_destroy,
    Operation.PROVISION: _plan_provision,
    Operation.SNAPSHOT_LIST: _snapshot_planner(DriverCall.SNAPSHOT_LIST, False, None),
    Operation.SNAPSHOT_SAVE: _snapshot_planner(
        DriverCall.SNAPSHOT_SAVE, True, "Saving snapshot '{name}'..."
    ),
    Operation.SNAPSHOT_RESTORE: _snapshot_planner(
        DriverCall.SNAPSHOT_RESTORE, True, "Restoring snapshot '{name}'..."
    ),
    Operation.SNAPSHOT_DELETE: _snapshot_planner(
        DriverCall.SNAPSHOT_DELETE, True, "Deleting snapshot '{name}'..."
    ),
}


def plan(
    operation: Operation,
    state: CanonicalState,
    snapshot_name: Optional[str] = None,
) -> List[Step]:
    """Build the ordered steps for an operation in the given state.

    Args:
        operation: Requested top-level operation
        state: State observed before the operation starts
        snapshot_name: Required for snapshot save/restore/delete

    Returns:
        Steps starting with a validation step; an empty tail means no-op
    """
    return [Step.validate(), *PLANNERS[operation](state, snapshot_name)]


def compose(operation: Operation, probe, snapshot_name: Optional[str] = None) -> List[Step]:
    """Probe the state once and plan the operation.

    A status outside the canonical states becomes an explicit error plan.

    Args:
        operation: Requested top-level operation
        probe: Anything with a `state()` method returning CanonicalState
        snapshot_name: Passed through to plan()
    """
    try:
        state = probe.state()
    except UnknownContainerState as e:
        return [
            Step.validate(),
            Step.error(f"Machine cannot be {operation.verb} while {e.context.get('status')}."),
        ]
    return plan(operation, state, snapshot_name)
