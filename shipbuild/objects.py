"""Resource objects handled by the BuildRun reconciler."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shipbuild.env import EnvVar

SUCCEEDED = "Succeeded"

LABEL_BUILD = "build.shipwright.io/name"
LABEL_BUILD_GENERATION = "build.shipwright.io/generation"
LABEL_BUILD_RUN = "buildrun.shipwright.io/name"
ANNOTATION_BUILD_RUN_DELETION = "build.shipwright.io/build-run-deletion"

BUILD_RUN_STATE_CANCEL = "BuildRunCanceled"
TASK_RUN_SPEC_STATUS_CANCELLED = "TaskRunCancelled"
SET_OWNER_REFERENCE_FAILED = "SetOwnerReferenceFailed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConditionStatus(str, enum.Enum):
    """The status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class StrategyKind(str, enum.Enum):
    """The scope of a build strategy."""

    NAMESPACED = "BuildStrategy"
    CLUSTER = "ClusterBuildStrategy"


@dataclass
class Condition:
    """A typed status condition with a reason and a message."""

    type: str
    status: ConditionStatus | str = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


@dataclass
class OwnerReference:
    """A reference from an object to the object that owns it."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None


@dataclass
class Strategy:
    """The build strategy a Build refers to; ``kind`` may be left unset."""

    name: str = ""
    kind: StrategyKind | str | None = None


@dataclass
class BuildSpec:
    """What to build and how."""

    strategy: Strategy | None = None
    source_url: str = ""
    output_image: str = ""
    dockerfile: str | None = None
    env: list[EnvVar] = field(default_factory=list)

    def strategy_name(self) -> str:
        """The referenced strategy name, empty when no strategy is set."""
        return self.strategy.name if self.strategy is not None else ""


@dataclass
class Build:
    """A Build definition together with its registration status."""

    name: str = ""
    namespace: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    spec: BuildSpec = field(default_factory=BuildSpec)
    registered: ConditionStatus | str = ""
    reason: str = ""
    message: str = ""


@dataclass
class BuildRun:
    """A single execution of a Build."""

    name: str = ""
    namespace: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: datetime = field(default_factory=_now)
    build_ref: str = ""
    service_account: str | None = None
    generate_service_account: bool = False
    state: str = ""
    env: list[EnvVar] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    latest_task_run_ref: str | None = None
    start_time: datetime | None = None
    completion_time: datetime | None = None
    build_spec: BuildSpec | None = None
    results: dict[str, str] = field(default_factory=dict)

    def is_canceled(self) -> bool:
        """Whether the user asked for this BuildRun to be cancelled."""
        return self.state == BUILD_RUN_STATE_CANCEL

    def get_condition(self, condition_type: str) -> Condition | None:
        """The condition of the given type, if any."""
        return next((c for c in self.conditions if c.type == condition_type), None)

    def is_failed(self, condition_type: str) -> bool:
        """Whether the condition of the given type exists with a false status."""
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status == ConditionStatus.FALSE

    def set_condition(self, condition: Condition) -> None:
        """Add the condition, replacing one of the same type."""
        for index, existing in enumerate(self.conditions):
            if existing.type == condition.type:
                self.conditions[index] = condition
                return
        self.conditions.append(condition)


@dataclass
class TaskRun:
    """The pipeline run that executes the steps of a BuildRun."""

    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: datetime = field(default_factory=_now)
    spec_status: str = ""
    conditions: list[Condition] = field(default_factory=list)
    start_time: datetime | None = None
    completion_time: datetime | None = None
    pod_name: str = ""
    results: dict[str, str] = field(default_factory=dict)

    def is_cancelled(self) -> bool:
        """Whether cancellation has been requested on the spec."""
        return self.spec_status == TASK_RUN_SPEC_STATUS_CANCELLED

    def get_condition(self, condition_type: str) -> Condition | None:
        """The condition of the given type, if any."""
        return next((c for c in self.conditions if c.type == condition_type), None)


@dataclass
class ContainerStatus:
    """The state of one container; ``finished_at`` is set once it terminated."""

    name: str = ""
    finished_at: datetime | None = None


@dataclass
class Pod:
    """The pod a TaskRun runs in."""

    name: str = ""
    namespace: str = ""
    creation_timestamp: datetime = field(default_factory=_now)
    init_container_statuses: list[ContainerStatus] = field(default_factory=list)


@dataclass
class ServiceAccount:
    """The identity a TaskRun runs under."""

    name: str = ""
    namespace: str = ""
    owner_references: list[OwnerReference] = field(default_factory=list)


@dataclass(frozen=True)
class Request:
    """A request to reconcile the object with this namespace and name."""

    namespace: str
    name: str


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, name: str, resource: str = "") -> None:
        self.name = name
        self.resource = resource
        super().__init__(f'{resource} "{name}" not found')