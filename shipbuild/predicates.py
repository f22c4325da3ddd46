"""Event filters and request mapping for the BuildRun controller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from shipbuild.objects import LABEL_BUILD, LABEL_BUILD_RUN, SUCCEEDED, BuildRun, Request, TaskRun

CONTROLLER_NAME = "buildrun-controller"


@dataclass
class ControllerOptions:
    """How the controller is run."""

    reconciler: Any
    name: str = CONTROLLER_NAME
    max_concurrent_reconciles: int = 1


def build_run_create(build_run: BuildRun) -> bool:
    """Reconcile created BuildRuns that have neither a TaskRun nor a completion."""
    return build_run.latest_task_run_ref is None and build_run.completion_time is None


def build_run_update(old: BuildRun, new: BuildRun) -> bool:
    """Reconcile BuildRun updates only when their generation changed."""
    if not old.labels.get(LABEL_BUILD, ""):
        return False
    if old.latest_task_run_ref is not None and not new.is_canceled():
        return False
    if old.completion_time is not None:
        return False
    return old.generation != new.generation


def build_run_delete(build_run: BuildRun) -> bool:
    """Deleted BuildRuns need no reconciliation."""
    return False


def task_run_update(old: TaskRun, new: TaskRun) -> bool:
    """Reconcile when a TaskRun starts reporting or its reason changes."""
    new_condition = new.get_condition(SUCCEEDED)
    if old.start_time is None and new_condition is not None:
        return True
    old_condition = old.get_condition(SUCCEEDED)
    if old_condition is not None and new_condition is not None:
        return old_condition.reason != new_condition.reason
    return False


def task_run_delete(task_run: TaskRun) -> bool:
    """Reconcile TaskRuns deleted before they completed."""
    return task_run.completion_time is None


def task_run_to_requests(task_run: TaskRun) -> list[Request]:
    """Map a TaskRun event to a request, if the TaskRun belongs to a BuildRun."""
    if not task_run.labels.get(LABEL_BUILD_RUN, ""):
        return []
    return [Request(namespace=task_run.namespace, name=task_run.name)]


def controller_options(reconciler: Any, max_concurrent_reconciles: int = 0) -> ControllerOptions:
    """Options for the controller; a non-positive concurrency keeps the default."""
    options = ControllerOptions(reconciler=reconciler)
    if max_concurrent_reconciles > 0:
        options.max_concurrent_reconciles = max_concurrent_reconciles
    return options