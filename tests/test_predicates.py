from datetime import datetime, timezone

from shipbuild.objects import (
    BUILD_RUN_STATE_CANCEL,
    LABEL_BUILD,
    LABEL_BUILD_RUN,
    SUCCEEDED,
    BuildRun,
    Condition,
    ConditionStatus,
    Request,
    TaskRun,
)
from shipbuild.predicates import (
    build_run_create,
    build_run_delete,
    build_run_update,
    controller_options,
    task_run_delete,
    task_run_to_requests,
    task_run_update,
)

NOW = datetime.now(timezone.utc)


def _labelled(**kwargs):
    return BuildRun(name="foobar-buildrun", labels={LABEL_BUILD: "foobar-build"}, **kwargs)


def test_build_run_create():
    assert build_run_create(BuildRun(name="foobar-buildrun")) is True
    assert build_run_create(BuildRun(latest_task_run_ref="foobar-buildrun-p8nts")) is False
    assert build_run_create(BuildRun(completion_time=NOW)) is False


def test_build_run_update_requires_build_label():
    assert build_run_update(BuildRun(generation=1), BuildRun(generation=2)) is False


def test_build_run_update_on_generation_change():
    assert build_run_update(_labelled(generation=1), _labelled(generation=2)) is True
    assert build_run_update(_labelled(generation=1), _labelled(generation=1)) is False


def test_build_run_update_with_task_run_only_when_canceled():
    old = _labelled(generation=1, latest_task_run_ref="foobar-buildrun-p8nts")
    assert build_run_update(old, _labelled(generation=2)) is False
    assert build_run_update(old, _labelled(generation=2, state=BUILD_RUN_STATE_CANCEL)) is True


def test_build_run_update_ignores_completed():
    old = _labelled(generation=1, completion_time=NOW)
    assert build_run_update(old, _labelled(generation=2)) is False


def test_build_run_delete_never_reconciles():
    assert build_run_delete(BuildRun(name="foobar-buildrun")) is False


def _condition(reason, status=ConditionStatus.UNKNOWN):
    return Condition(type=SUCCEEDED, status=status, reason=reason)


def test_task_run_update_when_started():
    old = TaskRun(name="foobar-buildrun-p8nts")
    new = TaskRun(name="foobar-buildrun-p8nts", conditions=[_condition("Pending")])
    assert task_run_update(old, new) is True


def test_task_run_update_on_reason_change():
    old = TaskRun(start_time=NOW, conditions=[_condition("Pending")])
    running = TaskRun(start_time=NOW, conditions=[_condition("Running")])
    same = TaskRun(start_time=NOW, conditions=[_condition("Pending")])
    assert task_run_update(old, running) is True
    assert task_run_update(old, same) is False


def test_task_run_update_without_conditions():
    assert task_run_update(TaskRun(start_time=NOW), TaskRun(start_time=NOW)) is False


def test_task_run_delete_only_before_completion():
    assert task_run_delete(TaskRun()) is True
    assert task_run_delete(TaskRun(completion_time=NOW)) is False


def test_task_run_to_requests():
    task_run = TaskRun(
        name="foobar-buildrun-p8nts",
        namespace="default",
        labels={LABEL_BUILD_RUN: "foobar-buildrun"},
    )
    assert task_run_to_requests(task_run) == [
        Request(namespace="default", name="foobar-buildrun-p8nts")
    ]


def test_task_run_to_requests_ignores_unrelated():
    assert task_run_to_requests(TaskRun(name="foobar")) == []
    assert task_run_to_requests(TaskRun(name="foobar", labels={LABEL_BUILD_RUN: ""})) == []


def test_controller_options():
    reconciler = object()
    options = controller_options(reconciler, 5)
    assert options.reconciler is reconciler
    assert options.max_concurrent_reconciles == 5
    assert options.name == "buildrun-controller"
    default = controller_options(reconciler, 0)
    assert default.max_concurrent_reconciles == controller_options(reconciler, -3).max_concurrent_reconciles
    assert default.max_concurrent_reconciles != 0