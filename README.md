# shipbuild

Building blocks of a container build controller: the logic that drives a
`BuildRun` from its `Build` to a `TaskRun` and mirrors the `TaskRun` state
back, together with the helpers it relies on. It has no dependencies beyond
the standard library.

## Modules

- `shipbuild.env` – `merge_env_vars(new, into, overwrite_values)` merges
  lists of `EnvVar` values (a name with a literal `value` or a
  `value_from` `FieldSelector`). A name already present is replaced when
  `overwrite_values` is true; otherwise all new variables are processed and
  then `EnvMergeError` is raised, with the messages in `errors` and the
  partly merged list in `result`.
- `shipbuild.git` – `parse_endpoint(url)` sorts a URL, an scp-like address
  (`user@host:path`) or a local path into an `Endpoint` with protocol, host,
  port, path and user. `validate_git_url_exists(url_path, timeout)` raises
  `GitValidationError` when a source URL is not usable: a local path gives
  `invalid source url`, an SSH address gives
  `the source url requires authentication`, and an HTTP(S) URL is checked by
  fetching the remote's reference advertisement with `list_remote_refs`; an
  authentication challenge is reported as `remote repository unreachable`.
- `shipbuild.metrics` – `CounterVec`, `HistogramVec` and `Registry`, plus the
  build metrics. `init_prometheus(config, registry)` creates and registers
  the counters `build_builds_registered_total` and
  `build_buildruns_completed_total` and the establish, completion and
  ramp-up duration histograms, with the labels enabled in `MetricsConfig`
  (`buildstrategy`, `namespace`, `build`, `buildrun`). It works only once
  per process; later calls do nothing. Before it is called, the recording
  functions (`build_count_inc`, `build_run_count_inc`,
  `build_run_establish_observe`, `build_run_completion_observe`,
  `build_run_ramp_up_duration_observe`, `task_run_ramp_up_duration_observe`,
  `task_run_pod_ramp_up_duration_observe`) do nothing. Durations may be
  `timedelta` values or seconds. `Registry.gather()` returns one
  `MetricFamily` per collector that has samples, sorted by name.
- `shipbuild.objects` – data classes for `Build`, `BuildSpec`, `Strategy`,
  `BuildRun`, `TaskRun`, `Pod`, `ContainerStatus`, `ServiceAccount`,
  `Condition`, `OwnerReference` and `Request`, the `ConditionStatus` and
  `StrategyKind` enums, and `NotFoundError`.
- `shipbuild.predicates` – the event filters that decide which BuildRun and
  TaskRun events are reconciled (`build_run_create`, `build_run_update`,
  `build_run_delete`, `task_run_update`, `task_run_delete`),
  `task_run_to_requests`, and `controller_options`.
- `shipbuild.reconciler` – `Reconciler.reconcile(request)` runs against a
  `KubeClient`, an in-memory object store keyed by kind, namespace and name
  that counts every call in `calls`. Failures are written to the BuildRun's
  `Succeeded` condition; a failed status write raises
  `ClientStatusUpdateError`. Helpers: `extract_build_run_name`,
  `json_patch_payload` and `is_valid_label_value`.

## Examples

```python
from shipbuild.env import EnvVar, merge_env_vars

merged = merge_env_vars(
    [EnvVar(name="TWO", value="new")],
    [EnvVar(name="ONE", value="1"), EnvVar(name="TWO", value="2")],
    overwrite_values=True,
)
# [EnvVar(name='ONE', value='1', value_from=None),
#  EnvVar(name='TWO', value='new', value_from=None)]
```

```python
from datetime import timedelta
from shipbuild import metrics

registry = metrics.Registry()
metrics.init_prometheus(
    metrics.MetricsConfig(enabled_labels=["buildstrategy", "namespace"]),
    registry,
)
metrics.build_run_completion_observe(
    "kaniko", "default", "my-build", "my-run", timedelta(seconds=200)
)
for family in registry.gather():
    print(family.name, [(s.labels, s.sum, s.count) for s in family.samples])
```

```python
from types import SimpleNamespace

from shipbuild.objects import (
    LABEL_BUILD_RUN, Build, BuildRun, BuildSpec, ConditionStatus, Request,
    ServiceAccount, Strategy, StrategyKind, TaskRun,
)
from shipbuild.reconciler import KubeClient, Reconciler

client = KubeClient(
    Build(
        name="app",
        registered=ConditionStatus.TRUE,
        spec=BuildSpec(strategy=Strategy(name="kaniko", kind=StrategyKind.NAMESPACED)),
    ),
    BuildRun(name="app-run", build_ref="app"),
    ServiceAccount(name="pipeline"),
)
client.add(SimpleNamespace(name="kaniko", namespace=""), kind="BuildStrategy")

def generate_task_run(build, build_run, service_account, strategy):
    return TaskRun(
        generate_name=build_run.name + "-",
        namespace=build_run.namespace,
        labels={LABEL_BUILD_RUN: build_run.name},
    )

Reconciler(client, generate_task_run).reconcile(Request(namespace="", name="app-run"))
assert client.calls["create"] == 1
```

## What it does not do

- It does not talk to a cluster. `KubeClient` keeps objects in memory; there
  is no watch loop or manager that feeds requests to `Reconciler`, and
  `ControllerOptions` only describes how such a controller would be run.
- It does not build `TaskRun` objects from a strategy: the caller passes a
  `generate_task_run` function to `Reconciler`.
- It does not serve metrics over HTTP. `extra_handlers()` returns an empty
  mapping for the caller to fill.
- It has no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```