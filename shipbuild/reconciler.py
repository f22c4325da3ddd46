"""Reconciliation of BuildRuns and the TaskRuns that execute them."""

from __future__ import annotations

import copy
import json
import logging
import random
import re
import string
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from shipbuild import metrics
from shipbuild.objects import (
    ANNOTATION_BUILD_RUN_DELETION,
    BUILD_RUN_STATE_CANCEL,
    LABEL_BUILD,
    LABEL_BUILD_GENERATION,
    LABEL_BUILD_RUN,
    SET_OWNER_REFERENCE_FAILED,
    SUCCEEDED,
    TASK_RUN_SPEC_STATUS_CANCELLED,
    Build,
    BuildRun,
    Condition,
    ConditionStatus,
    NotFoundError,
    OwnerReference,
    Request,
    ServiceAccount,
    StrategyKind,
    TaskRun,
)

log = logging.getLogger(__name__)

BUILD_RUN_NAME_INVALID = "BuildRunNameInvalid"
BUILD_NOT_FOUND = "BuildNotFound"
BUILD_REGISTRATION_FAILED = "BuildRegistrationFailed"
SERVICE_ACCOUNT_NOT_FOUND = "ServiceAccountNotFound"
BUILD_STRATEGY_NOT_FOUND = "BuildStrategyNotFound"
CLUSTER_BUILD_STRATEGY_NOT_FOUND = "ClusterBuildStrategyNotFound"
UNKNOWN_STRATEGY_KIND = "UnknownStrategyKind"
TASK_RUN_IS_MISSING = "TaskRunIsMissing"
TASK_RUN_GENERATION_FAILED = "TaskRunGenerationFailed"
TASK_RUN_REASON_CANCELLED = "TaskRunCancelled"

API_VERSION = "shipwright.io/v1alpha1"

_GENERATED_NAME_RE = re.compile(r"-[a-z0-9]{5}$")
_LABEL_VALUE_FMT = r"(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?"
_LABEL_VALUE_RE = re.compile(_LABEL_VALUE_FMT)
_LABEL_VALUE_MAX_LENGTH = 63
_LABEL_VALUE_ERROR = (
    "a valid label must be an empty string or consist of alphanumeric characters, "
    "'-', '_' or '.', and must start and end with an alphanumeric character "
    "(e.g. 'MyValue',  or 'my_value',  or '12345', regex used for validation is '"
    + _LABEL_VALUE_FMT
    + "')"
)
_NAME_ALPHABET = string.ascii_lowercase + string.digits


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _text(value: Any) -> str:
    return str(getattr(value, "value", value))


class ClientStatusUpdateError(RuntimeError):
    """Raised when a status update that records a failure could not be written."""

    def __init__(
        self,
        message: str,
        error: BaseException | None = None,
        update_error: BaseException | None = None,
    ) -> None:
        self.error = error
        self.update_error = update_error
        details = [str(e) for e in (error, update_error) if e is not None]
        super().__init__(": ".join([message, *details]) if details else message)


@dataclass(frozen=True)
class Result:
    """The outcome of a reconciliation that did not raise."""

    requeue: bool = False
    requeue_after: float = 0.0


def extract_build_run_name(task_run_name: str) -> str | None:
    """The BuildRun name behind a generated TaskRun name, or ``None``."""
    match = _GENERATED_NAME_RE.search(task_run_name)
    if match is None:
        return None
    return task_run_name[: match.start()]


def json_patch_payload(op: str, path: str, value: str) -> bytes:
    """A JSON patch document holding a single string operation."""
    return json.dumps([{"op": op, "path": path, "value": value}], separators=(",", ":")).encode()


def is_valid_label_value(value: str) -> list[str]:
    """The reasons why ``value`` is not a valid label value; empty when it is."""
    errors = []
    if len(value) > _LABEL_VALUE_MAX_LENGTH:
        errors.append(f"must be no more than {_LABEL_VALUE_MAX_LENGTH} characters")
    if not _LABEL_VALUE_RE.fullmatch(value):
        errors.append(_LABEL_VALUE_ERROR)
    return errors


class KubeClient:
    """An in-memory object store offering the calls the reconciler makes.

    Objects are keyed by kind, namespace and name; the kind defaults to the
    class name of the object. Every call is counted in ``calls``.
    """

    def __init__(self, *objects: Any) -> None:
        self._store: dict[tuple[str, str, str], Any] = {}
        self.calls: Counter[str] = Counter()
        self.patches: list[tuple[str, bytes]] = []
        for obj in objects:
            self.add(obj)

    @staticmethod
    def _key(obj: Any, kind: str | None) -> tuple[str, str, str]:
        return (kind or type(obj).__name__, getattr(obj, "namespace", ""), obj.name)

    def _existing(self, obj: Any, kind: str | None) -> tuple[str, str, str]:
        key = self._key(obj, kind)
        if key not in self._store:
            raise NotFoundError(obj.name)
        return key

    def add(self, obj: Any, kind: str | None = None) -> None:
        """Store an object without counting a call."""
        self._store[self._key(obj, kind)] = copy.deepcopy(obj)

    def get(self, kind: str, namespace: str, name: str) -> Any:
        self.calls["get"] += 1
        try:
            return copy.deepcopy(self._store[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(name) from None

    def create(self, obj: Any, kind: str | None = None) -> None:
        self.calls["create"] += 1
        if not obj.name and getattr(obj, "generate_name", ""):
            obj.name = obj.generate_name + "".join(random.choices(_NAME_ALPHABET, k=5))
        key = self._key(obj, kind)
        if key in self._store:
            raise ValueError(f'{key[0]} "{obj.name}" already exists')
        self._store[key] = copy.deepcopy(obj)

    def update(self, obj: Any, kind: str | None = None) -> None:
        self.calls["update"] += 1
        self._store[self._existing(obj, kind)] = copy.deepcopy(obj)

    def update_status(self, obj: Any, kind: str | None = None) -> None:
        self.calls["update_status"] += 1
        self._store[self._existing(obj, kind)] = copy.deepcopy(obj)

    def patch(self, obj: Any, patch: bytes, kind: str | None = None) -> None:
        self.calls["patch"] += 1
        key = self._existing(obj, kind)
        stored = self._store[key]
        for operation in json.loads(patch):
            if operation.get("op") != "replace" or operation.get("path") != "/spec/status":
                raise ValueError(f"unsupported patch operation: {operation}")
            stored.spec_status = operation["value"]
            obj.spec_status = operation["value"]
        self.patches.append((obj.name, patch))

    def delete(self, obj: Any, kind: str | None = None) -> None:
        self.calls["delete"] += 1
        del self._store[self._existing(obj, kind)]


def _set_controller_reference(owner: Any, obj: Any) -> None:
    """Make ``owner`` the managing controller of ``obj``."""
    owner_namespace = getattr(owner, "namespace", "")
    if owner_namespace and owner_namespace != obj.namespace:
        raise ValueError(
            "cross-namespace owner references are disallowed, "
            f"owner's namespace {owner_namespace}, obj's namespace {obj.namespace}"
        )
    reference = OwnerReference(
        api_version=API_VERSION,
        kind=type(owner).__name__,
        name=owner.name,
        controller=True,
        block_owner_deletion=True,
    )
    for existing in obj.owner_references:
        if existing.controller and (existing.kind, existing.name) != (reference.kind, reference.name):
            raise ValueError(
                f"Object {obj.namespace}/{obj.name} is already owned by another "
                f"{existing.kind} controller {existing.name}"
            )
    obj.owner_references = [
        ref
        for ref in obj.owner_references
        if (ref.kind, ref.name) != (reference.kind, reference.name)
    ]
    obj.owner_references.append(reference)


def _is_owned_by_build(build: Build, references: list[OwnerReference]) -> bool:
    return any(ref.kind == "Build" and ref.name == build.name for ref in references)


def _metric_args(build_run: BuildRun) -> tuple[str, str, str, str]:
    spec = build_run.build_spec
    strategy = spec.strategy_name() if spec is not None else ""
    return strategy, build_run.namespace, build_run.build_ref, build_run.name


TaskRunGenerator = Callable[[Build, BuildRun, str, Any], TaskRun]
OwnerReferenceSetter = Callable[[Any, Any], None]


class Reconciler:
    """Drives a BuildRun towards a TaskRun and mirrors the TaskRun state back."""

    def __init__(
        self,
        client: KubeClient,
        generate_task_run: TaskRunGenerator,
        set_owner_reference: OwnerReferenceSetter | None = None,
        default_service_account: str = "pipeline",
    ) -> None:
        self._client = client
        self._generate_task_run = generate_task_run
        self._set_owner_reference = set_owner_reference or _set_controller_reference
        self._default_service_account = default_service_account

    def get_build_run_object(self, name: str, namespace: str) -> BuildRun:
        """Fetch a BuildRun; raises :class:`NotFoundError` when it is missing."""
        return self._client.get("BuildRun", namespace, name)

    def verify_request_name(self, request: Request) -> None:
        """Fail the BuildRun behind a missing generated TaskRun, if it is still running."""
        build_run_name = extract_build_run_name(request.name)
        if build_run_name is None:
            return
        try:
            build_run = self.get_build_run_object(build_run_name, request.namespace)
        except Exception:
            return
        if build_run.completion_time is None:
            try:
                self._fail(build_run, f"taskRun {request.name} doesn't exist", TASK_RUN_IS_MISSING)
            except ClientStatusUpdateError:
                # Nothing more can be done for a BuildRun whose TaskRun is gone.
                pass

    def reconcile(self, request: Request) -> Result:
        """Reconcile the BuildRun or TaskRun named by ``request``."""
        log.debug("starting reconciling request %s/%s", request.namespace, request.name)

        build_run_error: Exception | None = None
        task_run_error: Exception | None = None
        build_run = BuildRun()
        task_run: TaskRun | None = None
        try:
            build_run = self.get_build_run_object(request.name, request.namespace)
        except Exception as exc:
            build_run_error = exc
        try:
            task_run = self._client.get("TaskRun", request.namespace, request.name)
        except Exception as exc:
            task_run_error = exc

        if build_run_error is not None and task_run_error is not None:
            if not isinstance(build_run_error, NotFoundError):
                raise build_run_error
            if not isinstance(task_run_error, NotFoundError):
                raise task_run_error
            self.verify_request_name(request)
            return Result()

        errors = is_valid_label_value(build_run.name)
        if errors:
            self._fail(build_run, ", ".join(errors), BUILD_RUN_NAME_INVALID)
            return Result()

        if (
            build_run_error is None
            and isinstance(task_run_error, NotFoundError)
            and build_run.latest_task_run_ref is not None
        ):
            try:
                task_run = self._client.get(
                    "TaskRun", request.namespace, build_run.latest_task_run_ref
                )
                task_run_error = None
            except Exception as exc:
                task_run_error = exc

        if task_run_error is not None:
            if not isinstance(task_run_error, NotFoundError):
                raise task_run_error
            result = self._start(request, build_run)
        else:
            result = self._sync(request, build_run, build_run_error, task_run)

        log.debug("finishing reconciling request %s/%s", request.namespace, request.name)
        return result

    @staticmethod
    def _settled(exc: Exception, build_run: BuildRun) -> bool:
        return not isinstance(exc, ClientStatusUpdateError) and build_run.is_failed(SUCCEEDED)

    def _fail(self, build_run: BuildRun, message: str, reason: str) -> None:
        build_run.set_condition(
            Condition(
                type=SUCCEEDED,
                status=ConditionStatus.FALSE,
                reason=reason,
                message=message,
                last_transition_time=_now(),
            )
        )
        try:
            self._client.update_status(build_run)
        except Exception as exc:
            raise ClientStatusUpdateError(
                f"failed to update the status of BuildRun {build_run.name}", update_error=exc
            ) from exc

    def _start(self, request: Request, build_run: BuildRun) -> Result:
        try:
            build = self._get_build(build_run)
        except Exception as exc:
            if self._settled(exc, build_run):
                return Result()
            raise

        if not build.registered:
            raise RuntimeError(f"the Build is not yet validated, build: {build.name}")

        if build.registered != ConditionStatus.TRUE:
            message = (
                f"the Build is not registered correctly, build: {build.name}, "
                f"registered status: {_text(build.registered)}, reason: {build.reason}"
            )
            self._fail(build_run, message, BUILD_REGISTRATION_FAILED)
            return Result()

        if build_run.is_canceled():
            self._fail(build_run, "the BuildRun is marked canceled.", BUILD_RUN_STATE_CANCEL)
            return Result()

        update_required = False
        if build.annotations.get(ANNOTATION_BUILD_RUN_DELETION) == "true" and not _is_owned_by_build(
            build, build_run.owner_references
        ):
            try:
                self._set_owner_reference(build, build_run)
            except Exception as exc:
                build.reason = SET_OWNER_REFERENCE_FAILED
                build.message = f"unexpected error when trying to set the ownerreference: {exc}"
                self._client.update_status(build)
            log.info("updating BuildRun %s OwnerReferences, owner is Build %s", build_run.name, build.name)
            update_required = True

        generation = str(build.generation)
        if (
            build_run.labels.get(LABEL_BUILD) != build.name
            or build_run.labels.get(LABEL_BUILD_GENERATION) != generation
        ):
            build_run.labels[LABEL_BUILD] = build.name
            build_run.labels[LABEL_BUILD_GENERATION] = generation
            update_required = True

        if update_required:
            self._client.update(build_run)

        build_run.build_spec = copy.deepcopy(build.spec)
        self._client.update_status(build_run)

        try:
            service_account = self._retrieve_service_account(build_run)
            strategy = self._get_referenced_strategy(build, build_run)
            task_run = self._create_task_run(service_account, strategy, build, build_run)
        except Exception as exc:
            if self._settled(exc, build_run):
                return Result()
            raise

        self._client.create(task_run)

        build_run.latest_task_run_ref = task_run.name
        try:
            self._client.update_status(build_run)
        except Exception:
            # Another reconciliation would create a second TaskRun; the reference
            # is also set when the TaskRun events come in.
            log.exception("failed to update BuildRun status is ignored")

        args = _metric_args(build_run)
        metrics.build_run_count_inc(*args)
        metrics.build_run_ramp_up_duration_observe(
            *args, task_run.creation_timestamp - build_run.creation_timestamp
        )
        return Result()

    def _sync(
        self,
        request: Request,
        build_run: BuildRun,
        build_run_error: Exception | None,
        task_run: TaskRun,
    ) -> Result:
        if build_run_error is not None:
            if not isinstance(build_run_error, NotFoundError):
                raise build_run_error
            try:
                build_run = self.get_build_run_object(
                    task_run.labels.get(LABEL_BUILD_RUN, ""), request.namespace
                )
            except NotFoundError:
                return Result()

        if build_run.is_canceled() and not task_run.is_cancelled():
            self._client.patch(
                task_run,
                json_patch_payload("replace", "/spec/status", TASK_RUN_SPEC_STATUS_CANCELLED),
            )

        if build_run.completion_time is not None:
            return Result()

        if task_run.results:
            build_run.results.update(task_run.results)

        condition = task_run.get_condition(SUCCEEDED)
        if condition is None:
            return Result()

        reason = condition.reason
        if build_run.is_canceled() and reason == TASK_RUN_REASON_CANCELLED:
            reason = BUILD_RUN_STATE_CANCEL
        build_run.set_condition(
            Condition(
                type=SUCCEEDED,
                status=condition.status,
                reason=reason,
                message=condition.message,
                last_transition_time=_now(),
            )
        )

        if condition.status in (ConditionStatus.TRUE, ConditionStatus.FALSE):
            self._delete_service_account(build_run)

        build_run.latest_task_run_ref = task_run.name
        args = _metric_args(build_run)

        if build_run.start_time is None and task_run.start_time is not None:
            build_run.start_time = task_run.start_time
            metrics.build_run_establish_observe(
                *args, build_run.start_time - build_run.creation_timestamp
            )

        if task_run.completion_time is not None and build_run.completion_time is None:
            build_run.completion_time = task_run.completion_time
            metrics.build_run_completion_observe(
                *args, build_run.completion_time - build_run.creation_timestamp
            )
            self._observe_pod(request, task_run, args)

        self._client.update_status(build_run)
        return Result()

    def _observe_pod(self, request: Request, task_run: TaskRun, args: tuple[str, ...]) -> None:
        try:
            pod = self._client.get("Pod", request.namespace, task_run.pod_name)
        except Exception:
            # Pod metrics are best effort.
            return
        if pod.init_container_statuses:
            last = pod.init_container_statuses[-1]
            if last.finished_at is not None:
                metrics.task_run_pod_ramp_up_duration_observe(
                    *args, last.finished_at - pod.creation_timestamp
                )
        metrics.task_run_ramp_up_duration_observe(
            *args, pod.creation_timestamp - task_run.creation_timestamp
        )

    def _get_build(self, build_run: BuildRun) -> Build:
        try:
            return self._client.get("Build", build_run.namespace, build_run.build_ref)
        except NotFoundError as exc:
            self._fail(build_run, f'build.shipwright.io "{build_run.build_ref}" not found', BUILD_NOT_FOUND)
            raise exc

    def _retrieve_service_account(self, build_run: BuildRun) -> ServiceAccount:
        if build_run.generate_service_account:
            try:
                return self._client.get("ServiceAccount", build_run.namespace, build_run.name)
            except NotFoundError:
                account = ServiceAccount(name=build_run.name, namespace=build_run.namespace)
                _set_controller_reference(build_run, account)
                self._client.create(account)
                return account

        name = build_run.service_account or self._default_service_account
        try:
            return self._client.get("ServiceAccount", build_run.namespace, name)
        except NotFoundError:
            self._fail(build_run, f"service account {name} not found", SERVICE_ACCOUNT_NOT_FOUND)
            raise

    def _delete_service_account(self, build_run: BuildRun) -> None:
        if not build_run.generate_service_account:
            return
        try:
            self._client.delete(ServiceAccount(name=build_run.name, namespace=build_run.namespace))
        except NotFoundError:
            pass

    def _retrieve_strategy(self, build_run: BuildRun, kind: str, namespace: str, name: str, reason: str):
        try:
            return self._client.get(kind, namespace, name)
        except NotFoundError as exc:
            try:
                self._fail(build_run, str(exc), reason)
            except ClientStatusUpdateError as update_exc:
                raise ClientStatusUpdateError(
                    "failed to get referenced strategy", exc, update_exc.update_error
                ) from update_exc
            raise

    def _get_referenced_strategy(self, build: Build, build_run: BuildRun) -> Any:
        strategy = build.spec.strategy
        name = strategy.name if strategy is not None else ""
        kind = strategy.kind if strategy is not None else None

        if kind is None or kind == StrategyKind.NAMESPACED:
            return self._retrieve_strategy(
                build_run, StrategyKind.NAMESPACED.value, build.namespace, name, BUILD_STRATEGY_NOT_FOUND
            )
        if kind == StrategyKind.CLUSTER:
            return self._retrieve_strategy(
                build_run, StrategyKind.CLUSTER.value, "", name, CLUSTER_BUILD_STRATEGY_NOT_FOUND
            )

        error = ValueError(f"unknown strategy {_text(kind)}")
        try:
            self._fail(build_run, str(error), UNKNOWN_STRATEGY_KIND)
        except ClientStatusUpdateError as update_exc:
            raise ClientStatusUpdateError(
                "failed to get referenced strategy", error, update_exc.update_error
            ) from update_exc
        raise error

    def _create_task_run(
        self, service_account: ServiceAccount, strategy: Any, build: Build, build_run: BuildRun
    ) -> TaskRun:
        for step in ("generate", "own"):
            try:
                if step == "generate":
                    task_run = self._generate_task_run(build, build_run, service_account.name, strategy)
                    reason = TASK_RUN_GENERATION_FAILED
                else:
                    reason = SET_OWNER_REFERENCE_FAILED
                    self._set_owner_reference(build_run, task_run)
            except Exception as exc:
                if step == "generate":
                    reason = TASK_RUN_GENERATION_FAILED
                try:
                    self._fail(build_run, str(exc), reason)
                except ClientStatusUpdateError as update_exc:
                    raise ClientStatusUpdateError(
                        "failed to create taskrun runtime object", exc, update_exc.update_error
                    ) from update_exc
                raise
        return task_run