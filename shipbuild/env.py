"""Merging of container environment variable lists."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class FieldSelector:
    """Selects a field of the running object as the source of a value."""

    field_path: str


@dataclass(frozen=True)
class EnvVar:
    """A named environment variable with a literal value or a value source."""

    name: str
    value: str = ""
    value_from: FieldSelector | None = None


class EnvMergeError(ValueError):
    """Raised when a merge meets names that already exist.

    ``result`` holds the list as far as it could be merged.
    """

    def __init__(self, errors: list[str], result: list[EnvVar]) -> None:
        self.errors = list(errors)
        self.result = list(result)
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = "[" + ", ".join(self.errors) + "]"
        super().__init__(message)


def merge_env_vars(
    new: Iterable[EnvVar] | None,
    into: Iterable[EnvVar] | None,
    overwrite_values: bool,
) -> list[EnvVar]:
    """Merge ``new`` into ``into`` and return the merged list.

    A name already present in ``into`` replaces the old entry when
    ``overwrite_values`` is true; otherwise it is an error, reported through
    :class:`EnvMergeError` once all variables have been processed.
    """
    new_vars = list(new or ())
    merged = list(into or ())

    if not new_vars:
        return merged
    if not merged:
        return new_vars

    positions = {var.name: index for index, var in enumerate(merged)}
    errors: list[str] = []

    for var in new_vars:
        index = positions.get(var.name)
        if index is None:
            merged.append(var)
        elif overwrite_values:
            merged[index] = var
        else:
            errors.append(f'environment variable "{var.name}" already exists')

    if errors:
        raise EnvMergeError(errors, merged)
    return merged