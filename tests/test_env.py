import pytest

from shipbuild.env import EnvMergeError, EnvVar, FieldSelector, merge_env_vars

ONE = EnvVar("ONE", "oneValue")
TWO = EnvVar("TWO", "twoValue")
THREE = EnvVar("THREE", "threeValue")
FOUR = EnvVar("FOUR", "fourValue")
TWO_FROM = EnvVar("TWO", value_from=FieldSelector("my-field-path"))
THREE_FROM = EnvVar("THREE", value_from=FieldSelector("my-field-path"))


@pytest.mark.parametrize(
    ("new", "into", "overwrite", "want"),
    [
        (None, None, False, []),
        ([], [], True, []),
        ([], [ONE, TWO], True, [ONE, TWO]),
        ([ONE, TWO], [], True, [ONE, TWO]),
        ([EnvVar("TWO", "newTwoValue")], [ONE, TWO], True, [ONE, EnvVar("TWO", "newTwoValue")]),
        ([TWO_FROM], [ONE, TWO], True, [ONE, TWO_FROM]),
        ([THREE, FOUR], [ONE, TWO], False, [ONE, TWO, THREE, FOUR]),
        ([THREE_FROM, FOUR], [ONE, TWO], False, [ONE, TWO, THREE_FROM, FOUR]),
        ([THREE, FOUR], [ONE, TWO], True, [ONE, TWO, THREE, FOUR]),
        ([THREE_FROM, FOUR], [ONE, TWO], True, [ONE, TWO, THREE_FROM, FOUR]),
    ],
)
def test_merge_succeeds(new, into, overwrite, want):
    assert merge_env_vars(new, into, overwrite) == want


@pytest.mark.parametrize(
    "new",
    [[EnvVar("TWO", "twoValueNew")], [TWO_FROM]],
)
def test_duplicate_names_fail_without_overwrite(new):
    with pytest.raises(EnvMergeError) as info:
        merge_env_vars(new, [ONE, TWO], False)
    assert info.value.result == [ONE, TWO]
    assert str(info.value) == 'environment variable "TWO" already exists'


def test_multiple_duplicates_are_aggregated():
    with pytest.raises(EnvMergeError) as info:
        merge_env_vars([EnvVar("ONE", "x"), EnvVar("TWO", "y")], [ONE, TWO], False)
    assert info.value.errors == [
        'environment variable "ONE" already exists',
        'environment variable "TWO" already exists',
    ]
    assert str(info.value).startswith("[")


def test_merge_does_not_modify_input():
    into = [ONE, TWO]
    merge_env_vars([EnvVar("TWO", "changed")], into, True)
    assert into == [ONE, TWO]