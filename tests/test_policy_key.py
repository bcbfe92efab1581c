import pytest

from iam.features.authorization.exceptions import InvalidPolicyDataError
from iam.features.authorization.policy_key import (
    encode_policy_map_key,
    policy_map_key,
)
from iam.features.authorization.schemas import Permission, PolicyRecord


def test_encode_format():
    assert encode_policy_map_key("doc", "edit") == "$doc$edit"


def test_encode_is_deterministic_for_records_and_requests():
    record = PolicyRecord(id="p1", resource="doc", action="edit")
    requested = Permission(resource="doc", action="edit")
    assert policy_map_key(record) == policy_map_key(requested) == "$doc$edit"


@pytest.mark.parametrize(
    "resource,action",
    [
        ("", "edit"),
        ("doc", ""),
        ("a$b", "c"),
        ("a", "b$c"),
        (None, "edit"),
    ],
)
def test_encode_rejects_ambiguous_components(resource, action):
    with pytest.raises(InvalidPolicyDataError) as exc_info:
        encode_policy_map_key(resource, action)
    assert exc_info.value.status_code == 400


def test_colliding_inputs_are_rejected_not_merged():
    # ("a$b", "c") and ("a", "b$c") would both encode to "$a$b$c"
    with pytest.raises(InvalidPolicyDataError):
        encode_policy_map_key("a$b", "c")
    with pytest.raises(InvalidPolicyDataError):
        encode_policy_map_key("a", "b$c")
