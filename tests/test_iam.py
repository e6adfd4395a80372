"""Scoped policies and role binding."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from gamingvm.errors import PolicyBindingError
from gamingvm.iam import (
    SECRET_POLICY_NAME,
    PolicyBinder,
    assume_role_policy,
    build_scoped_policy,
)
from gamingvm.types import SecretHandle

SECRET = SecretHandle(
    name="test-administrator-password",
    store_arn="arn:aws:ssm:us-east-1:123456789012:parameter/test-administrator-password",
)
ROLE = "test-instance-role"


@pytest.fixture
def bucket_policy_arn(moto_iam):
    document = build_scoped_policy("s3:GetObject", "arn:aws:s3:::game-installers/*")
    return moto_iam.create_policy(
        PolicyName="game-installers-read", PolicyDocument=json.dumps(document)
    )["Policy"]["Arn"]


def test_scoped_policy_has_one_action_one_resource():
    policy = build_scoped_policy("ssm:GetParameter", SECRET.store_arn)
    (statement,) = policy["Statement"]
    assert statement == {
        "Effect": "Allow",
        "Action": "ssm:GetParameter",
        "Resource": SECRET.store_arn,
    }


def test_trust_policy_names_only_ec2():
    (statement,) = assume_role_policy()["Statement"]
    assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}
    assert statement["Action"] == "sts:AssumeRole"


def test_bind_role_creates_everything(moto_iam, bucket_policy_arn):
    handle = PolicyBinder(moto_iam, profile_wait_delay=0).bind_role(
        ROLE, SECRET, bucket_policy_arn
    )

    assert handle.role_name == ROLE
    assert handle.instance_profile_name == ROLE

    inline = moto_iam.get_role_policy(RoleName=ROLE, PolicyName=SECRET_POLICY_NAME)
    document = inline["PolicyDocument"]
    if isinstance(document, str):
        document = json.loads(document)
    assert document["Statement"][0]["Resource"] == SECRET.store_arn

    attached = moto_iam.list_attached_role_policies(RoleName=ROLE)["AttachedPolicies"]
    assert [p["PolicyArn"] for p in attached] == [bucket_policy_arn]

    profile = moto_iam.get_instance_profile(InstanceProfileName=ROLE)["InstanceProfile"]
    assert [r["RoleName"] for r in profile["Roles"]] == [ROLE]


def test_bind_role_is_idempotent(moto_iam, bucket_policy_arn):
    binder = PolicyBinder(moto_iam, profile_wait_delay=0)
    binder.bind_role(ROLE, SECRET, bucket_policy_arn)
    binder.bind_role(ROLE, SECRET, bucket_policy_arn)

    profile = moto_iam.get_instance_profile(InstanceProfileName=ROLE)["InstanceProfile"]
    assert len(profile["Roles"]) == 1
    assert len(moto_iam.list_attached_role_policies(RoleName=ROLE)["AttachedPolicies"]) == 1


def test_missing_shared_policy_names_attachment(moto_iam):
    with pytest.raises(PolicyBindingError) as exc_info:
        PolicyBinder(moto_iam, profile_wait_delay=0).bind_role(
            ROLE, SECRET, "arn:aws:iam::123456789012:policy/does-not-exist"
        )
    assert exc_info.value.attachment == "shared-bucket-policy"
    assert exc_info.value.role_name == ROLE


def test_failure_stops_before_later_steps():
    iam = MagicMock()
    iam.get_role.return_value = {"Role": {"RoleName": ROLE}}
    iam.put_role_policy.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutRolePolicy"
    )

    with pytest.raises(PolicyBindingError) as exc_info:
        PolicyBinder(iam, profile_wait_delay=0).bind_role(ROLE, SECRET)

    assert exc_info.value.attachment == "secret-read-policy"
    assert isinstance(exc_info.value.__cause__, ClientError)
    iam.attach_role_policy.assert_not_called()
    iam.create_instance_profile.assert_not_called()


def _scripted_iam(*profile_responses):
    iam = MagicMock()
    iam.get_role.return_value = {"Role": {"RoleName": ROLE}}
    iam.get_instance_profile.side_effect = list(profile_responses)
    return iam


BOUND_PROFILE = {"InstanceProfile": {"Roles": [{"RoleName": ROLE}]}}


def test_profile_wait_retries_not_found():
    not_found = ClientError(
        {"Error": {"Code": "NoSuchEntity", "Message": "missing"}}, "GetInstanceProfile"
    )
    iam = _scripted_iam(BOUND_PROFILE, BOUND_PROFILE, not_found, BOUND_PROFILE)

    handle = PolicyBinder(iam, profile_wait_delay=0).bind_role(ROLE, SECRET)

    assert handle.instance_profile_name == ROLE
    assert iam.get_instance_profile.call_count == 4


def test_profile_wait_access_denied_raises():
    denied = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetInstanceProfile"
    )
    iam = _scripted_iam(BOUND_PROFILE, BOUND_PROFILE, denied)

    with pytest.raises(PolicyBindingError) as exc_info:
        PolicyBinder(iam, profile_wait_delay=0).bind_role(ROLE, SECRET)

    assert exc_info.value.attachment == "instance-profile"
    assert iam.get_instance_profile.call_count == 3
