"""Least-privilege IAM role and instance profile for the gaming instance."""

import json
import time
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from .errors import PolicyBindingError
from .types import RoleHandle, SecretHandle
from .utils import log, warn

EC2_PRINCIPAL = "ec2.amazonaws.com"
SHARED_BUCKET_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess"
SECRET_READ_ACTION = "ssm:GetParameter"
SECRET_POLICY_NAME = "gamingvm-secret-read"

PROFILE_WAIT_ATTEMPTS = 10
PROFILE_WAIT_DELAY = 2


def build_scoped_policy(action: str, resource_arn: str) -> dict:
    """Policy granting exactly one action on exactly one resource."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": action,
                "Resource": resource_arn,
            }
        ],
    }


def assume_role_policy(service: str = EC2_PRINCIPAL) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def _managed_tags() -> list[dict]:
    return [
        {"Key": "ManagedBy", "Value": "gamingvm"},
        {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
    ]


class PolicyBinder:
    def __init__(self, iam, profile_wait_delay: float = PROFILE_WAIT_DELAY):
        self.iam = iam
        self.profile_wait_delay = profile_wait_delay

    def _ensure_role(self, role_name: str, trusted_principal: str) -> None:
        try:
            self.iam.get_role(RoleName=role_name)
            log(f"Using existing IAM role: '{role_name}'")
            return
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchEntity":
                raise

        log(f"Creating IAM role: '{role_name}'")
        self.iam.create_role(
            RoleName=role_name,
            AssumeRolePolicyDocument=json.dumps(assume_role_policy(trusted_principal)),
            Description="Role for gamingvm instances (secret and bucket read)",
            Tags=_managed_tags(),
        )

    def _ensure_instance_profile(self, profile_name: str) -> None:
        try:
            self.iam.get_instance_profile(InstanceProfileName=profile_name)
            log(f"Using existing instance profile: '{profile_name}'")
            return
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchEntity":
                raise

        log(f"Creating instance profile: '{profile_name}'")
        self.iam.create_instance_profile(
            InstanceProfileName=profile_name, Tags=_managed_tags()
        )

    def _add_role_to_profile(self, profile_name: str, role_name: str) -> None:
        profile = self.iam.get_instance_profile(InstanceProfileName=profile_name)
        roles = [r["RoleName"] for r in profile["InstanceProfile"]["Roles"]]
        if role_name in roles:
            return
        self.iam.add_role_to_instance_profile(
            InstanceProfileName=profile_name, RoleName=role_name
        )
        log(f"Added role '{role_name}' to instance profile")

    def _wait_for_profile(self, profile_name: str) -> None:
        for attempt in range(PROFILE_WAIT_ATTEMPTS):
            try:
                profile = self.iam.get_instance_profile(InstanceProfileName=profile_name)
                if profile["InstanceProfile"]["Roles"]:
                    if attempt > 0:
                        log(f"Instance profile ready after {attempt + 1} attempts")
                    return
            except ClientError as e:
                if e.response["Error"]["Code"] != "NoSuchEntity":
                    raise PolicyBindingError("instance-profile", profile_name, e) from e

            if attempt < PROFILE_WAIT_ATTEMPTS - 1:
                time.sleep(self.profile_wait_delay)

        warn("Instance profile may not be fully propagated yet")

    def bind_role(
        self,
        role_name: str,
        secret: SecretHandle,
        shared_policy_arn: str = SHARED_BUCKET_POLICY_ARN,
        trusted_principal: str = EC2_PRINCIPAL,
    ) -> RoleHandle:
        """Create the instance role and bind its two read policies.

        The role is assumable only by ``trusted_principal``. It gets an inline
        policy allowing ``ssm:GetParameter`` on the secret parameter alone, and
        the pre-existing shared bucket read policy attached as-is. The role is
        then wrapped in an instance profile of the same name.

        :param role_name: Name for both the IAM role and instance profile
        :param secret: Handle of the administrator password parameter
        :param shared_policy_arn: Managed policy granting read-only bucket access
        :param trusted_principal: Service principal allowed to assume the role
        :return: Handle with role and instance profile names
        :raises PolicyBindingError: Naming the first attachment that failed
        """
        steps = [
            ("role", lambda: self._ensure_role(role_name, trusted_principal)),
            (
                "secret-read-policy",
                lambda: self.iam.put_role_policy(
                    RoleName=role_name,
                    PolicyName=SECRET_POLICY_NAME,
                    PolicyDocument=json.dumps(
                        build_scoped_policy(SECRET_READ_ACTION, secret.store_arn)
                    ),
                ),
            ),
            (
                "shared-bucket-policy",
                lambda: self.iam.attach_role_policy(
                    RoleName=role_name, PolicyArn=shared_policy_arn
                ),
            ),
            ("instance-profile", lambda: self._ensure_instance_profile(role_name)),
            ("profile-role", lambda: self._add_role_to_profile(role_name, role_name)),
        ]
        for attachment, step in steps:
            try:
                step()
            except ClientError as e:
                raise PolicyBindingError(attachment, role_name, e) from e

        log(f"Bound secret and bucket read policies to '{role_name}'")
        self._wait_for_profile(role_name)
        return RoleHandle(role_name=role_name, instance_profile_name=role_name)
