"""AWS calls used by the reconciler: AMI, security group, spot instance."""

import os
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError, WaiterError
from dotenv import load_dotenv

from .errors import FulfillmentTimeoutError, ProviderCallError
from .rules import EGRESS_ALL, RULE_KEY_TAG, FlatRule, diff_rules, ingress_permission
from .userdata import encode_user_data
from .utils import log, warn

WINDOWS_AMI_OWNER = "amazon"
SPOT_POLL_DELAY = 15
LIVE_STATES = ["pending", "running", "stopping", "stopped"]


def _tags(name: str, **extra: str) -> list[dict]:
    tags = [
        {"Key": "Name", "Value": name},
        {"Key": "ManagedBy", "Value": "gamingvm"},
        {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
    ]
    tags.extend({"Key": k, "Value": v} for k, v in extra.items())
    return tags


def get_aws_config(profile: str | None = None, region: str | None = None) -> dict:
    """Load AWS configuration for boto3 session initialization.

    :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
    :param region: Region name
    :return: Dict with profile_name and/or region_name keys for boto3.Session()
    """
    load_dotenv()
    aws_config = {}
    profile_name = profile or os.getenv("AWS_PROFILE")
    if profile_name:
        aws_config["profile_name"] = profile_name
    region = region or os.getenv("AWS_REGION")
    if region:
        aws_config["region_name"] = region
    return aws_config


class AWSProvider:
    def __init__(self, region: str, aws_profile: str | None = None, session=None):
        self.region = region
        self.aws_config = get_aws_config(profile=aws_profile, region=region)
        self._session = session

    def _get_session(self):
        """Get boto3 session using aws_config."""
        if self._session is None:
            self._session = boto3.Session(**self.aws_config)
        return self._session

    def ec2(self):
        return self._get_session().client("ec2", region_name=self.region)

    def ssm(self):
        return self._get_session().client("ssm", region_name=self.region)

    def iam(self):
        return self._get_session().client("iam")

    def validate_auth(self) -> str:
        """Check credentials with STS and log the account in use.

        :return: AWS account id
        :raises ProviderCallError: If credentials are missing, expired, or invalid
        """
        sts = self._get_session().client("sts", region_name=self.region)
        try:
            identity = sts.get_caller_identity()
        except ClientError as e:
            raise ProviderCallError("auth", "GetCallerIdentity", e) from e
        account_id = identity.get("Account", "unknown")
        profile = self.aws_config.get("profile_name") or identity.get("Arn", "").split("/")[-1]
        log(f"AWS: region={self.region}  profile={profile}  account={account_id}")
        return account_id

    # AMI

    def find_ami(self, ec2, pattern: str) -> str:
        """Return the most recent Amazon-published image matching a name glob."""
        try:
            response = ec2.describe_images(
                Filters=[
                    {"Name": "name", "Values": [pattern]},
                    {"Name": "state", "Values": ["available"]},
                    {"Name": "architecture", "Values": ["x86_64"]},
                ],
                Owners=[WINDOWS_AMI_OWNER],
            )
        except ClientError as e:
            raise ProviderCallError("ami", "DescribeImages", e) from e

        if not response["Images"]:
            raise ProviderCallError(
                "ami", "DescribeImages", LookupError(f"No AMI found matching '{pattern}'")
            )

        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def resolve_ami(self, ec2, custom_ami: str, pattern: str) -> str:
        """Custom AMI override wins; the catalog is only queried without one."""
        if custom_ami:
            log(f"Using custom AMI: '{custom_ami}'")
            return custom_ami
        ami_id = self.find_ami(ec2, pattern)
        log(f"Using AMI: '{ami_id}'")
        return ami_id

    def root_device_name(self, ec2, ami_id: str) -> str:
        try:
            images = ec2.describe_images(ImageIds=[ami_id])["Images"]
        except ClientError as e:
            raise ProviderCallError("ami", "DescribeImages", e) from e
        if not images:
            return "/dev/sda1"
        return images[0].get("RootDeviceName", "/dev/sda1")

    # Security group

    def _default_vpc_id(self, ec2) -> str:
        vpcs = ec2.describe_vpcs()["Vpcs"]
        if not vpcs:
            log("No VPC found. Creating default VPC...")
            vpc_id = ec2.create_default_vpc()["Vpc"]["VpcId"]
            log(f"Created default VPC: '{vpc_id}'")
            return vpc_id
        default_vpc = next((v for v in vpcs if v.get("IsDefault")), None)
        return default_vpc["VpcId"] if default_vpc else vpcs[0]["VpcId"]

    def ensure_security_group(self, ec2, sg_name: str) -> str:
        """Find the named security group, creating it in the default VPC if missing.

        :param ec2: Boto3 EC2 client instance
        :param sg_name: Security group name
        :return: Security group ID
        """
        call = "DescribeSecurityGroups"
        try:
            response = ec2.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [sg_name]}]
            )
            if response["SecurityGroups"]:
                sg_id = response["SecurityGroups"][0]["GroupId"]
                log(f"Using existing security group: '{sg_name}'")
                return sg_id

            call = "DescribeVpcs"
            vpc_id = self._default_vpc_id(ec2)
            log(f"Creating security group '{sg_name}' in VPC '{vpc_id}'...")
            call = "CreateSecurityGroup"
            response = ec2.create_security_group(
                GroupName=sg_name,
                Description="Streaming and remote desktop access for gamingvm",
                VpcId=vpc_id,
                TagSpecifications=[
                    {"ResourceType": "security-group", "Tags": _tags(sg_name)}
                ],
            )
        except ClientError as e:
            raise ProviderCallError("security-group", call, e) from e
        return response["GroupId"]

    def describe_rules(self, ec2, sg_id: str) -> list[dict]:
        try:
            paginator = ec2.get_paginator("describe_security_group_rules")
            rules = []
            for page in paginator.paginate(
                Filters=[{"Name": "group-id", "Values": [sg_id]}]
            ):
                rules.extend(page["SecurityGroupRules"])
        except ClientError as e:
            raise ProviderCallError(
                "security-group", "DescribeSecurityGroupRules", e
            ) from e
        return rules

    def converge_ingress(
        self, ec2, sg_id: str, rules: dict[str, FlatRule], cidr: str
    ) -> tuple[int, int]:
        """Bring ingress rules in line with the flattened table.

        :return: (number authorized, number revoked)
        """
        existing = self.describe_rules(ec2, sg_id)
        to_authorize, to_revoke = diff_rules(existing, rules, cidr)

        if to_revoke:
            try:
                ec2.revoke_security_group_ingress(
                    GroupId=sg_id, SecurityGroupRuleIds=to_revoke
                )
            except ClientError as e:
                raise ProviderCallError(
                    "security-group", "RevokeSecurityGroupIngress", e
                ) from e
            log(f"Revoked {len(to_revoke)} stale ingress rule(s)")

        try:
            for rule in to_authorize:
                ec2.authorize_security_group_ingress(
                    GroupId=sg_id,
                    IpPermissions=[ingress_permission(rule, cidr)],
                    TagSpecifications=[
                        {
                            "ResourceType": "security-group-rule",
                            "Tags": [{"Key": RULE_KEY_TAG, "Value": rule.key}],
                        }
                    ],
                )
        except ClientError as e:
            raise ProviderCallError(
                "security-group", "AuthorizeSecurityGroupIngress", e
            ) from e

        if to_authorize:
            log(f"Authorized {len(to_authorize)} ingress rule(s) for '{cidr}'")
        else:
            log("Ingress rules up to date")
        return len(to_authorize), len(to_revoke)

    def ensure_egress(self, ec2, sg_id: str) -> None:
        try:
            ec2.authorize_security_group_egress(GroupId=sg_id, IpPermissions=[EGRESS_ALL])
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidPermission.Duplicate":
                raise ProviderCallError(
                    "security-group", "AuthorizeSecurityGroupEgress", e
                ) from e

    def delete_security_group(self, ec2, sg_id: str) -> None:
        try:
            ec2.delete_security_group(GroupId=sg_id)
            log(f"Deleted security group: '{sg_id}'")
        except ClientError as e:
            if "DependencyViolation" in str(e):
                warn(f"Security group '{sg_id}' is still in use, leaving it")
            else:
                raise ProviderCallError("security-group", "DeleteSecurityGroup", e) from e

    def subnet_for_zone(self, ec2, sg_id: str, zone: str) -> str | None:
        """Return a subnet in ``zone`` for non-default VPCs.

        Returns None when the security group is in the default VPC (placement
        alone selects the default subnet of the zone).
        """
        call = "DescribeSecurityGroups"
        try:
            sg = ec2.describe_security_groups(GroupIds=[sg_id])["SecurityGroups"][0]
            vpc_id = sg.get("VpcId")
            if not vpc_id:
                return None

            call = "DescribeVpcs"
            vpcs = ec2.describe_vpcs(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])["Vpcs"]
            if vpcs and vpcs[0].get("IsDefault"):
                return None

            call = "DescribeSubnets"
            subnets = ec2.describe_subnets(
                Filters=[
                    {"Name": "vpc-id", "Values": [vpc_id]},
                    {"Name": "availability-zone", "Values": [zone]},
                ]
            )["Subnets"]
        except ClientError as e:
            raise ProviderCallError("instance", call, e) from e
        if not subnets:
            raise ProviderCallError(
                "instance",
                "DescribeSubnets",
                LookupError(f"No subnet in '{zone}' for VPC '{vpc_id}'"),
            )
        public = [s for s in subnets if s.get("MapPublicIpOnLaunch")]
        chosen = public[0] if public else subnets[0]
        log(f"Using subnet '{chosen['SubnetId']}' in VPC '{vpc_id}'")
        return chosen["SubnetId"]

    # Instance

    def get_instance_by_name(self, ec2, name: str) -> dict | None:
        try:
            response = ec2.describe_instances(
                Filters=[
                    {"Name": "tag:Name", "Values": [name]},
                    {"Name": "instance-state-name", "Values": LIVE_STATES},
                ]
            )
        except ClientError as e:
            raise ProviderCallError("instance", "DescribeInstances", e) from e
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                return instance
        return None

    def describe_instance(self, ec2, instance_id: str) -> dict | None:
        try:
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidInstanceID.NotFound":
                return None
            raise ProviderCallError("instance", "DescribeInstances", e) from e
        reservations = response["Reservations"]
        if not reservations or not reservations[0]["Instances"]:
            return None
        instance = reservations[0]["Instances"][0]
        if instance["State"]["Name"] not in LIVE_STATES:
            return None
        return instance

    def request_spot_instance(
        self,
        ec2,
        *,
        name: str,
        instance_type: str,
        zone: str,
        ami_id: str,
        security_group_id: str,
        instance_profile: str,
        user_data: str,
        root_volume_size: int,
        root_device_name: str = "/dev/sda1",
        subnet_id: str | None = None,
    ) -> str:
        """Submit a one-time spot request.

        :return: Spot instance request ID
        """
        spec = {
            "ImageId": ami_id,
            "InstanceType": instance_type,
            "Placement": {"AvailabilityZone": zone},
            "IamInstanceProfile": {"Name": instance_profile},
            "BlockDeviceMappings": [
                {
                    "DeviceName": root_device_name,
                    "Ebs": {
                        "VolumeSize": root_volume_size,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
        }
        if subnet_id:
            spec["NetworkInterfaces"] = [{
                "DeviceIndex": 0,
                "SubnetId": subnet_id,
                "Groups": [security_group_id],
                "AssociatePublicIpAddress": True,
            }]
        else:
            spec["SecurityGroupIds"] = [security_group_id]
        if user_data:
            spec["UserData"] = encode_user_data(user_data)

        log(f"Requesting one-time spot instance '{name}' ({instance_type}) in '{zone}'...")
        try:
            response = ec2.request_spot_instances(
                InstanceCount=1,
                Type="one-time",
                LaunchSpecification=spec,
                TagSpecifications=[
                    {"ResourceType": "spot-instances-request", "Tags": _tags(name)}
                ],
            )
        except ClientError as e:
            raise ProviderCallError("instance", "RequestSpotInstances", e) from e
        spot_request_id = response["SpotInstanceRequests"][0]["SpotInstanceRequestId"]
        log(f"Spot request submitted: '{spot_request_id}'")
        return spot_request_id

    def wait_for_fulfillment(
        self, ec2, spot_request_id: str, timeout: int, delay: int = SPOT_POLL_DELAY
    ) -> str:
        """Block until the spot request is fulfilled.

        :param spot_request_id: Spot instance request ID
        :param timeout: Upper bound on the wait in seconds
        :param delay: Poll interval in seconds
        :return: Instance ID of the fulfilled request
        :raises FulfillmentTimeoutError: If the request is still open after ``timeout``
        :raises ProviderCallError: If the request ends in a failed state
        """
        log(f"Waiting up to {timeout}s for spot request '{spot_request_id}'...")
        waiter = ec2.get_waiter("spot_instance_request_fulfilled")
        try:
            waiter.wait(
                SpotInstanceRequestIds=[spot_request_id],
                WaiterConfig={"Delay": delay, "MaxAttempts": max(1, timeout // delay)},
            )
        except WaiterError as e:
            request = self.describe_spot_request(ec2, spot_request_id)
            if request is None or request.get("State") == "open":
                raise FulfillmentTimeoutError(spot_request_id, timeout) from e
            status = request.get("Status", {}).get("Code", request.get("State"))
            raise ProviderCallError(
                "instance",
                "RequestSpotInstances",
                RuntimeError(f"spot request '{spot_request_id}' ended with '{status}'"),
            ) from e

        request = self.describe_spot_request(ec2, spot_request_id)
        return request["InstanceId"]

    def describe_spot_request(self, ec2, spot_request_id: str) -> dict | None:
        try:
            requests = ec2.describe_spot_instance_requests(
                SpotInstanceRequestIds=[spot_request_id]
            )["SpotInstanceRequests"]
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidSpotInstanceRequestID.NotFound":
                return None
            raise ProviderCallError("instance", "DescribeSpotInstanceRequests", e) from e
        return requests[0] if requests else None

    def wait_for_running(self, ec2, name: str, instance_id: str) -> dict:
        """Tag the fulfilled instance and wait for it to run.

        Spot request tags are not copied to the instance, so the Name tag is
        applied here.
        """
        try:
            ec2.create_tags(Resources=[instance_id], Tags=_tags(name))
            log("Waiting for instance to start...")
            ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, WaiterError) as e:
            raise ProviderCallError("instance", "DescribeInstances", e) from e
        return response["Reservations"][0]["Instances"][0]

    def cancel_spot_request(self, ec2, spot_request_id: str) -> None:
        try:
            ec2.cancel_spot_instance_requests(SpotInstanceRequestIds=[spot_request_id])
            log(f"Cancelled spot request: '{spot_request_id}'")
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidSpotInstanceRequestID.NotFound":
                raise ProviderCallError("instance", "CancelSpotInstanceRequests", e) from e

    def terminate_instance(self, ec2, instance_id: str) -> None:
        try:
            ec2.terminate_instances(InstanceIds=[instance_id])
            log("Waiting for instance to terminate...")
            ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response["Error"]["Code"] != "InvalidInstanceID.NotFound":
                raise ProviderCallError("instance", "TerminateInstances", e) from e
        except WaiterError as e:
            raise ProviderCallError("instance", "TerminateInstances", e) from e
