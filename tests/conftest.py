"""Shared fixtures: moto-backed SSM/IAM, a scripted EC2 client, a live instance."""

import os
from pathlib import Path
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

from gamingvm.config import GamingVMConfig
from gamingvm.errors import FulfillmentTimeoutError
from gamingvm.providers import AWSProvider
from gamingvm.reconciler import Reconciler

REGION = "us-east-1"
ZONES = ["us-east-1a", "us-east-1b", "us-east-1c"]
LIVE_PREFIX = "test-gamingvm"


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run integration tests that create real AWS resources",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--live"):
        return
    skip_live = pytest.mark.skip(reason="needs --live")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture(autouse=True)
def isolated_env(request, tmp_path, monkeypatch):
    """Run each test in an empty directory with no GAMINGVM_* settings.

    Integration tests keep the real environment and working directory.
    """
    if request.node.get_closest_marker("integration"):
        return
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("GAMINGVM_"):
            monkeypatch.delenv(key)
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("AWS_REGION", raising=False)


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def moto_aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture
def moto_ssm(moto_aws):
    return boto3.client("ssm", region_name=REGION)


@pytest.fixture
def moto_iam(moto_aws):
    return boto3.client("iam", region_name=REGION)


@pytest.fixture
def config():
    return GamingVMConfig(region=REGION, resource_name_prefix="test")


def make_ec2(
    *,
    zones=ZONES,
    images=None,
    sg_rules=None,
    spot_state="active",
    instance_id="i-0123456789abcdef0",
):
    """EC2 client double that answers the calls the reconciler makes."""
    ec2 = MagicMock()
    ec2.describe_availability_zones.return_value = {
        "AvailabilityZones": [{"ZoneName": z, "State": "available"} for z in zones]
    }
    ec2.describe_images.return_value = {
        "Images": images
        if images is not None
        else [
            {
                "ImageId": "ami-old",
                "CreationDate": "2024-01-01T00:00:00.000Z",
                "RootDeviceName": "/dev/sda1",
            },
            {
                "ImageId": "ami-new",
                "CreationDate": "2024-06-01T00:00:00.000Z",
                "RootDeviceName": "/dev/sda1",
            },
        ]
    }
    ec2.describe_security_groups.return_value = {
        "SecurityGroups": [{"GroupId": "sg-123", "VpcId": "vpc-1"}]
    }
    ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1", "IsDefault": True}]}

    paginator = MagicMock()
    paginator.paginate.return_value = [{"SecurityGroupRules": sg_rules or []}]
    ec2.get_paginator.return_value = paginator

    ec2.request_spot_instances.return_value = {
        "SpotInstanceRequests": [{"SpotInstanceRequestId": "sir-abc123"}]
    }
    ec2.describe_spot_instance_requests.return_value = {
        "SpotInstanceRequests": [
            {
                "SpotInstanceRequestId": "sir-abc123",
                "State": spot_state,
                "InstanceId": instance_id,
                "Status": {"Code": "fulfilled" if spot_state == "active" else "pending-fulfillment"},
            }
        ]
    }

    running = {
        "InstanceId": instance_id,
        "State": {"Name": "running"},
        "PublicIpAddress": "54.1.2.3",
        "PublicDnsName": "ec2-54-1-2-3.compute-1.amazonaws.com",
        "Placement": {"AvailabilityZone": "us-east-1b"},
    }
    ec2.describe_instances.side_effect = lambda **kwargs: (
        {"Reservations": []}
        if "Filters" in kwargs
        else {"Reservations": [{"Instances": [running]}]}
    )
    return ec2


@pytest.fixture
def fake_ec2():
    return make_ec2()


@pytest.fixture
def provider(fake_ec2, moto_ssm, moto_iam):
    """AWSProvider whose SSM and IAM are moto-backed and EC2 is scripted."""
    p = AWSProvider(REGION)
    p.ec2 = lambda: fake_ec2
    p.ssm = lambda: moto_ssm
    p.iam = lambda: moto_iam
    return p


@pytest.fixture(scope="session")
def live_config():
    return GamingVMConfig.from_env(resource_name_prefix=LIVE_PREFIX, skip_install=True)


@pytest.fixture(scope="session")
def live_instance(live_config):
    """Create a real spot instance, yield its reconciler, delete on teardown.

    The password parameter and IAM role are left in place and reused by
    the next run.
    """
    reconciler = Reconciler(live_config)
    reconciler.provider.validate_auth()

    print(f"\n[INFO] Creating instance '{live_config.instance_name}'...")
    try:
        outputs = reconciler.reconcile()
    except FulfillmentTimeoutError:
        reconciler.destroy()
        pytest.skip(f"No spot capacity for {live_config.instance_type} in {live_config.region}")

    try:
        yield reconciler, outputs
    finally:
        try:
            reconciler.destroy()
        except (Exception, SystemExit):
            pass
        Path(f"{LIVE_PREFIX}.instance.json").unlink(missing_ok=True)
