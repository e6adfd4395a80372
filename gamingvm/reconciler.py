"""Converge the gaming instance and everything it depends on.

A run is a single dependency-ordered pass:

1. Flatten and validate the rule table (no AWS calls yet).
2. In parallel: resolve the caller IP, pick the zone, ensure the secret.
3. Bind the IAM role, resolve the AMI, converge the security group.
4. Reuse a live instance, resume a spot request left open by an earlier
   run, or request a new one-time spot instance and wait.

Each step finds existing resources by name or tag before creating, so
re-running converges instead of duplicating.
"""

import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from .config import GamingVMConfig
from .credentials import SecretProvisioner
from .errors import FulfillmentTimeoutError
from .iam import PolicyBinder
from .identity import caller_cidr, get_my_ip
from .providers import AWSProvider
from .rules import FlatRule, flatten_rules
from .state import delete_instance_state, load_instance, save_instance
from .types import InstanceData, InstanceOutputs, RoleHandle, SecretHandle
from .userdata import render_user_data
from .utils import log, warn
from .zones import discover_zones, keep_or_select_zone


class Reconciler:
    def __init__(
        self,
        config: GamingVMConfig,
        provider: AWSProvider | None = None,
        *,
        resolve_ip: Callable[[], str] = get_my_ip,
        rng: random.Random | None = None,
    ):
        self.config = config
        self.provider = provider or AWSProvider(config.region, aws_profile=config.aws_profile)
        self.resolve_ip = resolve_ip
        self.rng = rng or random.Random(config.zone_seed)
        self.name = config.resource_name_prefix

    def plan_rules(self) -> dict[str, FlatRule]:
        return flatten_rules(self.config.rule_table())

    def _select_zone(self, ec2, previous: str | None, reroll: bool) -> str:
        cfg = self.config
        # An explicit allow-list fully overrides discovery.
        available = [] if cfg.allowed_zone_suffixes else discover_zones(ec2)
        zone = keep_or_select_zone(
            previous,
            cfg.allowed_zone_suffixes,
            available,
            cfg.region,
            self.rng,
            reroll=reroll,
        )
        log(f"Using availability zone: '{zone}'")
        return zone

    def _resolve_inputs(
        self, ec2, ssm, state: InstanceData, *, reroll_zone: bool, rotate_secret: bool
    ) -> tuple[str, str, SecretHandle]:
        """Run the three independent branches concurrently and join them."""
        provisioner = SecretProvisioner(ssm)
        with ThreadPoolExecutor(max_workers=3) as pool:
            ip_future = pool.submit(self.resolve_ip)
            zone_future = pool.submit(
                self._select_zone, ec2, state.get("zone"), reroll_zone
            )
            secret_future = pool.submit(
                provisioner.generate_and_store,
                self.config.secret_name,
                self.config.password_length,
                force=rotate_secret,
            )
            ip = ip_future.result()
            zone = zone_future.result()
            secret = secret_future.result()
        log(f"Restricting ingress to your IP: '{ip}'")
        return ip, zone, secret

    def _outputs(self, ssm, instance: dict, secret_name: str) -> InstanceOutputs:
        password = SecretProvisioner(ssm).reveal(secret_name)
        return InstanceOutputs(
            instance_id=instance["InstanceId"],
            instance_ip=instance.get("PublicIpAddress", "N/A"),
            instance_public_dns=instance.get("PublicDnsName", ""),
            instance_password=password,
        )

    def _find_live_instance(self, ec2, state: InstanceData) -> dict | None:
        if state.get("instance_id"):
            instance = self.provider.describe_instance(ec2, state["instance_id"])
            if instance:
                return instance
        return self.provider.get_instance_by_name(ec2, self.config.instance_name)

    def reconcile(
        self, *, reroll_zone: bool = False, rotate_secret: bool = False
    ) -> InstanceOutputs:
        """Converge all resources and return the instance outputs.

        :param reroll_zone: Pick a new zone even if the previous one is still valid
        :param rotate_secret: Regenerate the administrator password
        :return: Instance identity, address and (sensitive) password
        :raises FulfillmentTimeoutError: Spot request still open after the timeout.
            The request id is saved to the state file before this is raised.
        """
        cfg = self.config
        rules = self.plan_rules()
        log(f"Planned {len(rules)} ingress rule(s) plus egress-all")

        state: InstanceData = load_instance(self.name) or {"name": self.name}
        state.update(region=cfg.region, instance_type=cfg.instance_type)
        if cfg.aws_profile:
            state["aws_profile"] = cfg.aws_profile

        ec2 = self.provider.ec2()
        ssm = self.provider.ssm()
        iam = self.provider.iam()

        ip, zone, secret = self._resolve_inputs(
            ec2, ssm, state, reroll_zone=reroll_zone, rotate_secret=rotate_secret
        )
        state.update(zone=zone, secret_name=secret.name)

        role = PolicyBinder(iam).bind_role(cfg.role_name, secret, cfg.bucket_policy_arn)
        state["role_name"] = role.role_name

        sg_id = self.provider.ensure_security_group(ec2, cfg.security_group_name)
        self.provider.converge_ingress(ec2, sg_id, rules, caller_cidr(ip))
        self.provider.ensure_egress(ec2, sg_id)
        state["security_group_id"] = sg_id
        save_instance(self.name, state)

        existing = self._find_live_instance(ec2, state)
        if existing:
            log(f"Instance '{existing['InstanceId']}' already exists, not requesting another")
            if existing["Placement"]["AvailabilityZone"] != zone:
                warn(
                    f"Instance runs in '{existing['Placement']['AvailabilityZone']}', "
                    f"delete it to move to '{zone}'"
                )
            self._record_instance(state, existing)
            return self._outputs(ssm, existing, secret.name)

        request = self._tracked_spot_request(ec2, state)
        if request and request.get("State") == "active" and request.get("InstanceId"):
            instance_id = request["InstanceId"]
            log(f"Spot request '{request['SpotInstanceRequestId']}' already fulfilled")
        else:
            if request:
                spot_request_id = request["SpotInstanceRequestId"]
                log(f"Resuming wait on open spot request '{spot_request_id}'")
            else:
                spot_request_id = self._request_spot(ec2, state, zone, sg_id, role, secret)
            instance_id = self._wait_for_fulfillment(ec2, spot_request_id)

        state["instance_id"] = instance_id
        save_instance(self.name, state)

        instance = self.provider.wait_for_running(ec2, cfg.instance_name, instance_id)
        self._record_instance(state, instance)
        log("Instance ready!")
        return self._outputs(ssm, instance, secret.name)

    def _tracked_spot_request(self, ec2, state: InstanceData) -> dict | None:
        """Return the spot request saved by an earlier run if it can still yield an instance."""
        spot_request_id = state.get("spot_request_id")
        if not spot_request_id:
            return None
        request = self.provider.describe_spot_request(ec2, spot_request_id)
        if request is None or request.get("State") not in ("open", "active"):
            return None
        return request

    def _request_spot(
        self,
        ec2,
        state: InstanceData,
        zone: str,
        sg_id: str,
        role: RoleHandle,
        secret: SecretHandle,
    ) -> str:
        cfg = self.config
        ami_id = self.provider.resolve_ami(ec2, cfg.custom_ami, cfg.ami_pattern)
        state["ami_id"] = ami_id
        user_data = render_user_data(
            secret.name, cfg.region, cfg.installers, skip_install=cfg.skip_install
        )
        if not user_data:
            log("Skipping installer bootstrap")

        spot_request_id = self.provider.request_spot_instance(
            ec2,
            name=cfg.instance_name,
            instance_type=cfg.instance_type,
            zone=zone,
            ami_id=ami_id,
            security_group_id=sg_id,
            instance_profile=role.instance_profile_name,
            user_data=user_data,
            root_volume_size=cfg.root_volume_size,
            root_device_name=self.provider.root_device_name(ec2, ami_id),
            subnet_id=self.provider.subnet_for_zone(ec2, sg_id, zone),
        )
        state["spot_request_id"] = spot_request_id
        save_instance(self.name, state)
        return spot_request_id

    def _wait_for_fulfillment(self, ec2, spot_request_id: str) -> str:
        region = self.config.region
        try:
            return self.provider.wait_for_fulfillment(
                ec2, spot_request_id, self.config.spot_timeout
            )
        except FulfillmentTimeoutError:
            warn(
                f"Spot request '{spot_request_id}' is still open. Inspect or cancel it with:\n"
                f"  aws ec2 cancel-spot-instance-requests "
                f"--spot-instance-request-ids {spot_request_id} --region {region}"
            )
            raise
        except KeyboardInterrupt:
            warn(f"Interrupted, spot request '{spot_request_id}' saved to state")
            raise

    def _record_instance(self, state: InstanceData, instance: dict) -> None:
        state["instance_id"] = instance["InstanceId"]
        state["ip"] = instance.get("PublicIpAddress", "N/A")
        state["public_dns"] = instance.get("PublicDnsName", "")
        save_instance(self.name, state)

    def outputs(self) -> InstanceOutputs | None:
        """Read outputs of the last run without changing anything."""
        state = load_instance(self.name)
        if not state or not state.get("instance_id"):
            return None
        ec2 = self.provider.ec2()
        instance = self.provider.describe_instance(ec2, state["instance_id"])
        if instance is None:
            return None
        return self._outputs(self.provider.ssm(), instance, state["secret_name"])

    def update_ip(self) -> tuple[int, int]:
        """Re-resolve the caller IP and converge ingress rules only."""
        state = load_instance(self.name) or {}
        rules = self.plan_rules()
        ip = self.resolve_ip()
        ec2 = self.provider.ec2()
        sg_id = state.get("security_group_id") or self.provider.ensure_security_group(
            ec2, self.config.security_group_name
        )
        return self.provider.converge_ingress(ec2, sg_id, rules, caller_cidr(ip))

    def destroy(self) -> None:
        """Terminate the instance, cancel its spot request, drop the security group.

        The secret parameter and IAM role are kept so the password survives
        instance replacement.
        """
        state = load_instance(self.name) or {}
        ec2 = self.provider.ec2()

        instance_id = state.get("instance_id")
        if not instance_id:
            found = self.provider.get_instance_by_name(ec2, self.config.instance_name)
            instance_id = found["InstanceId"] if found else None

        if state.get("spot_request_id"):
            self.provider.cancel_spot_request(ec2, state["spot_request_id"])
        if instance_id:
            self.provider.terminate_instance(ec2, instance_id)
        if state.get("security_group_id"):
            self.provider.delete_security_group(ec2, state["security_group_id"])

        delete_instance_state(self.name)
        log("Instance deleted")
