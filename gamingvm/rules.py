"""Firewall rule table flattening and convergence planning.

The desired ingress is declared as a nested table::

    {app: {protocol: [{"port": ..., "description": ...}, ...]}}

and flattened into rules keyed by ``app_protocol_port``. The key is the
identity used to match rules across runs: it is stored as a tag on each
security group rule, so renaming or removing one entry only touches that
entry's rule.
"""

import json
from dataclasses import dataclass
from pathlib import Path

from .errors import DuplicateRuleKeyError, RuleTableError
from .types import RuleTable

PROTOCOLS = ("tcp", "udp")
RULE_KEY_TAG = "gamingvm:rule-key"

DEFAULT_RULE_TABLE: RuleTable = {
    "rdp": {
        "tcp": [{"port": 3389, "description": "Remote Desktop"}],
    },
    "vnc": {
        "tcp": [{"port": 5900, "description": "VNC"}],
    },
    "sunshine": {
        "tcp": [
            {"port": 47984, "description": "Sunshine HTTPS"},
            {"port": 47989, "description": "Sunshine HTTP"},
            {"port": 48010, "description": "Sunshine RTSP"},
        ],
        "udp": [
            {"port": 47998, "description": "Sunshine video"},
            {"port": 47999, "description": "Sunshine control"},
            {"port": 48000, "description": "Sunshine audio"},
            {"port": 48010, "description": "Sunshine RTSP"},
        ],
    },
}

EGRESS_ALL = {
    "IpProtocol": "-1",
    "FromPort": 0,
    "ToPort": 0,
    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "All outbound"}],
}


@dataclass(frozen=True)
class FlatRule:
    key: str
    app: str
    protocol: str
    port: int
    description: str


def rule_key(app: str, protocol: str, port: int) -> str:
    return f"{app}_{protocol}_{port}"


def flatten_rules(table: RuleTable) -> dict[str, FlatRule]:
    """Flatten a nested rule table into rules keyed by ``app_protocol_port``.

    :param table: Mapping of app name to protocol to port specs
    :return: Rules keyed by their reconciliation key, in table order
    :raises DuplicateRuleKeyError: If two entries share app, protocol and port
    :raises RuleTableError: On a malformed entry, unknown protocol or out-of-range port
    """
    rules: dict[str, FlatRule] = {}
    for app, protocols in table.items():
        if not isinstance(protocols, dict):
            raise RuleTableError(f"Rules for '{app}' must map protocol to a list of ports")
        for protocol, ports in protocols.items():
            if protocol not in PROTOCOLS:
                raise RuleTableError(
                    f"Unknown protocol '{protocol}' for '{app}' (expected tcp or udp)"
                )
            if not isinstance(ports, list):
                raise RuleTableError(f"Ports for '{app}/{protocol}' must be a list")
            for spec in ports:
                if not isinstance(spec, dict) or "port" not in spec:
                    raise RuleTableError(f"Invalid port entry {spec!r} for '{app}/{protocol}'")
                port = spec["port"]
                # bool is an int subclass
                if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
                    raise RuleTableError(f"Invalid port {port!r} for '{app}/{protocol}'")
                key = rule_key(app, protocol, port)
                if key in rules:
                    raise DuplicateRuleKeyError(key)
                rules[key] = FlatRule(
                    key=key,
                    app=app,
                    protocol=protocol,
                    port=port,
                    description=spec.get("description", ""),
                )
    return rules


def ingress_permission(rule: FlatRule, cidr: str) -> dict:
    """Build one EC2 IpPermissions entry for a flattened rule."""
    return {
        "IpProtocol": rule.protocol,
        "FromPort": rule.port,
        "ToPort": rule.port,
        "IpRanges": [{"CidrIp": cidr, "Description": rule.description}],
    }


def rule_tag_value(sg_rule: dict) -> str | None:
    return next(
        (t["Value"] for t in sg_rule.get("Tags", []) if t["Key"] == RULE_KEY_TAG),
        None,
    )


def _matches(sg_rule: dict, rule: FlatRule, cidr: str) -> bool:
    return (
        sg_rule.get("IpProtocol") == rule.protocol
        and sg_rule.get("FromPort") == rule.port
        and sg_rule.get("ToPort") == rule.port
        and sg_rule.get("CidrIpv4") == cidr
        and sg_rule.get("Description", "") == rule.description
    )


def diff_rules(
    existing: list[dict], desired: dict[str, FlatRule], cidr: str
) -> tuple[list[FlatRule], list[str]]:
    """Plan the ingress changes that converge a security group.

    Only rules carrying a rule-key tag are considered ours; untagged rules
    are left alone.

    :param existing: SecurityGroupRules from DescribeSecurityGroupRules
    :param desired: Flattened rules keyed by reconciliation key
    :param cidr: Source CIDR every desired rule must allow
    :return: (rules to authorize, security group rule ids to revoke)
    """
    to_revoke: list[str] = []
    kept: set[str] = set()

    for sg_rule in existing:
        if sg_rule.get("IsEgress"):
            continue
        key = rule_tag_value(sg_rule)
        if key is None:
            continue
        want = desired.get(key)
        if want is None or key in kept or not _matches(sg_rule, want, cidr):
            to_revoke.append(sg_rule["SecurityGroupRuleId"])
        else:
            kept.add(key)

    to_authorize = [rule for key, rule in desired.items() if key not in kept]
    return to_authorize, to_revoke


def load_rule_table(path: str | Path) -> RuleTable:
    """Read a rule table from a JSON file with the same shape as DEFAULT_RULE_TABLE."""
    try:
        table = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise RuleTableError(f"Could not read rule table '{path}': {e}") from e
    if not isinstance(table, dict):
        raise RuleTableError(f"Rule table '{path}' must be a JSON object")
    return table
