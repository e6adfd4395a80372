"""Run configuration: CLI options, then GAMINGVM_* environment, then defaults."""

import os
from dataclasses import dataclass, field, fields

from dotenv import load_dotenv

from .errors import ConfigError
from .iam import SHARED_BUCKET_POLICY_ARN
from .rules import DEFAULT_RULE_TABLE, load_rule_table
from .types import RuleTable
from .userdata import InstallerFlags
from .utils import log, warn

REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-central-1",
    "eu-north-1",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-south-1",
    "sa-east-1",
]

INSTANCE_TYPES = [
    "g4dn.xlarge",
    "g4dn.2xlarge",
    "g4dn.4xlarge",
    "g4dn.8xlarge",
    "g4ad.xlarge",
    "g4ad.2xlarge",
    "g4ad.4xlarge",
    "g5.xlarge",
    "g5.2xlarge",
    "g5.4xlarge",
    "g6.xlarge",
    "g6.2xlarge",
]

DEFAULT_AMI_PATTERN = "Windows_Server-2019-English-Full-Base-*"


def _parse_list(value: str | None, default: list[str] | None = None) -> list[str]:
    """Parse a comma-separated string into a list."""
    if value is None:
        return default or []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def _parse_int(name: str, value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'") from None


def normalize_region(region: str) -> str:
    """Validate a region, converting an AZ like ``us-east-1a`` to its region."""
    if region and region[-1].isalpha() and region[:-1] in REGIONS:
        log(f"Converted availability zone '{region}' to region '{region[:-1]}'")
        return region[:-1]
    if region not in REGIONS:
        raise ConfigError(
            f"Invalid AWS region: '{region}'\n"
            f"Valid AWS regions: '{', '.join(REGIONS[:6])}', ..."
        )
    return region


@dataclass
class GamingVMConfig:
    region: str = "us-east-1"
    resource_name_prefix: str = "gaming"
    instance_type: str = "g4dn.xlarge"
    custom_ami: str = ""
    ami_pattern: str = DEFAULT_AMI_PATTERN
    allowed_zone_suffixes: set[str] = field(default_factory=set)
    root_volume_size: int = 120
    skip_install: bool = False
    installers: InstallerFlags = field(default_factory=InstallerFlags)
    bucket_policy_arn: str = SHARED_BUCKET_POLICY_ARN
    password_length: int = 32
    spot_timeout: int = 600
    zone_seed: int | None = None
    aws_profile: str | None = None
    rules_file: str | None = None

    def __post_init__(self):
        self.region = normalize_region(self.region)
        self.allowed_zone_suffixes = {s.strip() for s in self.allowed_zone_suffixes if s.strip()}
        for suffix in self.allowed_zone_suffixes:
            if len(suffix) != 1 or not suffix.isalpha():
                raise ConfigError(
                    f"Zone suffix must be a single letter, got '{suffix}'"
                )
        if not self.resource_name_prefix:
            raise ConfigError("resource_name_prefix must not be empty")
        if self.root_volume_size < 30:
            raise ConfigError("Windows root volume must be at least 30 GiB")
        if self.password_length < 32:
            raise ConfigError("password_length must be at least 32")
        if self.spot_timeout <= 0:
            raise ConfigError("spot_timeout must be positive")
        if self.instance_type not in INSTANCE_TYPES:
            warn(
                f"Instance type '{self.instance_type}' is not a known GPU type "
                f"('{', '.join(INSTANCE_TYPES[:4])}', ...)"
            )

    def rule_table(self) -> RuleTable:
        if self.rules_file:
            return load_rule_table(self.rules_file)
        return DEFAULT_RULE_TABLE

    @property
    def secret_name(self) -> str:
        return f"{self.resource_name_prefix}-administrator-password"

    @property
    def role_name(self) -> str:
        return f"{self.resource_name_prefix}-instance-role"

    @property
    def security_group_name(self) -> str:
        return f"{self.resource_name_prefix}-sg"

    @property
    def instance_name(self) -> str:
        return f"{self.resource_name_prefix}-instance"

    @classmethod
    def from_env(cls, **overrides) -> "GamingVMConfig":
        """Build config from the environment (and ``.env``), applying explicit overrides.

        Overrides set to ``None`` are ignored so CLI options left unset fall
        through to the environment.

        :param overrides: Field values taking precedence over the environment
        :return: Validated configuration
        """
        load_dotenv()
        env = os.environ

        installers = InstallerFlags(
            **{
                name: _parse_bool(
                    env.get(f"GAMINGVM_INSTALL_{name.upper()}"),
                    getattr(InstallerFlags, name),
                )
                for name in InstallerFlags.names()
            }
        )
        zone_seed = env.get("GAMINGVM_ZONE_SEED")

        values = {
            "region": env.get("GAMINGVM_REGION") or env.get("AWS_REGION") or cls.region,
            "resource_name_prefix": env.get("GAMINGVM_PREFIX", cls.resource_name_prefix),
            "instance_type": env.get("GAMINGVM_INSTANCE_TYPE", cls.instance_type),
            "custom_ami": env.get("GAMINGVM_CUSTOM_AMI", cls.custom_ami),
            "ami_pattern": env.get("GAMINGVM_AMI_PATTERN", cls.ami_pattern),
            "allowed_zone_suffixes": set(_parse_list(env.get("GAMINGVM_ZONES"))),
            "root_volume_size": _parse_int(
                "GAMINGVM_ROOT_VOLUME_SIZE",
                env.get("GAMINGVM_ROOT_VOLUME_SIZE"),
                cls.root_volume_size,
            ),
            "skip_install": _parse_bool(env.get("GAMINGVM_SKIP_INSTALL"), False),
            "installers": installers,
            "bucket_policy_arn": env.get("GAMINGVM_BUCKET_POLICY_ARN", cls.bucket_policy_arn),
            "password_length": _parse_int(
                "GAMINGVM_PASSWORD_LENGTH",
                env.get("GAMINGVM_PASSWORD_LENGTH"),
                cls.password_length,
            ),
            "spot_timeout": _parse_int(
                "GAMINGVM_SPOT_TIMEOUT", env.get("GAMINGVM_SPOT_TIMEOUT"), cls.spot_timeout
            ),
            "zone_seed": _parse_int("GAMINGVM_ZONE_SEED", zone_seed, 0) if zone_seed else None,
            "aws_profile": env.get("AWS_PROFILE"),
            "rules_file": env.get("GAMINGVM_RULES_FILE"),
        }

        known = {f.name for f in fields(cls)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown config option '{key}'")
            if value is not None:
                values[key] = value

        return cls(**values)
