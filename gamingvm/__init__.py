"""gamingvm - Spot gaming instance provisioning on AWS."""

from .config import GamingVMConfig
from .errors import (
    DuplicateRuleKeyError,
    FulfillmentTimeoutError,
    GamingVMError,
    IdentityResolutionError,
    NoZonesAvailableError,
    PolicyBindingError,
    ProviderCallError,
)
from .reconciler import Reconciler
from .rules import DEFAULT_RULE_TABLE, FlatRule, flatten_rules
from .types import InstanceOutputs, RoleHandle, SecretHandle, Sensitive
from .zones import select_zone

__all__ = [
    "DEFAULT_RULE_TABLE",
    "DuplicateRuleKeyError",
    "FlatRule",
    "FulfillmentTimeoutError",
    "GamingVMConfig",
    "GamingVMError",
    "IdentityResolutionError",
    "InstanceOutputs",
    "NoZonesAvailableError",
    "PolicyBindingError",
    "ProviderCallError",
    "Reconciler",
    "RoleHandle",
    "SecretHandle",
    "Sensitive",
    "flatten_rules",
    "select_zone",
]
