"""Type definitions for gamingvm."""

from dataclasses import dataclass
from typing import Generic, Literal, TypedDict, TypeVar

Protocol = Literal["tcp", "udp"]

T = TypeVar("T")

REDACTED = "(sensitive)"


class PortSpec(TypedDict):
    port: int
    description: str


ProtocolMap = dict[str, list[PortSpec]]
RuleTable = dict[str, ProtocolMap]


class InstanceData(TypedDict, total=False):
    """Instance data stored in .instance.json files. Never holds the password."""

    name: str
    region: str
    zone: str
    ami_id: str
    instance_type: str
    security_group_id: str
    spot_request_id: str
    instance_id: str
    ip: str
    public_dns: str
    secret_name: str
    role_name: str
    aws_profile: str


class Sensitive(Generic[T]):
    """Wrapper that keeps a value out of str(), repr(), logs and f-strings.

    The raw value is only available through :meth:`reveal`.
    """

    __slots__ = ("_value",)

    def __init__(self, value: T):
        self._value = value

    def reveal(self) -> T:
        return self._value

    def __str__(self) -> str:
        return REDACTED

    def __repr__(self) -> str:
        return f"Sensitive({REDACTED})"

    def __format__(self, spec: str) -> str:
        return format(REDACTED, spec)

    def __eq__(self, other) -> bool:
        if isinstance(other, Sensitive):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


@dataclass(frozen=True)
class SecretHandle:
    """Reference to a stored secret. Does not carry the value."""

    name: str
    store_arn: str


@dataclass(frozen=True)
class RoleHandle:
    role_name: str
    instance_profile_name: str


@dataclass(frozen=True)
class InstanceOutputs:
    instance_id: str
    instance_ip: str
    instance_public_dns: str
    instance_password: Sensitive[str]

    def as_dict(self, show_sensitive: bool = False) -> dict[str, str]:
        password = (
            self.instance_password.reveal()
            if show_sensitive
            else str(self.instance_password)
        )
        return {
            "instance_id": self.instance_id,
            "instance_ip": self.instance_ip,
            "instance_public_dns": self.instance_public_dns,
            "instance_password": password,
        }
