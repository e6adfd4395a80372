"""Administrator credential generation and storage in SSM Parameter Store."""

import secrets
import string

from botocore.exceptions import ClientError

from .errors import ProviderCallError
from .types import SecretHandle, Sensitive
from .utils import log

ALPHANUMERIC = string.ascii_letters + string.digits
MIN_PASSWORD_LENGTH = 32

LENGTH_TAG = "gamingvm:length"
CHARSET_TAG = "gamingvm:charset"
CHARSET = "alphanumeric"


def generate_password(length: int = MIN_PASSWORD_LENGTH, rng=None) -> str:
    """Generate an alphanumeric password.

    :param length: Number of characters (at least 32)
    :param rng: Random source with a ``choice`` method (default: ``secrets.SystemRandom``)
    :return: Password string
    """
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_PASSWORD_LENGTH}")
    rng = rng or secrets.SystemRandom()
    return "".join(rng.choice(ALPHANUMERIC) for _ in range(length))


class SecretProvisioner:
    """Owns generation and initial storage of the administrator password.

    The stored parameter is tagged with the generation parameters. A re-run
    with the same parameters leaves the value alone; changing them (or
    ``force=True``) rotates it.
    """

    def __init__(self, ssm, rng=None):
        self.ssm = ssm
        self.rng = rng

    def _get_parameter(self, name: str) -> dict | None:
        try:
            return self.ssm.get_parameter(Name=name)["Parameter"]
        except ClientError as e:
            if e.response["Error"]["Code"] == "ParameterNotFound":
                return None
            raise ProviderCallError("secret", "GetParameter", e) from e

    def _generation_tags(self, name: str) -> dict[str, str]:
        try:
            tags = self.ssm.list_tags_for_resource(
                ResourceType="Parameter", ResourceId=name
            )["TagList"]
        except ClientError as e:
            raise ProviderCallError("secret", "ListTagsForResource", e) from e
        return {t["Key"]: t["Value"] for t in tags}

    def _tag_generation(self, name: str, wanted: dict[str, str]) -> None:
        try:
            self.ssm.add_tags_to_resource(
                ResourceType="Parameter",
                ResourceId=name,
                Tags=[{"Key": k, "Value": v} for k, v in wanted.items()],
            )
        except ClientError as e:
            raise ProviderCallError("secret", "AddTagsToResource", e) from e

    def generate_and_store(
        self, name: str, length: int = MIN_PASSWORD_LENGTH, *, force: bool = False
    ) -> SecretHandle:
        """Ensure a generated password is stored under ``name``.

        :param name: SSM parameter name
        :param length: Password length
        :param force: Rotate even if the stored parameters match
        :return: Handle referencing the stored secret
        """
        wanted = {LENGTH_TAG: str(length), CHARSET_TAG: CHARSET}
        existing = self._get_parameter(name)

        if existing and not force:
            recorded = self._generation_tags(name)
            if not any(k in recorded for k in wanted):
                # Parameter predates tagging: adopt it as-is.
                self._tag_generation(name, wanted)
                log(f"Adopted existing secret parameter: '{name}'")
                return SecretHandle(name=name, store_arn=existing["ARN"])
            if all(recorded.get(k) == v for k, v in wanted.items()):
                log(f"Using existing secret parameter: '{name}'")
                return SecretHandle(name=name, store_arn=existing["ARN"])
            log(f"Generation parameters changed for '{name}', rotating secret")

        value = generate_password(length, self.rng)
        try:
            if existing:
                self.ssm.put_parameter(
                    Name=name, Value=value, Type="SecureString", Overwrite=True
                )
                self._tag_generation(name, wanted)
                log(f"Rotated secret parameter: '{name}'")
            else:
                self.ssm.put_parameter(
                    Name=name,
                    Value=value,
                    Type="SecureString",
                    Description="Administrator password for gamingvm instance",
                    Tags=[
                        {"Key": "ManagedBy", "Value": "gamingvm"},
                        *({"Key": k, "Value": v} for k, v in wanted.items()),
                    ],
                )
                log(f"Created secret parameter: '{name}'")
        except ClientError as e:
            raise ProviderCallError("secret", "PutParameter", e) from e

        stored = self._get_parameter(name)
        return SecretHandle(name=name, store_arn=stored["ARN"])

    def reveal(self, handle: SecretHandle | str) -> Sensitive[str]:
        """Read the decrypted value. This is the only read path for the raw secret."""
        name = handle.name if isinstance(handle, SecretHandle) else handle
        try:
            parameter = self.ssm.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            raise ProviderCallError("secret", "GetParameter", e) from e
        return Sensitive(parameter["Parameter"]["Value"])
