"""Availability zone selection."""

import random
from collections.abc import Iterable, Sequence

from botocore.exceptions import ClientError

from .errors import NoZonesAvailableError, ProviderCallError


def discover_zones(ec2) -> list[str]:
    """Return the names of zones the provider reports as available.

    :param ec2: Boto3 EC2 client instance
    :return: Full zone names, e.g. ``["us-east-1a", "us-east-1b"]``
    """
    try:
        response = ec2.describe_availability_zones(
            Filters=[{"Name": "state", "Values": ["available"]}]
        )
    except ClientError as e:
        raise ProviderCallError("zones", "DescribeAvailabilityZones", e) from e
    return [z["ZoneName"] for z in response["AvailabilityZones"]]


def zone_candidates(
    allowed_suffixes: Iterable[str], available_zones: Sequence[str]
) -> list[str]:
    """Resolve the candidate zone suffixes.

    A non-empty allow-list fully overrides discovery. Output is sorted so a
    selection index means the same zone on every call.
    """
    allowed = {s for s in allowed_suffixes if s}
    if allowed:
        return sorted(allowed)
    return sorted({zone[-1] for zone in available_zones if zone})


def select_zone(
    allowed_suffixes: Iterable[str],
    available_zones: Sequence[str],
    region: str,
    rng: random.Random,
) -> str:
    """Pick one zone uniformly at random from the candidates.

    :param allowed_suffixes: Explicit zone suffixes (e.g. ``{"a", "b"}``), may be empty
    :param available_zones: Zone names reported by the provider
    :param region: Region prefix, e.g. ``us-east-1``
    :param rng: Random source, seeded once per run by the caller
    :return: Concrete zone name, e.g. ``us-east-1b``
    :raises NoZonesAvailableError: If there are no candidates
    """
    candidates = zone_candidates(allowed_suffixes, available_zones)
    if not candidates:
        raise NoZonesAvailableError(region)
    return region + candidates[rng.randrange(len(candidates))]


def keep_or_select_zone(
    previous: str | None,
    allowed_suffixes: Iterable[str],
    available_zones: Sequence[str],
    region: str,
    rng: random.Random,
    *,
    reroll: bool = False,
) -> str:
    """Reuse the zone from a previous run while it is still a candidate."""
    allowed_suffixes = list(allowed_suffixes)
    candidates = zone_candidates(allowed_suffixes, available_zones)
    if (
        previous
        and not reroll
        and previous.startswith(region)
        and previous[len(region):] in candidates
    ):
        return previous
    return select_zone(allowed_suffixes, available_zones, region, rng)
