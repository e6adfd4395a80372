"""Local state: what the last run created, stored in <name>.instance.json."""

import json
from pathlib import Path

from .types import InstanceData, Sensitive


def state_path(name: str) -> Path:
    return Path(f"{name}.instance.json")


def load_instance(name: str) -> InstanceData | None:
    """Load instance data from JSON file.

    :param name: Resource name prefix (JSON file prefix)
    :return: Instance data dictionary, or None if no state file exists
    """
    path = state_path(name)
    if not path.exists():
        return None
    return json.loads(path.read_text())


def save_instance(name: str, data: InstanceData) -> None:
    """Save instance data to JSON file.

    :param name: Resource name prefix (JSON file prefix)
    :param data: Instance data dictionary to save
    """
    for key, value in data.items():
        if isinstance(value, Sensitive):
            raise TypeError(f"Refusing to write sensitive value '{key}' to state")
    state_path(name).write_text(json.dumps(data, indent=2))


def delete_instance_state(name: str) -> None:
    state_path(name).unlink(missing_ok=True)
