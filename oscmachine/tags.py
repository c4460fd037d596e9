"""Instance tagging."""

from typing import TYPE_CHECKING

from .client import SDK_ERRORS, Ec2Client
from .errors import ApiError, ConfigurationError
from .utils import debug, warn

if TYPE_CHECKING:
    from .driver import Driver

CLUSTER_SEPARATOR = "-"
CLUSTER_TAG_PREFIX = "OscK8sClusterID/"
NODE_NAME_TAG = "OscK8sNodeName"


def parse_tags(text: str | None) -> list[dict]:
    """Parse user tags given as ``key1,value1,key2,value2``.

    A trailing token without a value is dropped with a warning.
    """
    if not text:
        return []
    tokens = text.split(",")
    if len(tokens) % 2 != 0:
        warn(f"Tags are not key value in pairs. {len(tokens)} elements found")
    return [
        {"Key": tokens[i], "Value": tokens[i + 1]} for i in range(0, len(tokens) - 1, 2)
    ]


def cluster_id(machine_name: str) -> str:
    """Cluster identifier: the machine name up to its first hyphen.

    :raises ConfigurationError: If the name has no hyphen
    """
    cluster, sep, _ = machine_name.partition(CLUSTER_SEPARATOR)
    if not sep or not cluster:
        raise ConfigurationError(
            f"Machine name '{machine_name}' must look like '<cluster>-<node>'"
        )
    return cluster


def instance_tags(machine_name: str, extra: str | None = None) -> list[dict]:
    return [
        {"Key": "Name", "Value": machine_name},
        {"Key": CLUSTER_TAG_PREFIX + cluster_id(machine_name), "Value": "owned"},
        {"Key": NODE_NAME_TAG, "Value": machine_name},
        *parse_tags(extra),
    ]


def configure_tags(client: Ec2Client, machine: "Driver") -> None:
    debug("Setting tags for instance")
    tags = instance_tags(machine.name, machine.tags)
    try:
        client.create_tags(Resources=[machine.instance_id], Tags=tags)
    except SDK_ERRORS as e:
        raise ApiError(f"unable to tag instance {machine.instance_id}: {e}") from e
