"""Security group reconciliation.

Makes sure every configured security group exists in the machine's VPC, is
tagged as managed, and carries at least the inbound rules the machine needs.
Only missing rules are submitted, so reconciling an already provisioned group
is a no-op.
"""

from typing import TYPE_CHECKING, Literal, NamedTuple

from .client import SDK_ERRORS, Ec2Client, is_duplicate
from .errors import ApiError, ConfigurationError
from .utils import debug, get_version, log
from .waiter import wait_for

if TYPE_CHECKING:
    from .driver import Driver

DEFAULT_SECURITY_GROUP = "rancher-nodes"
MANAGED_TAG = "rancher-nodes"
SECURITY_GROUP_DESCRIPTION = "Rancher Nodes"
ANY_SOURCE = "0.0.0.0/0"

SSH_PORT = 22
DEFAULT_CONTROL_PLANE_PORT = 2376
DEFAULT_SWARM_PORT = 3376
MAX_PORT = 65535


class PortRule(NamedTuple):
    protocol: str
    from_port: int
    to_port: int
    # "any": open to 0.0.0.0/0, "group": open to members of the same group
    scope: Literal["any", "group"]


CLUSTER_RULES: tuple[PortRule, ...] = (
    PortRule("tcp", 6443, 6443, "any"),  # kube-apiserver
    PortRule("tcp", 2379, 2380, "group"),  # etcd
    PortRule("udp", 4789, 4789, "group"),  # vxlan
    PortRule("udp", 8472, 8472, "group"),  # flannel
    PortRule("tcp", 10250, 10252, "group"),  # kubelet, scheduler, controller
    PortRule("tcp", 10256, 10256, "group"),  # kube-proxy
    PortRule("tcp", 9796, 9796, "group"),  # node exporter
    PortRule("tcp", 30000, 32767, "any"),  # node ports
    PortRule("udp", 30000, 32767, "any"),
    PortRule("tcp", 80, 80, "any"),  # ingress
    PortRule("tcp", 443, 443, "any"),
    PortRule("tcp", 179, 179, "group"),  # calico BGP
)


def parse_port(text: str) -> tuple[int, str]:
    """Parse an extra open port given as ``port[/protocol]``.

    :param text: Port and optional protocol, e.g. ``8080`` or ``53/udp``
    :return: (port, protocol), protocol lowercased and defaulting to tcp
    :raises ConfigurationError: If the port is not a number in 0-65535
    """
    port, _, protocol = text.partition("/")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigurationError(f"invalid port number '{port}' in '{text}'") from None
    if not 0 <= port_num <= MAX_PORT:
        raise ConfigurationError(f"port {port_num} out of range in '{text}'")
    return port_num, (protocol or "tcp").lower()


def has_tag_key(group: dict, key: str) -> bool:
    return any(tag.get("Key") == key for tag in group.get("Tags", []))


def permission_keys(group: dict) -> set[str]:
    """:return: ``from_port/protocol`` keys of the group's inbound rules"""
    return {
        f"{perm['FromPort']}/{perm['IpProtocol']}"
        for perm in group.get("IpPermissions", [])
        if perm.get("FromPort") is not None
    }


def _permission(rule: PortRule, group_id: str) -> dict:
    permission = {
        "IpProtocol": rule.protocol,
        "FromPort": rule.from_port,
        "ToPort": rule.to_port,
    }
    if rule.scope == "group":
        permission["UserIdGroupPairs"] = [{"GroupId": group_id}]
    else:
        permission["IpRanges"] = [{"CidrIp": ANY_SOURCE}]
    return permission


def missing_permissions(group: dict, machine: "Driver") -> list[dict]:
    """Compute the inbound rules the group still lacks.

    Rules are keyed by ``from_port/protocol``; a key that is already present on
    the group, or already queued, is never queued again.

    :param group: Security group as returned by describe_security_groups
    :param machine: Driver holding the machine configuration
    :return: IpPermissions entries to authorize, in a stable order
    """
    seen = permission_keys(group)
    permissions = []

    def add(rule: PortRule) -> None:
        key = f"{rule.from_port}/{rule.protocol}"
        if key in seen:
            return
        seen.add(key)
        permissions.append(_permission(rule, group["GroupId"]))

    add(PortRule("tcp", SSH_PORT, SSH_PORT, "any"))
    port = machine.control_plane_port
    add(PortRule("tcp", port, port, "any"))
    if machine.swarm_master:
        add(PortRule("tcp", machine.swarm_port, machine.swarm_port, "any"))

    # cluster ports only go on the default group this driver manages
    if group.get("GroupName") == DEFAULT_SECURITY_GROUP and has_tag_key(group, MANAGED_TAG):
        for rule in CLUSTER_RULES:
            add(rule)

    for entry in machine.open_ports:
        port, protocol = parse_port(entry)
        add(PortRule(protocol, port, port, "any"))

    debug(f"configuring security group authorization for {ANY_SOURCE}")
    return permissions


def _describe_groups(client: Ec2Client, names: list[str], vpc_id: str) -> list[dict]:
    try:
        return client.describe_security_groups(
            Filters=[
                {"Name": "group-name", "Values": names},
                {"Name": "vpc-id", "Values": [vpc_id]},
            ]
        )["SecurityGroups"]
    except SDK_ERRORS as e:
        raise ApiError(f"unable to describe security groups: {e}") from e


def security_group_available(client: Ec2Client, group_id: str):
    """Build a wait predicate that is True once the group can be queried."""

    def available() -> bool:
        try:
            groups = client.describe_security_groups(GroupIds=[group_id])["SecurityGroups"]
        except SDK_ERRORS as e:
            debug(str(e))
            return False
        if not groups:
            debug(f"No security group with id {group_id} found")
            return False
        return True

    return available


def _create_security_group(client: Ec2Client, name: str, vpc_id: str) -> dict:
    """Create a security group, adopting one that appeared concurrently."""
    log(f"Creating security group '{name}' in '{vpc_id}'...")
    try:
        response = client.create_security_group(
            GroupName=name,
            Description=SECURITY_GROUP_DESCRIPTION,
            VpcId=vpc_id,
        )
        group = {
            "GroupId": response["GroupId"],
            "GroupName": name,
            "VpcId": vpc_id,
            "IpPermissions": [],
        }
    except SDK_ERRORS as e:
        if not is_duplicate(e):
            raise ApiError(f"unable to create security group '{name}': {e}") from e
        debug(f"security group '{name}' already exists, adopting it")
        groups = _describe_groups(client, [name], vpc_id)
        if not groups:
            raise ApiError(f"can't find security group '{name}' in '{vpc_id}'") from e
        group = groups[0]

    version = get_version()
    try:
        client.create_tags(
            Resources=[group["GroupId"]],
            Tags=[{"Key": MANAGED_TAG, "Value": version}],
        )
    except SDK_ERRORS as e:
        if not is_duplicate(e):
            raise ApiError(f"can't create tag for security group '{name}': {e}") from e

    group["Tags"] = [{"Key": MANAGED_TAG, "Value": version}]

    debug(f"waiting for group '{group['GroupId']}' to become available")
    wait_for(
        security_group_available(client, group["GroupId"]),
        f"security group '{group['GroupId']}'",
    )
    return group


def configure_security_groups(client: Ec2Client, machine: "Driver") -> list[str]:
    """Ensure the machine's security groups exist and carry the required rules.

    :param client: EC2 client
    :param machine: Driver holding the machine configuration
    :return: Group ids, one per configured group name, in the same order
    :raises ApiError: If a group cannot be created, found or authorized
    :raises ConfigurationError: If an extra open port cannot be parsed
    """
    names = machine.security_group_names
    vpc_id = machine.vpc_id
    if not names:
        debug(f"no security groups to configure in {vpc_id}")
        machine.security_group_ids = []
        return []

    debug(f"configuring security groups in {vpc_id}")
    groups_by_name = {g["GroupName"]: g for g in _describe_groups(client, names, vpc_id)}

    group_ids = []
    for name in names:
        group = groups_by_name.get(name)
        if group:
            debug(f"found existing security group '{name}' in {vpc_id}")
        else:
            group = _create_security_group(client, name, vpc_id)
            groups_by_name[name] = group
        group_ids.append(group["GroupId"])

        permissions = missing_permissions(group, machine)
        if not permissions:
            continue

        log(f"Authorizing {len(permissions)} inbound rule(s) on '{name}'")
        try:
            client.authorize_security_group_ingress(
                GroupId=group["GroupId"], IpPermissions=permissions
            )
        except SDK_ERRORS as e:
            if not is_duplicate(e):
                raise ApiError(f"unable to authorize security group '{name}': {e}") from e
            debug(f"rules on '{name}' were added concurrently")

    machine.security_group_ids = group_ids
    return group_ids
