"""Instance provisioning.

Brings a configured machine from "absent" to "running with a reachable IP".
Every remote resource is recorded on the machine as soon as it exists so a
failed run can be rolled back by the teardown code.
"""

import copy
from pathlib import Path
from typing import TYPE_CHECKING

from .client import SDK_ERRORS, Ec2Client
from .errors import ApiError, ConfigurationError, DriverError, IPAddressNotFoundError, UserDataError
from .keys import create_key_pair
from .regions import region_zone
from .security import configure_security_groups
from .tags import configure_tags
from .types import MachineState
from .utils import debug, log, warn
from .waiter import wait_for

if TYPE_CHECKING:
    from .driver import Driver

STATES: dict[str, MachineState] = {
    "pending": "Starting",
    "running": "Running",
    "stopping": "Stopping",
    "shutting-down": "Stopping",
    "stopped": "Stopped",
    "terminated": "Error",
}


def map_state(raw_state: str) -> MachineState:
    """Map a provider instance state name to a machine state."""
    state = STATES.get(raw_state)
    if state is None:
        warn(f"unrecognized instance state: {raw_state}")
        return "Error"
    return state


def get_instance(client: Ec2Client, instance_id: str) -> dict:
    """:raises ApiError: If the instance cannot be described"""
    try:
        response = client.describe_instances(InstanceIds=[instance_id])
    except SDK_ERRORS as e:
        raise ApiError(f"unable to describe instance {instance_id}: {e}") from e
    reservations = response.get("Reservations", [])
    if not reservations or not reservations[0].get("Instances"):
        raise ApiError(f"instance {instance_id} not found")
    return reservations[0]["Instances"][0]


def resolve_ip(instance: dict, machine: "Driver") -> str:
    """Pick the address the machine is reached on.

    Private-only and force-private machines always use the private address,
    even when a public one is present.

    :raises IPAddressNotFoundError: If the expected address field is absent
    """
    if machine.private_ip_only or machine.use_private_ip:
        ip = instance.get("PrivateIpAddress")
        if not ip:
            raise IPAddressNotFoundError(f"No private IP for instance {instance['InstanceId']}")
        return ip

    ip = instance.get("PublicIpAddress")
    if not ip:
        raise IPAddressNotFoundError(f"No IP for instance {instance['InstanceId']}")
    return ip


def instance_running(client: Ec2Client, machine: "Driver"):
    """Build a wait predicate that is True once the instance is running."""

    def running() -> bool:
        try:
            instance = get_instance(client, machine.instance_id)
        except DriverError as e:
            debug(str(e))
            return False
        return map_state(instance["State"]["Name"]) == "Running"

    return running


def instance_ip_available(client: Ec2Client, machine: "Driver"):
    """Build a wait predicate that is True once the instance reports its IP."""

    def ip_available() -> bool:
        try:
            instance = get_instance(client, machine.instance_id)
            ip = resolve_ip(instance, machine)
        except DriverError as e:
            debug(str(e))
            return False
        machine.ip_address = ip
        if instance.get("PrivateIpAddress"):
            machine.private_ip_address = instance["PrivateIpAddress"]
        debug(f"Got the IP address, it's '{ip}'")
        return True

    return ip_available


def wait_for_instance(client: Ec2Client, machine: "Driver") -> None:
    wait_for(instance_running(client, machine), f"instance {machine.instance_id} to run")


def read_user_data(path: str) -> str:
    """Read the cloud-init user data file.

    botocore base64-encodes UserData for RunInstances, so the raw text is
    returned here.

    :raises UserDataError: If the file cannot be read
    """
    try:
        return Path(path).read_text()
    except (OSError, UnicodeDecodeError) as e:
        warn(f"failed to read user data file '{path}': {e}")
        raise UserDataError(path) from e


def update_block_device_mappings(
    mappings: list[dict], device_name: str, root_size: int, volume_type: str
) -> list[dict]:
    """Derive launch block device mappings from the image's mappings.

    Only EBS entries are kept. The root device gets the configured size and
    volume type, and every entry is deleted with the instance.
    """
    result = []
    for mapping in copy.deepcopy(mappings):
        ebs = mapping.get("Ebs")
        if ebs is None:
            continue
        if mapping.get("DeviceName") == device_name:
            ebs["VolumeSize"] = root_size
            ebs["VolumeType"] = volume_type
        ebs["DeleteOnTermination"] = True
        result.append(mapping)
    return result


def check_subnet(client: Ec2Client, machine: "Driver") -> None:
    """Resolve a subnet in the machine's zone when none is configured."""
    if machine.subnet_id:
        return

    zone = region_zone(machine.region, machine.zone, machine.endpoint)
    try:
        subnets = client.describe_subnets(
            Filters=[
                {"Name": "availability-zone", "Values": [zone]},
                {"Name": "vpc-id", "Values": [machine.vpc_id]},
            ]
        )["Subnets"]
    except SDK_ERRORS as e:
        raise ApiError(f"unable to describe subnets: {e}") from e

    if not subnets:
        raise ConfigurationError(f"unable to find a subnet in the zone: {zone}")

    chosen = next((s for s in subnets if s.get("DefaultForAz")), subnets[0])
    machine.subnet_id = chosen["SubnetId"]
    log(f"Using subnet '{machine.subnet_id}' in VPC '{machine.vpc_id}'")


def check_image(client: Ec2Client, machine: "Driver") -> None:
    """Look up the source image and capture its root device and mappings."""
    try:
        images = client.describe_images(ImageIds=[machine.image_id])["Images"]
    except SDK_ERRORS as e:
        raise ApiError(f"unable to describe image {machine.image_id}: {e}") from e

    if not images:
        zone = region_zone(machine.region, machine.zone, machine.endpoint)
        raise ConfigurationError(f"image {machine.image_id} not found in {zone}")

    image = images[0]
    if not machine.device_name:
        machine.device_name = image.get("RootDeviceName", "")
    machine.block_device_mappings = image.get("BlockDeviceMappings", [])


def _run_instance(client: Ec2Client, machine: "Driver", user_data: str | None) -> dict:
    zone = region_zone(machine.region, machine.zone, machine.endpoint)
    params = {
        "ImageId": machine.image_id,
        "MinCount": 1,
        "MaxCount": 1,
        "Placement": {"AvailabilityZone": zone},
        "KeyName": machine.key_name,
        "InstanceType": machine.instance_type,
        "NetworkInterfaces": [
            {
                "DeviceIndex": 0,
                "Groups": list(machine.security_group_ids),
                "SubnetId": machine.subnet_id,
                "AssociatePublicIpAddress": not machine.private_ip_only,
            }
        ],
        "EbsOptimized": machine.use_ebs_optimized,
        "BlockDeviceMappings": update_block_device_mappings(
            machine.block_device_mappings,
            machine.device_name,
            machine.root_size,
            machine.volume_type,
        ),
    }
    if machine.iam_instance_profile:
        params["IamInstanceProfile"] = {"Name": machine.iam_instance_profile}
    if user_data:
        params["UserData"] = user_data

    debug(f"launching instance in subnet {machine.subnet_id}")
    try:
        response = client.run_instances(**params)
    except SDK_ERRORS as e:
        raise ApiError(f"error launching instance: {e}") from e
    return response["Instances"][0]


def _attach_elastic_ip(client: Ec2Client, machine: "Driver") -> None:
    debug("Allocating external IP address")
    try:
        address = client.allocate_address(Domain="vpc")
    except SDK_ERRORS as e:
        raise ApiError(f"error allocating external IP: {e}") from e
    machine.allocation_id = address["AllocationId"]
    machine.public_ip = address["PublicIp"]

    debug("Associating external IP address")
    try:
        association = client.associate_address(
            AllocationId=machine.allocation_id,
            InstanceId=machine.instance_id,
        )
    except SDK_ERRORS as e:
        raise ApiError(f"error associating external IP: {e}") from e
    machine.association_id = association.get("AssociationId", "")

    debug("waiting for IP address to become available")
    wait_for(instance_ip_available(client, machine), f"IP address of {machine.instance_id}")


def _configure_metadata_options(client: Ec2Client, machine: "Driver") -> None:
    options = {}
    if machine.http_endpoint:
        options["HttpEndpoint"] = machine.http_endpoint
    if machine.http_tokens:
        options["HttpTokens"] = machine.http_tokens
    if not options:
        return
    try:
        client.modify_instance_metadata_options(InstanceId=machine.instance_id, **options)
    except SDK_ERRORS as e:
        raise ApiError(
            f"error modifying instance metadata options for instance: {e}"
        ) from e


def provision(client: Ec2Client, machine: "Driver") -> None:
    """Create the machine's instance and everything it depends on.

    Expects check_subnet() and check_image() to have run. The caller is
    responsible for tearing down partially created resources on failure.

    :raises DriverError: On any configuration, API or wait failure
    """
    log("Launching instance...")

    # local input first, so a bad file fails before anything remote exists
    user_data = read_user_data(machine.user_data_file) if machine.user_data_file else None

    create_key_pair(client, machine)
    configure_security_groups(client, machine)

    instance = _run_instance(client, machine, user_data)
    machine.instance_id = instance["InstanceId"]
    if instance.get("PrivateIpAddress"):
        machine.private_ip_address = instance["PrivateIpAddress"]
    log(f"Created instance '{machine.instance_id}', waiting for it to run...")

    wait_for_instance(client, machine)

    _attach_elastic_ip(client, machine)
    _configure_metadata_options(client, machine)

    debug(
        f"created instance ID {machine.instance_id}, IP address {machine.ip_address}, "
        f"private IP address {machine.private_ip_address}"
    )
    configure_tags(client, machine)
