"""Best-effort teardown of a machine's remote resources."""

from typing import TYPE_CHECKING

from .client import SDK_ERRORS, Ec2Client, is_not_found
from .errors import ApiError, DriverError, MultiError
from .keys import delete_key_pair
from .utils import debug, warn

if TYPE_CHECKING:
    from .driver import Driver


def terminate_instance(client: Ec2Client, machine: "Driver") -> None:
    """Terminate the instance; an instance that is already gone counts as done.

    :raises ApiError: If termination fails for any other reason
    """
    if not machine.instance_id:
        warn("Missing instance ID, this is likely due to a failure during machine creation")
        return

    debug(f"terminating instance: {machine.instance_id}")
    try:
        client.terminate_instances(InstanceIds=[machine.instance_id])
    except SDK_ERRORS as e:
        if is_not_found(e):
            warn("Remote instance does not exist, proceeding with removing local reference")
            return
        raise ApiError(f"unable to terminate instance: {e}") from e


def release_elastic_ip(client: Ec2Client, machine: "Driver") -> None:
    """Disassociate and release the machine's elastic IP, if one was allocated.

    :raises ApiError: If the address cannot be released
    """
    if machine.association_id:
        debug(f"disassociating address: {machine.association_id}")
        try:
            client.disassociate_address(AssociationId=machine.association_id)
        except SDK_ERRORS as e:
            if not is_not_found(e):
                raise ApiError(f"unable to disassociate external IP: {e}") from e

    if not machine.allocation_id:
        return

    debug(f"releasing address: {machine.allocation_id}")
    try:
        client.release_address(AllocationId=machine.allocation_id)
    except SDK_ERRORS as e:
        if is_not_found(e):
            warn(f"External IP allocation '{machine.allocation_id}' does not exist")
            return
        raise ApiError(f"unable to release external IP {machine.public_ip}: {e}") from e


def remove_machine(client: Ec2Client, machine: "Driver") -> None:
    """Tear down the instance, its elastic IP and, when owned, its key pair.

    Each step runs even when an earlier one failed.

    :raises MultiError: Listing every step that failed
    """
    errors: list[Exception] = []
    steps = [terminate_instance, release_elastic_ip]
    if not machine.existing_key:
        steps.append(delete_key_pair)

    for step in steps:
        try:
            step(client, machine)
        except DriverError as e:
            errors.append(e)

    if errors:
        raise MultiError(errors)
