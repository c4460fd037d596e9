#!/usr/bin/env python3
"""Manage machines on the Outscale compute API.

Credentials and defaults come from OS_* environment variables (or a .env
file); options given on the command line take precedence.

Usage: uv run oscmachine <command> [options]

Examples:
    uv run oscmachine create prod-node1 --vpc-id vpc-0123
    uv run oscmachine status prod-node1
    uv run oscmachine ssh prod-node1 "uptime"
    uv run oscmachine rm prod-node1
"""

import logging
from typing import Annotated

import cyclopts
from fabric import Connection
from rich import print

from .driver import Driver
from .errors import DriverError
from .store import default_store_path, delete_machine, list_machines, load_machine, save_machine
from .utils import LogStream, error, log, setup_logging

app = cyclopts.App(name="oscmachine", help="Manage Outscale machines", sort_key=None)


@app.meta.default
def launcher(
    *tokens: Annotated[str, cyclopts.Parameter(show=False, allow_leading_hyphen=True)],
    verbose: bool = False,
):
    """:param verbose: Enable debug logging"""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    app(tokens)


def main():
    app.meta()


def _load(name: str, store_path: str | None) -> Driver:
    try:
        data = load_machine(name, store_path or default_store_path())
    except DriverError as e:
        error(str(e))
    return Driver.from_dict(data)


@app.command(name="create")
def create_machine(
    name: str,
    *,
    store_path: str | None = None,
    region: str | None = None,
    zone: str | None = None,
    image_id: str | None = None,
    instance_type: str | None = None,
    vpc_id: str | None = None,
    subnet_id: str | None = None,
    security_group: list[str] | None = None,
    open_port: list[str] | None = None,
    tags: str | None = None,
    device_name: str | None = None,
    root_size: int | None = None,
    volume_type: str | None = None,
    iam_instance_profile: str | None = None,
    ssh_user: str | None = None,
    ssh_keypath: str | None = None,
    keypair_name: str | None = None,
    private_address_only: bool = False,
    use_private_address: bool = False,
    use_ebs_optimized_instance: bool = False,
    retries: int | None = None,
    endpoint: str | None = None,
    userdata: str | None = None,
    metadata_endpoint: str | None = None,
    metadata_tokens: str | None = None,
):
    """Create a machine and save its record.

    :param name: Machine name, formatted <cluster>-<node>
    :param store_path: Directory for machine records and SSH keys
    :param region: Region (default: OS_DEFAULT_REGION or us-east-2)
    :param zone: Availability zone
    :param image_id: Machine image id
    :param instance_type: Instance type (default: m5.xlarge)
    :param vpc_id: VPC id (default: the account's default VPC)
    :param subnet_id: Subnet id (default: a subnet in the zone)
    :param security_group: Security group name, repeatable (default: rancher-nodes)
    :param open_port: Extra port to open as port[/protocol], repeatable
    :param tags: Extra instance tags as key1,value1,key2,value2
    :param device_name: Root device name (default: the image's root device)
    :param root_size: Root disk size in GB
    :param volume_type: Root volume type
    :param iam_instance_profile: IAM instance profile name
    :param ssh_user: SSH user
    :param ssh_keypath: SSH private key to use instead of generating one
    :param keypair_name: Existing key pair name; requires --ssh-keypath
    :param private_address_only: Only use a private IP address
    :param use_private_address: Force the usage of the private IP address
    :param use_ebs_optimized_instance: Create an EBS optimized instance
    :param retries: Retry count for recoverable API failures (-1 disables)
    :param endpoint: API endpoint (hostname or URL)
    :param userdata: Path to a cloud-init user data file
    :param metadata_endpoint: Instance metadata endpoint mode (enabled/disabled)
    :param metadata_tokens: Instance metadata token mode (optional/required)
    """
    driver = Driver.from_env(
        name,
        store_path,
        region=region,
        zone=zone,
        image_id=image_id,
        instance_type=instance_type,
        vpc_id=vpc_id,
        subnet_id=subnet_id,
        security_group_names=security_group,
        open_ports=open_port,
        tags=tags,
        device_name=device_name,
        root_size=root_size,
        volume_type=volume_type,
        iam_instance_profile=iam_instance_profile,
        ssh_user=ssh_user,
        ssh_private_key_path=ssh_keypath,
        key_name=keypair_name,
        private_ip_only=private_address_only or None,
        use_private_ip=use_private_address or None,
        use_ebs_optimized=use_ebs_optimized_instance or None,
        retry_count=retries,
        endpoint=endpoint,
        user_data_file=userdata,
        http_endpoint=metadata_endpoint,
        http_tokens=metadata_tokens,
    )

    log(f"Creating machine '{name}' in '{driver.region}' ('{driver.instance_type}')...")
    try:
        driver.validate()
        driver.pre_create_check()
        driver.create()
    except (DriverError, KeyboardInterrupt) as e:
        if getattr(e, "cleanup_error", None):
            save_machine(driver.to_dict())
            log(f"Machine record kept, run 'oscmachine rm {name}' to retry the cleanup")
        error(f"Error creating machine: {str(e) or 'interrupted'}")

    save_machine(driver.to_dict())
    print(f"  IP: {driver.ip_address}")
    print(f"  SSH: ssh -i {driver.ssh_key_path} {driver.get_ssh_username()}@{driver.ip_address}")


@app.command(name="start")
def start_machine(name: str, *, store_path: str | None = None):
    """Start a stopped machine and wait until it runs."""
    driver = _load(name, store_path)
    try:
        driver.start()
    except DriverError as e:
        error(str(e))
    log(f"Machine '{name}' started")


@app.command(name="stop")
def stop_machine(name: str, *, store_path: str | None = None):
    """Stop a machine gracefully."""
    driver = _load(name, store_path)
    try:
        driver.stop()
    except DriverError as e:
        error(str(e))
    log(f"Stopping machine '{name}'")


@app.command(name="restart")
def restart_machine(name: str, *, store_path: str | None = None):
    """Reboot a machine."""
    driver = _load(name, store_path)
    try:
        driver.restart()
    except DriverError as e:
        error(str(e))
    log(f"Restarting machine '{name}'")


@app.command(name="kill")
def kill_machine(name: str, *, store_path: str | None = None):
    """Force-stop a machine."""
    driver = _load(name, store_path)
    try:
        driver.kill()
    except DriverError as e:
        error(str(e))
    log(f"Killed machine '{name}'")


@app.command(name="rm")
def remove_machine(name: str, *, store_path: str | None = None, force: bool = False):
    """Remove a machine, its elastic IP and its key pair, then its local record.

    :param name: Machine name
    :param store_path: Directory for machine records and SSH keys
    :param force: Skip confirmation prompt
    """
    driver = _load(name, store_path)

    print("[yellow]Machine to remove:[/yellow]")
    print(f"  Name: {name}")
    print(f"  Instance: {driver.instance_id or '-'}")
    print(f"  IP: {driver.ip_address or '-'}")

    if not force:
        confirm = input("Remove this machine? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    try:
        driver.remove()
    except DriverError as e:
        error(f"Error removing machine:\n{e}")
    delete_machine(name, driver.store_path)
    log(f"Machine '{name}' removed")


@app.command(name="ip")
def show_ip(name: str, *, store_path: str | None = None):
    """Print the machine's IP address."""
    driver = _load(name, store_path)
    try:
        print(driver.get_ip())
    except DriverError as e:
        error(str(e))


@app.command(name="url")
def show_url(name: str, *, store_path: str | None = None):
    """Print the machine's control-plane URL."""
    driver = _load(name, store_path)
    try:
        print(driver.get_url())
    except DriverError as e:
        error(str(e))


@app.command(name="status")
def show_status(name: str, *, store_path: str | None = None):
    """Print the machine's state."""
    driver = _load(name, store_path)
    try:
        print(driver.get_state())
    except DriverError as e:
        error(str(e))


@app.command(name="inspect")
def inspect_machine(name: str, *, store_path: str | None = None):
    """Print the stored machine record without credentials."""
    data = _load(name, store_path).to_dict()
    for secret in ("access_key", "secret_key", "session_token"):
        if data.get(secret):
            data[secret] = "***"
    print(data)


@app.command(name="ls")
def list_all(*, store_path: str | None = None):
    """List stored machines."""
    for name in list_machines(store_path or default_store_path()):
        print(name)


@app.command(name="ssh")
def run_ssh(name: str, command: str, *, store_path: str | None = None):
    """Run a command on the machine over SSH.

    :param name: Machine name
    :param command: Shell command to run
    :param store_path: Directory for machine records and SSH keys
    """
    driver = _load(name, store_path)
    try:
        host = driver.get_ssh_hostname()
    except DriverError as e:
        error(str(e))

    stream = LogStream()
    with Connection(
        host,
        user=driver.get_ssh_username(),
        port=driver.ssh_port,
        connect_kwargs={"key_filename": driver.ssh_key_path, "look_for_keys": False},
    ) as c:
        result = c.run(command, hide=True, warn=True, in_stream=False,
                       out_stream=stream, err_stream=stream)
    stream.flush()
    if result.failed:
        error(f"SSH command failed with exit code {result.exited}")


if __name__ == "__main__":
    main()
