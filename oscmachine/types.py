"""Type definitions for oscmachine."""

from typing import Literal, TypedDict

MachineState = Literal["Starting", "Running", "Stopping", "Stopped", "Error"]


class MachineData(TypedDict, total=False):
    """Machine data stored in .machine.json files.

    Holds the provisioning configuration and the instance record; the host
    tool persists and restores it verbatim between invocations.
    """

    id: str
    name: str
    store_path: str

    # Provisioning configuration
    access_key: str
    secret_key: str
    session_token: str
    region: str
    zone: str
    image_id: str
    instance_type: str
    vpc_id: str
    subnet_id: str
    security_group_names: list[str]
    open_ports: list[str]
    tags: str
    device_name: str
    root_size: int
    volume_type: str
    iam_instance_profile: str
    ssh_user: str
    ssh_port: int
    private_ip_only: bool
    use_private_ip: bool
    use_ebs_optimized: bool
    ssh_private_key_path: str
    retry_count: int
    endpoint: str
    user_data_file: str
    http_endpoint: str
    http_tokens: str
    control_plane_port: int
    swarm_master: bool
    swarm_host: str
    swarm_port: int

    # Instance record
    instance_id: str
    key_name: str
    existing_key: bool
    security_group_ids: list[str]
    ip_address: str
    private_ip_address: str
    allocation_id: str
    public_ip: str
    association_id: str
    block_device_mappings: list[dict]
