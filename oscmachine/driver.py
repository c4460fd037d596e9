"""Machine lifecycle driver for the Outscale compute API.

The Driver holds one machine's provisioning configuration and instance
record, and exposes the lifecycle operations a host-management tool drives:
create, start, stop, restart, kill, remove, and IP/URL/state queries. State is
never cached locally; every query goes to the provider.
"""

import os
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .client import SDK_ERRORS, Ec2Client, build_client, check_credentials, get_session
from .errors import (
    ApiError,
    ConfigurationError,
    DriverError,
    IPAddressNotFoundError,
    MachineNotRunningError,
    MultiError,
    NoPrivateSSHKeyError,
    NoVPCError,
    SubnetNotFoundError,
)
from .provisioner import (
    check_image,
    check_subnet,
    get_instance,
    map_state,
    provision,
    resolve_ip,
    wait_for_instance,
)
from .regions import DEFAULT_REGION, DEFAULT_ZONE, default_image, validate_region
from .security import (
    DEFAULT_CONTROL_PLANE_PORT,
    DEFAULT_SECURITY_GROUP,
    DEFAULT_SWARM_PORT,
    parse_port,
)
from .store import default_store_path, machine_dir
from .tags import cluster_id
from .teardown import remove_machine
from .types import MachineData, MachineState
from .utils import debug, generate_id, log, logger, warn

DRIVER_NAME = "outscale"
DEFAULT_INSTANCE_TYPE = "m5.xlarge"
DEFAULT_ROOT_SIZE = 30
DEFAULT_VOLUME_TYPE = "gp2"
DEFAULT_SSH_USER = "outscale"
DEFAULT_RETRY_COUNT = 5
DEFAULT_ENDPOINT = "https://fcu.us-east-2.outscale.com"

FIELDS = tuple(MachineData.__annotations__)

STR_ENV_VARS = {
    "access_key": "OS_ACCESS_KEY_ID",
    "secret_key": "OS_SECRET_ACCESS_KEY",
    "session_token": "OS_SESSION_TOKEN",
    "image_id": "OS_AMI",
    "region": "OS_DEFAULT_REGION",
    "vpc_id": "OS_VPC_ID",
    "zone": "OS_ZONE",
    "subnet_id": "OS_SUBNET_ID",
    "tags": "OS_TAGS",
    "instance_type": "OS_INSTANCE_TYPE",
    "device_name": "OS_DEVICE_NAME",
    "volume_type": "OS_VOLUME_TYPE",
    "iam_instance_profile": "OS_INSTANCE_PROFILE",
    "ssh_user": "OS_SSH_USER",
    "ssh_private_key_path": "OS_SSH_KEYPATH",
    "key_name": "OS_KEYPAIR_NAME",
    "endpoint": "OS_ENDPOINT",
    "user_data_file": "OS_USERDATA",
}
INT_ENV_VARS = {"root_size": "OS_ROOT_SIZE"}
LIST_ENV_VARS = {"security_group_names": "OS_SECURITY_GROUP"}


class Driver:
    """One managed machine.

    :param name: Machine (host) name, formatted ``<cluster>-<node>``
    :param store_path: Directory holding machine records and SSH keys
    :param client_factory: Builds the EC2 client; defaults to a boto3 client
    """

    def __init__(
        self,
        name: str,
        store_path: str | Path | None = None,
        *,
        client_factory: Callable[["Driver"], Ec2Client] | None = None,
        **fields,
    ):
        self.id = generate_id()
        self.name = name
        self.store_path = str(store_path or default_store_path())

        self.access_key = ""
        self.secret_key = ""
        self.session_token = ""
        self.region = DEFAULT_REGION
        self.zone = DEFAULT_ZONE
        self.image_id = ""
        self.instance_type = DEFAULT_INSTANCE_TYPE
        self.vpc_id = ""
        self.subnet_id = ""
        self.security_group_names = [DEFAULT_SECURITY_GROUP]
        self.open_ports: list[str] = []
        self.tags = ""
        self.device_name = ""
        self.root_size = DEFAULT_ROOT_SIZE
        self.volume_type = DEFAULT_VOLUME_TYPE
        self.iam_instance_profile = ""
        self.ssh_user = DEFAULT_SSH_USER
        self.ssh_port = 22
        self.private_ip_only = False
        self.use_private_ip = False
        self.use_ebs_optimized = False
        self.ssh_private_key_path = ""
        self.retry_count = DEFAULT_RETRY_COUNT
        self.endpoint = DEFAULT_ENDPOINT
        self.user_data_file = ""
        self.http_endpoint = ""
        self.http_tokens = ""
        self.control_plane_port = DEFAULT_CONTROL_PLANE_PORT
        self.swarm_master = False
        self.swarm_host = ""
        self.swarm_port = DEFAULT_SWARM_PORT

        self.instance_id = ""
        self.key_name = ""
        # True when the key pair was supplied by the user; it is then never deleted
        self.existing_key = False
        self.security_group_ids: list[str] = []
        self.ip_address = ""
        self.private_ip_address = ""
        self.allocation_id = ""
        self.public_ip = ""
        self.association_id = ""
        self.block_device_mappings: list[dict] = []

        for key, value in fields.items():
            if key not in FIELDS:
                raise TypeError(f"Unknown machine field: '{key}'")
            setattr(self, key, value)

        self._client_factory = client_factory or Driver._build_client
        self._client: Ec2Client | None = None

    @classmethod
    def from_env(
        cls,
        name: str,
        store_path: str | Path | None = None,
        *,
        client_factory: Callable[["Driver"], Ec2Client] | None = None,
        **overrides,
    ) -> "Driver":
        """Build a driver from OS_* environment variables (and .env), then overrides.

        Overrides set to None are ignored so unset command-line options fall
        through to the environment and the defaults.
        """
        load_dotenv()

        fields = {}
        for key, var in STR_ENV_VARS.items():
            value = os.getenv(var)
            if value:
                fields[key] = value
        for key, var in INT_ENV_VARS.items():
            value = os.getenv(var)
            if value:
                try:
                    fields[key] = int(value)
                except ValueError:
                    raise ConfigurationError(f"{var} must be an integer, got '{value}'") from None
        for key, var in LIST_ENV_VARS.items():
            value = os.getenv(var)
            if value:
                fields[key] = [v.strip() for v in value.split(",") if v.strip()]

        fields.update({k: v for k, v in overrides.items() if v is not None})
        return cls(name, store_path, client_factory=client_factory, **fields)

    @classmethod
    def from_dict(
        cls,
        data: MachineData,
        *,
        client_factory: Callable[["Driver"], Ec2Client] | None = None,
    ) -> "Driver":
        fields = {k: v for k, v in data.items() if k not in ("name", "store_path")}
        return cls(
            data["name"], data.get("store_path"), client_factory=client_factory, **fields
        )

    def to_dict(self) -> MachineData:
        data = {}
        for key in FIELDS:
            value = getattr(self, key)
            data[key] = list(value) if isinstance(value, list) else value
        return data

    def driver_name(self) -> str:
        return DRIVER_NAME

    def _build_client(self) -> Ec2Client:
        return build_client(
            access_key=self.access_key,
            secret_key=self.secret_key,
            session_token=self.session_token,
            region=self.region,
            retry_count=self.retry_count,
            endpoint=self.endpoint,
        )

    @property
    def client(self) -> Ec2Client:
        if self._client is None:
            self._client = self._client_factory(self)
        return self._client

    @property
    def ssh_key_path(self) -> str:
        return str(machine_dir(self.name, self.store_path) / "id_rsa")

    def _check_credentials(self) -> None:
        check_credentials(
            get_session(self.access_key, self.secret_key, self.session_token, self.region)
        )

    def _default_vpc_id(self) -> str:
        try:
            attributes = self.client.describe_account_attributes()["AccountAttributes"]
        except SDK_ERRORS as e:
            raise ApiError(f"unable to describe account attributes: {e}") from e
        for attribute in attributes:
            if attribute.get("AttributeName") == "default-vpc":
                values = attribute.get("AttributeValues", [])
                if values and values[0].get("AttributeValue") not in (None, "", "none"):
                    return values[0]["AttributeValue"]
        raise ConfigurationError("No default-vpc attribute")

    def _check_subnet_in_vpc(self) -> None:
        try:
            subnets = self.client.describe_subnets(
                Filters=[{"Name": "subnet-id", "Values": [self.subnet_id]}]
            )["Subnets"]
        except SDK_ERRORS as e:
            raise ApiError(f"unable to describe subnet {self.subnet_id}: {e}") from e
        if not subnets:
            raise SubnetNotFoundError(self.subnet_id)
        if subnets[0].get("VpcId") != self.vpc_id:
            raise ConfigurationError(
                f"SubnetId: {self.subnet_id} does not belong to VpcId: {self.vpc_id}"
            )

    def _parse_swarm_port(self) -> int:
        try:
            port = urlparse(self.swarm_host).port
        except ValueError as e:
            raise ConfigurationError(f"error parsing swarm host: {e}") from e
        if port is None:
            raise ConfigurationError(f"error parsing swarm host: no port in '{self.swarm_host}'")
        return port

    def validate(self) -> None:
        """Check the configuration before anything remote is created.

        Resolves the default VPC when none is configured.

        :raises ConfigurationError: If the configuration cannot be used
        """
        self.region = validate_region(self.region, self.endpoint)
        if not self.image_id:
            self.image_id = default_image(self.region)

        if self.key_name and not self.ssh_private_key_path:
            raise NoPrivateSSHKeyError()
        self.existing_key = bool(self.key_name)

        self._check_credentials()
        cluster_id(self.name)
        for entry in self.open_ports:
            parse_port(entry)

        if not self.vpc_id:
            try:
                self.vpc_id = self._default_vpc_id()
            except DriverError as e:
                warn(f"Couldn't determine your account default VPC ID: {e}")

        if not self.subnet_id and not self.vpc_id:
            raise NoVPCError()

        if self.subnet_id and self.vpc_id:
            self._check_subnet_in_vpc()

        if self.swarm_master:
            self.swarm_port = self._parse_swarm_port()

    def pre_create_check(self) -> None:
        """Resolve the subnet and the source image before create()."""
        check_subnet(self.client, self)
        check_image(self.client, self)

    def create(self) -> None:
        """Provision the machine, removing whatever was created if any step fails.

        The original error is raised, interrupts included; a failed cleanup is
        logged and attached to it as ``cleanup_error``.
        """
        try:
            provision(self.client, self)
        except BaseException as e:
            warn(f"Creation of '{self.name}' failed, removing partially created resources...")
            try:
                self.remove()
            except MultiError as cleanup:
                logger.error(f"Cleanup after failed creation also failed: {cleanup}")
                e.cleanup_error = cleanup
            raise
        log(f"Machine '{self.name}' created ({self.instance_id})")

    def get_instance(self) -> dict:
        return get_instance(self.client, self.instance_id)

    def get_ip(self) -> str:
        """:raises IPAddressNotFoundError: If the expected address is absent"""
        return resolve_ip(self.get_instance(), self)

    def get_state(self) -> MachineState:
        return map_state(self.get_instance()["State"]["Name"])

    def get_url(self) -> str:
        """Control-plane URL, or "" while the machine has no address yet.

        :raises MachineNotRunningError: If the machine is not running
        """
        state = self.get_state()
        if state != "Running":
            raise MachineNotRunningError(self.name, state)
        try:
            ip = self.get_ip()
        except IPAddressNotFoundError as e:
            debug(str(e))
            return ""
        host = f"[{ip}]" if ":" in ip else ip
        return f"tcp://{host}:{self.control_plane_port}"

    def get_ssh_hostname(self) -> str:
        return self.get_ip()

    def get_ssh_username(self) -> str:
        if not self.ssh_user:
            self.ssh_user = DEFAULT_SSH_USER
        return self.ssh_user

    def start(self) -> None:
        try:
            self.client.start_instances(InstanceIds=[self.instance_id])
        except SDK_ERRORS as e:
            raise ApiError(f"unable to start instance: {e}") from e
        wait_for_instance(self.client, self)

    def stop(self) -> None:
        self._stop(force=False)

    def kill(self) -> None:
        self._stop(force=True)

    def _stop(self, *, force: bool) -> None:
        try:
            self.client.stop_instances(InstanceIds=[self.instance_id], Force=force)
        except SDK_ERRORS as e:
            raise ApiError(f"unable to stop instance: {e}") from e

    def restart(self) -> None:
        try:
            self.client.reboot_instances(InstanceIds=[self.instance_id])
        except SDK_ERRORS as e:
            raise ApiError(f"unable to restart instance: {e}") from e

    def remove(self) -> None:
        """:raises MultiError: If any teardown step failed"""
        remove_machine(self.client, self)
