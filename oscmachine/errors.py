"""Exceptions raised by the machine driver."""


class DriverError(Exception):
    """Base exception for machine driver errors.

    ``cleanup_error`` is set when a failed create() also failed to roll back.
    """

    cleanup_error: "DriverError | None" = None


class ConfigurationError(DriverError):
    """Raised when the machine configuration is invalid or incomplete."""


class MissingCredentialsError(ConfigurationError):
    def __init__(self):
        super().__init__(
            "Outscale driver requires credentials configured with --access-key "
            "and --secret-key or the OS_ACCESS_KEY_ID and OS_SECRET_ACCESS_KEY "
            "environment variables"
        )


class NoPrivateSSHKeyError(ConfigurationError):
    def __init__(self):
        super().__init__("using --keypair-name also requires --ssh-keypath")


class NoVPCError(ConfigurationError):
    def __init__(self):
        super().__init__("Outscale driver requires a VPC id (--vpc-id or OS_VPC_ID)")


class SubnetNotFoundError(ConfigurationError):
    def __init__(self, subnet_id: str):
        super().__init__(
            f"Subnet '{subnet_id}' could not be located in this region. "
            "Is --subnet-id or OS_SUBNET_ID configured correctly?"
        )
        self.subnet_id = subnet_id


class UserDataError(ConfigurationError):
    def __init__(self, path: str):
        super().__init__(f"unable to read user data file '{path}'")
        self.path = path


class ApiError(DriverError):
    """Raised when a compute API call fails; the SDK error is the __cause__."""


class KeyPairError(DriverError):
    """Raised when local SSH key material cannot be created or copied."""


class WaitTimeoutError(DriverError):
    def __init__(self, description: str):
        super().__init__(f"timed out waiting for {description}")
        self.description = description


class MachineNotRunningError(DriverError):
    def __init__(self, name: str, state: str):
        super().__init__(f"Machine '{name}' is not running (state: {state})")
        self.state = state


class MachineNotFoundError(DriverError):
    """Raised when no stored machine record exists."""


class IPAddressNotFoundError(DriverError):
    """Raised when the expected address field is absent on the instance."""


class MultiError(DriverError):
    """Several independent failures reported together."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        super().__init__("\n".join(str(e) for e in self.errors))
