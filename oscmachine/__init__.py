"""oscmachine - machine lifecycle driver for the Outscale compute API."""

from .cli import app
from .client import Ec2Client, build_client
from .driver import Driver
from .errors import (
    ApiError,
    ConfigurationError,
    DriverError,
    IPAddressNotFoundError,
    MultiError,
    WaitTimeoutError,
)
from .store import load_machine, save_machine
from .types import MachineData, MachineState
from .utils import debug, error, log, setup_logging, warn

__all__ = [
    "ApiError",
    "ConfigurationError",
    "Driver",
    "DriverError",
    "Ec2Client",
    "IPAddressNotFoundError",
    "MachineData",
    "MachineState",
    "MultiError",
    "WaitTimeoutError",
    "app",
    "build_client",
    "debug",
    "error",
    "load_machine",
    "log",
    "save_machine",
    "setup_logging",
    "warn",
]
