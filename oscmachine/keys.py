"""SSH key material and remote key pairs."""

import random
import shutil
import string
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import paramiko

from .client import SDK_ERRORS, Ec2Client, is_not_found
from .errors import ApiError, KeyPairError
from .utils import debug, log, warn

if TYPE_CHECKING:
    from .driver import Driver

KEY_NAME_CHARSET = string.ascii_letters

# Time seeded and not collision proof; uniqueness in practice is enough for
# key names that also embed the machine name.
_rng = random.Random(time.time_ns())
_rng_lock = threading.Lock()


def random_suffix(length: int = 5) -> str:
    with _rng_lock:
        return "".join(_rng.choice(KEY_NAME_CHARSET) for _ in range(length))


def generate_ssh_key(path: str | Path, bits: int = 2048) -> None:
    """Write a new RSA private key to path and its public key to path.pub."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    key = paramiko.RSAKey.generate(bits)
    key.write_private_key_file(str(path))
    path.chmod(0o600)
    Path(f"{path}.pub").write_text(f"{key.get_name()} {key.get_base64()}\n")


def _copy_file(src: str | Path, dst: str | Path, mode: int | None = None) -> None:
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copyfile(src, dst)
        if mode is not None:
            Path(dst).chmod(mode)
    except OSError as e:
        raise KeyPairError(f"unable to copy '{src}' to '{dst}': {e}") from e


def create_key_pair(client: Ec2Client, machine: "Driver") -> None:
    """Prepare local SSH keys and make sure a remote key pair can be referenced.

    Without a configured private key a new key is generated at the machine's
    key path. A configured private key is copied there; when an existing
    remote key pair name was also given nothing is imported and the pair is
    marked as not owned. Otherwise the public key is imported under
    ``<machine name>-<random suffix>``.

    :raises KeyPairError: If local key material cannot be created or read
    :raises ApiError: If the provider rejects the import
    """
    key_path = Path(machine.ssh_key_path)

    if not machine.ssh_private_key_path:
        debug("Creating new SSH key")
        try:
            generate_ssh_key(key_path)
        except (OSError, paramiko.SSHException) as e:
            raise KeyPairError(f"unable to generate SSH key: {e}") from e
        public_key_path = Path(f"{key_path}.pub")
    else:
        debug(f"Using SSH private key: '{machine.ssh_private_key_path}'")
        _copy_file(machine.ssh_private_key_path, key_path, mode=0o600)
        if machine.key_name:
            debug(f"Using existing key pair: '{machine.key_name}'")
            machine.existing_key = True
            return
        _copy_file(f"{machine.ssh_private_key_path}.pub", f"{key_path}.pub")
        public_key_path = Path(f"{machine.ssh_private_key_path}.pub")

    try:
        public_key = public_key_path.read_bytes()
    except OSError as e:
        raise KeyPairError(f"unable to read public key '{public_key_path}': {e}") from e

    key_name = f"{machine.name}-{random_suffix()}"
    log(f"Importing key pair '{key_name}'...")
    try:
        client.import_key_pair(KeyName=key_name, PublicKeyMaterial=public_key)
    except SDK_ERRORS as e:
        raise ApiError(f"unable to create key pair: {e}") from e
    machine.key_name = key_name
    machine.existing_key = False


def delete_key_pair(client: Ec2Client, machine: "Driver") -> None:
    """Delete the remote key pair this driver imported.

    :raises ApiError: If deletion fails for a reason other than "not found"
    """
    if not machine.key_name:
        warn("Missing key pair name, this is likely due to a failure during machine creation")
        return

    debug(f"deleting key pair: {machine.key_name}")
    try:
        client.delete_key_pair(KeyName=machine.key_name)
    except SDK_ERRORS as e:
        if is_not_found(e):
            warn(f"Key pair '{machine.key_name}' does not exist")
            return
        raise ApiError(f"unable to delete key pair '{machine.key_name}': {e}") from e
