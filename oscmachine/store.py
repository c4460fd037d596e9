"""Local persistence of machine records."""

import json
import os
from pathlib import Path

from .errors import MachineNotFoundError
from .types import MachineData


def default_store_path() -> Path:
    return Path(os.getenv("OSC_MACHINE_STORAGE_PATH", Path.home() / ".oscmachine"))


def machine_dir(name: str, store_path: str | Path) -> Path:
    """Directory holding the machine's SSH key material."""
    return Path(store_path) / "machines" / name


def machine_file(name: str, store_path: str | Path) -> Path:
    return Path(store_path) / f"{name}.machine.json"


def load_machine(name: str, store_path: str | Path) -> MachineData:
    """Load machine data from its JSON file.

    :raises MachineNotFoundError: If no record exists for the name
    """
    path = machine_file(name, store_path)
    if not path.exists():
        raise MachineNotFoundError(f"Machine file not found: '{path}'")
    return json.loads(path.read_text())


def save_machine(data: MachineData) -> Path:
    """Save machine data to its JSON file, readable by the owner only."""
    path = machine_file(data["name"], data["store_path"])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))
    path.chmod(0o600)
    return path


def delete_machine(name: str, store_path: str | Path) -> None:
    machine_file(name, store_path).unlink(missing_ok=True)
    key_dir = machine_dir(name, store_path)
    for child in ("id_rsa", "id_rsa.pub"):
        (key_dir / child).unlink(missing_ok=True)
    if key_dir.exists() and not any(key_dir.iterdir()):
        key_dir.rmdir()


def list_machines(store_path: str | Path) -> list[str]:
    path = Path(store_path)
    if not path.exists():
        return []
    return sorted(p.name.removesuffix(".machine.json") for p in path.glob("*.machine.json"))
