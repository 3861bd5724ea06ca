"""Persisted work item and gate records.

Two implementations of one interface, chosen once at startup:

- RegistryStore drives an external registry CLI that speaks JSON
- FileStore keeps one JSON file per record under .ralph/

Records are read as snapshots with no locking. Concurrent writers of the
same record race and the last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import tempfile
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ralph.core.errors import ItemNotFoundError, RegistryUnavailableError
from ralph.core.models import Gate, WorkItem
from ralph.runner.executor import VerifierRunner

if TYPE_CHECKING:
    from ralph.core.config import RalphConfig

logger = logging.getLogger(__name__)

RALPH_DIR = ".ralph"


def new_item_id() -> str:
    return f"ri-{uuid.uuid4().hex[:8]}"


def new_gate_id() -> str:
    return f"gate-{uuid.uuid4().hex[:8]}"


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ItemStore(ABC):
    """Source of truth for work items and gates."""

    name: str = "store"

    @abstractmethod
    def list_items(self) -> list[WorkItem]: ...

    @abstractmethod
    def get_item(self, item_id: str) -> WorkItem:
        """Load one item.

        Raises:
            ItemNotFoundError: No record with this id
        """

    @abstractmethod
    def put_item(self, item: WorkItem) -> None: ...

    @abstractmethod
    def list_gates(self) -> list[Gate]: ...

    @abstractmethod
    def put_gate(self, gate: Gate) -> None: ...

    def get_gate(self, gate_id: str) -> Gate | None:
        for gate in self.list_gates():
            if gate.id == gate_id:
                return gate
        return None


class FileStore(ItemStore):
    """File-backed records: .ralph/items/<id>.json and .ralph/gates/<id>.json."""

    name = "file"

    def __init__(self, root: Path):
        self.root = Path(root)
        self.base_dir = self.root / RALPH_DIR
        self.items_dir = self.base_dir / "items"
        self.gates_dir = self.base_dir / "gates"

    def _item_path(self, item_id: str) -> Path:
        # Ids become filenames; refuse anything that could leave the directory
        if not item_id or "/" in item_id or "\\" in item_id or item_id.startswith("."):
            raise ItemNotFoundError(f"Invalid item id: {item_id!r}")
        return self.items_dir / f"{item_id}.json"

    def _load_dir(self, directory: Path, model: type[Any]) -> list[Any]:
        records = []
        if not directory.is_dir():
            return records
        for path in sorted(directory.glob("*.json")):
            try:
                records.append(model.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable record {path.name}: {e}")
        return records

    def list_items(self) -> list[WorkItem]:
        return self._load_dir(self.items_dir, WorkItem)

    def get_item(self, item_id: str) -> WorkItem:
        path = self._item_path(item_id)
        if not path.exists():
            raise ItemNotFoundError(f"Work item '{item_id}' not found")
        try:
            return WorkItem.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ItemNotFoundError(f"Work item '{item_id}' is malformed: {e}") from e

    def put_item(self, item: WorkItem) -> None:
        atomic_write_json(self._item_path(item.id), item.model_dump(mode="json"))

    def list_gates(self) -> list[Gate]:
        gates = self._load_dir(self.gates_dir, Gate)
        for gate in gates:
            gate.source = self.name
        return gates

    def put_gate(self, gate: Gate) -> None:
        atomic_write_json(self.gates_dir / f"{gate.id}.json", gate.model_dump(mode="json"))


class RegistryStore(ItemStore):
    """Records held by an external registry CLI.

    Protocol (all payloads JSON on stdout/stdin):
        <cmd> --version           probe; exit 0 when usable
        <cmd> items list          -> [item, ...]
        <cmd> items get <id>      -> item, or null when absent
        <cmd> items put           <- item on stdin
        <cmd> gates list          -> [gate, ...]
        <cmd> gates put           <- gate on stdin
    """

    name = "registry"

    def __init__(
        self,
        command: str | list[str],
        runner: VerifierRunner | None = None,
        timeout_seconds: float = 30.0,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.runner = runner or VerifierRunner()
        self.timeout_seconds = timeout_seconds

    def probe(self) -> bool:
        """Return True if the registry CLI is installed and answering."""
        result = self.runner.run([*self.command, "--version"], self.timeout_seconds)
        if result.returncode != 0:
            logger.debug(f"Registry probe failed (exit {result.returncode}): {result.stderr[:200]}")
            return False
        return True

    def _call(self, *args: str, payload: Any = None) -> Any:
        input_text = json.dumps(payload) if payload is not None else None
        result = self.runner.run(
            [*self.command, *args], self.timeout_seconds, input_text=input_text
        )
        if result.timed_out or result.returncode != 0:
            raise RegistryUnavailableError(
                f"Registry command '{' '.join(args)}' failed "
                f"(exit {result.returncode}): {result.stderr.strip()[:500]}"
            )
        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise RegistryUnavailableError(
                f"Registry returned invalid JSON for '{' '.join(args)}': {e}"
            ) from e

    def _validate_list(self, data: Any, model: type[Any]) -> list[Any]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise RegistryUnavailableError(
                f"Registry returned {type(data).__name__}, expected list"
            )
        records = []
        for entry in data:
            try:
                records.append(model.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping malformed registry record: {e}")
        return records

    def list_items(self) -> list[WorkItem]:
        return self._validate_list(self._call("items", "list"), WorkItem)

    def get_item(self, item_id: str) -> WorkItem:
        data = self._call("items", "get", item_id)
        if data is None:
            raise ItemNotFoundError(f"Work item '{item_id}' not found in registry")
        try:
            return WorkItem.model_validate(data)
        except ValidationError as e:
            raise ItemNotFoundError(f"Work item '{item_id}' is malformed: {e}") from e

    def put_item(self, item: WorkItem) -> None:
        self._call("items", "put", payload=item.model_dump(mode="json"))

    def list_gates(self) -> list[Gate]:
        gates = self._validate_list(self._call("gates", "list"), Gate)
        for gate in gates:
            gate.source = self.name
        return gates

    def put_gate(self, gate: Gate) -> None:
        self._call("gates", "put", payload=gate.model_dump(mode="json"))


def build_registry(
    config: RalphConfig, runner: VerifierRunner | None = None
) -> RegistryStore | None:
    """Return a probed RegistryStore, or None when disabled or absent."""
    if not config.registry.enabled or not config.registry.command:
        return None
    registry = RegistryStore(
        config.registry.command,
        runner=runner,
        timeout_seconds=config.registry.timeout_seconds,
    )
    if registry.probe():
        return registry
    logger.warning(
        f"Registry '{config.registry.command}' unavailable; using local file records"
    )
    return None


def select_store(
    config: RalphConfig, root: Path, runner: VerifierRunner | None = None
) -> ItemStore:
    """Pick the store once at startup: registry when it answers, else files."""
    return build_registry(config, runner) or FileStore(root)
