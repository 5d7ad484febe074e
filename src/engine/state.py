"""State store for desired-state reconciliation.

Persists the last-known actual state of every resource a document owns
so the planner can diff against it and destroy can find resource ids
without the document's help.

State is persisted to .states/{document}/state.json (see
EngineConfig.state_path). A sibling state.json.lock file guards against
concurrent runs against the same state.
"""

import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateLockError(Exception):
    """Another run holds the state lock."""


@dataclass
class ResourceState:
    """Last-known actual state of one resource.

    Attributes:
        address: TYPE.NAME
        type: Resource type
        name: Resource name
        provider: Provider that owns the resource
        id: Provider-assigned identifier
        attributes: Resolved input attributes as last applied
        computed: Provider-computed attributes
        dependencies: Addresses this resource depended on when applied
        updated_at: Timestamp of the last successful operation
    """
    address: str
    type: str
    name: str
    provider: str
    id: str
    attributes: dict = field(default_factory=dict)
    computed: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    updated_at: Optional[float] = None

    @property
    def values(self) -> dict:
        """Attributes and computed values merged, as seen by references."""
        return {**self.attributes, **self.computed}

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'name': self.name,
            'provider': self.provider,
            'id': self.id,
            'attributes': self.attributes,
            'computed': self.computed,
        }
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, address: str, data: dict) -> 'ResourceState':
        return cls(
            address=address,
            type=data['type'],
            name=data['name'],
            provider=data.get('provider', ''),
            id=data['id'],
            attributes=data.get('attributes', {}),
            computed=data.get('computed', {}),
            dependencies=data.get('dependencies', []),
            updated_at=data.get('updated_at'),
        )


class State:
    """All resources and outputs recorded for one document."""

    def __init__(self, document_name: str, lineage: Optional[str] = None):
        self.document_name = document_name
        self.lineage = lineage or str(uuid.uuid4())
        self.serial = 0
        self._resources: dict[str, ResourceState] = {}
        self.outputs: dict[str, Any] = {}

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    def __contains__(self, address: str) -> bool:
        return address in self._resources

    def get(self, address: str) -> Optional[ResourceState]:
        return self._resources.get(address)

    def set(self, resource: ResourceState) -> None:
        resource.updated_at = time.time()
        self._resources[resource.address] = resource

    def remove(self, address: str) -> None:
        self._resources.pop(address, None)

    def to_dict(self) -> dict:
        return {
            'version': STATE_VERSION,
            'serial': self.serial,
            'lineage': self.lineage,
            'document': self.document_name,
            'resources': {a: r.to_dict() for a, r in sorted(self._resources.items())},
            'outputs': self.outputs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'State':
        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version {version} (expected {STATE_VERSION})")
        state = cls(data.get('document', ''), lineage=data.get('lineage'))
        state.serial = data.get('serial', 0)
        for address, resource_data in data.get('resources', {}).items():
            state._resources[address] = ResourceState.from_dict(address, resource_data)
        state.outputs = data.get('outputs', {})
        return state


class StateStore:
    """JSON file persistence with an exclusive lock file.

    save() is safe to call from executor worker threads.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self._write_lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, document_name: str) -> State:
        """Load state, or return an empty State if none has been saved.

        Raises:
            ValueError: If the state file is unreadable or belongs to another document
        """
        if not self.path.exists():
            logger.debug(f"No state at {self.path}; starting empty")
            return State(document_name)

        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt state file {self.path}: {e}")

        state = State.from_dict(data)
        if state.document_name and state.document_name != document_name:
            raise ValueError(
                f"State file {self.path} belongs to document '{state.document_name}', "
                f"not '{document_name}'"
            )
        state.document_name = document_name
        logger.debug(f"Loaded state serial {state.serial} from {self.path}")
        return state

    def save(self, state: State) -> Path:
        """Write state atomically and bump its serial.

        Returns:
            Path where state was saved
        """
        with self._write_lock:
            state.serial += 1
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + '.tmp')
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2)
            tmp.replace(self.path)
        logger.debug(f"Saved state serial {state.serial} to {self.path}")
        return self.path

    def _read_lock_info(self) -> dict:
        try:
            return json.loads(self.lock_path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            return {}

    @contextmanager
    def lock(self, operation: str = 'apply') -> Iterator[None]:
        """Hold the state lock for the duration of the block.

        Raises:
            StateLockError: If the lock is already held
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            info = self._read_lock_info()
            raise StateLockError(
                f"State {self.path} is locked by PID {info.get('pid', '?')} "
                f"({info.get('operation', 'unknown')} since {info.get('created', '?')}). "
                f"If no other run is active, use --force-unlock"
            )

        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump({
                'pid': os.getpid(),
                'operation': operation,
                'created': time.strftime('%Y-%m-%dT%H:%M:%S'),
            }, f)
        logger.debug(f"Acquired state lock {self.lock_path}")
        try:
            yield
        finally:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
            logger.debug(f"Released state lock {self.lock_path}")

    def force_unlock(self) -> bool:
        """Remove a stale lock file. Returns False if there was none."""
        if not self.lock_path.exists():
            return False
        info = self._read_lock_info()
        logger.warning(f"Removing state lock held by PID {info.get('pid', '?')}")
        self.lock_path.unlink()
        return True
