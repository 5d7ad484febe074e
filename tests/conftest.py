"""Shared pytest fixtures for converge-driver tests."""

import shutil
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from document import Document
from providers.base import DataSourceType, Provider, ProviderError, ProviderRegistry, ResourceType

EXAMPLE_DIR = Path(__file__).parent.parent / 'examples' / 'cloud-function'


class RecordingThing(ResourceType):
    """In-memory resource type that records every call.

    Names in fail_on fail create/update; ids in fail_delete fail delete.
    """

    kind = 'thing'
    required = ('name',)
    optional = ('value', 'ref', 'size', 'tags')
    computed = ('uid',)
    force_new = ('name', 'size')

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.fail_delete: set[str] = set()
        self._lock = threading.Lock()

    def _call(self, op: str, key: str) -> None:
        with self._lock:
            self.calls.append((op, key))

    def create(self, attributes, ctx):
        name = attributes['name']
        self._call('create', name)
        if name in self.fail_on:
            raise ProviderError(f"quota exceeded creating {name}")
        if name in self.records:
            raise ProviderError(f"409 {name} already exists")
        uid = f'uid-{name}'
        self.records[name] = {**attributes, 'uid': uid}
        return name, {'uid': uid}

    def read(self, resource_id, ctx):
        record = self.records.get(resource_id)
        return dict(record) if record is not None else None

    def update(self, resource_id, attributes, prior, ctx):
        self._call('update', resource_id)
        if resource_id in self.fail_on:
            raise ProviderError(f"permission denied updating {resource_id}")
        self.records[resource_id] = {**attributes, 'uid': self.records[resource_id]['uid']}
        return {'uid': self.records[resource_id]['uid']}

    def delete(self, resource_id, ctx):
        self._call('delete', resource_id)
        if resource_id in self.fail_delete:
            raise ProviderError(f"cannot delete {resource_id}")
        self.records.pop(resource_id, None)

    def ops(self, op: str) -> list[str]:
        return [key for o, key in self.calls if o == op]


class Upper(DataSourceType):
    kind = 'upper'
    required = ('input',)
    computed = ('output',)

    def __init__(self):
        self.reads = 0

    def read(self, attributes, ctx):
        self.reads += 1
        return {'output': str(attributes['input']).upper()}


class FakeProvider(Provider):
    name = 'fake'

    def __init__(self):
        super().__init__()
        self.things = RecordingThing()
        self.upper = Upper()
        self.add_resource_type(self.things)
        self.add_data_source_type(self.upper)


def make_document(resources=None, data=None, outputs=None, variables=None, name='test', **extra):
    """Build a Document from block dicts."""
    doc = {
        'schema_version': 1,
        'name': name,
        'variables': variables or [],
        'data': data or [],
        'resources': resources or [],
        'outputs': outputs or [],
    }
    doc.update(extra)
    return Document.from_dict(doc)


def thing(name, **attributes):
    """Resource block dict for a RecordingThing."""
    return {'type': 'thing', 'name': name, 'attributes': {'name': name, **attributes}}


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_registry(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest.fixture
def example_dir(tmp_path):
    """Copy of the cloud-function document in a temporary directory."""
    target = tmp_path / 'cloud-function'
    shutil.copytree(EXAMPLE_DIR, target, ignore=shutil.ignore_patterns('build', '.states'))
    return target
