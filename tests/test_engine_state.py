"""Tests for engine.state module."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.state import STATE_VERSION, ResourceState, State, StateLockError, StateStore


def _resource(address='thing.a', **overrides):
    kind, name = address.split('.')
    data = dict(
        address=address, type=kind, name=name, provider='fake', id=name,
        attributes={'name': name}, computed={'uid': f'uid-{name}'},
    )
    data.update(overrides)
    return ResourceState(**data)


class TestResourceState:
    """Tests for ResourceState dataclass."""

    def test_values_merge_computed(self):
        rs = _resource(attributes={'name': 'a', 'uid': 'stale'}, computed={'uid': 'fresh'})
        assert rs.values == {'name': 'a', 'uid': 'fresh'}

    def test_round_trip(self):
        rs = _resource(dependencies=['thing.b'], updated_at=12.5)
        again = ResourceState.from_dict('thing.a', rs.to_dict())
        assert again == rs

    def test_to_dict_omits_empty_optional_fields(self):
        d = _resource().to_dict()
        assert 'dependencies' not in d
        assert 'updated_at' not in d


class TestState:
    """Tests for State class."""

    def test_new_state_has_lineage(self):
        a = State('doc')
        b = State('doc')
        assert a.lineage != b.lineage
        assert a.serial == 0
        assert a.resources == {}

    def test_set_get_remove(self):
        state = State('doc')
        state.set(_resource())
        assert 'thing.a' in state
        assert state.get('thing.a').updated_at is not None
        state.remove('thing.a')
        assert state.get('thing.a') is None
        state.remove('thing.a')

    def test_resources_is_a_copy(self):
        state = State('doc')
        state.set(_resource())
        state.resources.clear()
        assert 'thing.a' in state

    def test_resource_values_merge_computed(self):
        assert _resource().values == {'name': 'a', 'uid': 'uid-a'}

    def test_to_dict_shape(self):
        state = State('doc', lineage='fixed')
        state.set(_resource('thing.b'))
        state.set(_resource('thing.a'))
        state.outputs = {'url': 'https://x'}
        data = state.to_dict()
        assert data['version'] == STATE_VERSION
        assert data['lineage'] == 'fixed'
        assert data['document'] == 'doc'
        assert list(data['resources']) == ['thing.a', 'thing.b']
        assert data['outputs'] == {'url': 'https://x'}

    def test_unsupported_version(self):
        with pytest.raises(ValueError):
            State.from_dict({'version': 99})


class TestStateStore:
    """Tests for StateStore persistence and locking."""

    def test_load_missing_returns_empty(self, tmp_path):
        store = StateStore(tmp_path / 'doc' / 'state.json')
        assert not store.exists()
        state = store.load('doc')
        assert state.document_name == 'doc'
        assert state.resources == {}

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path / 'doc' / 'state.json')
        state = State('doc')
        state.set(_resource())
        state.outputs = {'o': 1}
        path = store.save(state)

        assert path.exists()
        assert state.serial == 1
        loaded = store.load('doc')
        assert loaded.serial == 1
        assert loaded.lineage == state.lineage
        assert loaded.get('thing.a').computed == {'uid': 'uid-a'}
        assert loaded.outputs == {'o': 1}

    def test_serial_increments(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        state = State('doc')
        store.save(state)
        store.save(state)
        assert json.loads((tmp_path / 'state.json').read_text())['serial'] == 2

    def test_no_temp_file_left(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        store.save(State('doc'))
        assert [p.name for p in tmp_path.iterdir()] == ['state.json']

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / 'state.json'
        path.write_text('{broken')
        with pytest.raises(ValueError) as exc_info:
            StateStore(path).load('doc')
        assert 'Corrupt state file' in str(exc_info.value)

    def test_other_document(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        store.save(State('first'))
        with pytest.raises(ValueError) as exc_info:
            store.load('second')
        assert "belongs to document 'first'" in str(exc_info.value)

    def test_lock_released(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        with store.lock('apply'):
            assert store.lock_path.exists()
            info = json.loads(store.lock_path.read_text())
            assert info['operation'] == 'apply'
        assert not store.lock_path.exists()

    def test_lock_released_on_error(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        with pytest.raises(RuntimeError):
            with store.lock():
                raise RuntimeError('boom')
        assert not store.lock_path.exists()

    def test_concurrent_lock_fails(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        other = StateStore(tmp_path / 'state.json')
        with store.lock('apply'):
            with pytest.raises(StateLockError) as exc_info:
                with other.lock('plan'):
                    pass
        assert '--force-unlock' in str(exc_info.value)

    def test_force_unlock(self, tmp_path):
        store = StateStore(tmp_path / 'state.json')
        assert store.force_unlock() is False
        store.lock_path.write_text('{"pid": 1}')
        assert store.force_unlock() is True
        assert not store.lock_path.exists()
        with store.lock():
            pass
