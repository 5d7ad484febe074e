#!/usr/bin/env python3
"""Tests for config.py - engine configuration layering.

Tests verify:
1. EngineConfig defaults and validation
2. converge.yaml discovery and defaults section
3. Environment overrides
4. Error handling for invalid values
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigError,
    EngineConfig,
    find_config_file,
    load_engine_config,
    parse_yaml,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and working directory."""
    for name in ('CONVERGE_STATE_DIR', 'CONVERGE_PARALLELISM', 'CONVERGE_ON_ERROR'):
        monkeypatch.delenv(name, raising=False)
    cwd = tmp_path / 'cwd'
    cwd.mkdir()
    monkeypatch.chdir(cwd)


class TestEngineConfig:
    """Test EngineConfig dataclass behavior."""

    def test_defaults(self, tmp_path):
        config = EngineConfig(base_dir=tmp_path)
        assert config.parallelism == 4
        assert config.on_error == 'continue'
        assert config.refresh is True
        assert config.state_dir == tmp_path / '.states'

    def test_string_paths_converted(self, tmp_path):
        config = EngineConfig(base_dir=str(tmp_path), state_dir=str(tmp_path / 's'))
        assert isinstance(config.base_dir, Path)
        assert config.state_dir == tmp_path / 's'

    def test_state_path(self, tmp_path):
        config = EngineConfig(base_dir=tmp_path)
        assert config.state_path('web') == tmp_path / '.states' / 'web' / 'state.json'

    def test_cloud_dir(self, tmp_path):
        config = EngineConfig(base_dir=tmp_path, state_dir=tmp_path / 'st')
        assert config.cloud_dir() == tmp_path / 'st' / '.cloud'

    def test_invalid_parallelism(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig(base_dir=tmp_path, parallelism=0)
        assert 'parallelism' in str(exc_info.value)

    def test_invalid_on_error(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig(base_dir=tmp_path, on_error='rollback')
        assert 'on_error' in str(exc_info.value)


class TestParseYaml:
    """Test YAML helper."""

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text('')
        assert parse_yaml(path) == {}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text('- a\n- b\n')
        with pytest.raises(ConfigError):
            parse_yaml(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text('a: [unclosed\n')
        with pytest.raises(ConfigError) as exc_info:
            parse_yaml(path)
        assert 'Invalid YAML' in str(exc_info.value)


class TestLoadEngineConfig:
    """Test layered loading."""

    def test_no_config_file(self, tmp_path):
        doc_dir = tmp_path / 'doc'
        doc_dir.mkdir()
        config = load_engine_config(doc_dir)
        assert config.base_dir == doc_dir
        assert config.config_file is None
        assert config.parallelism == 4

    def test_defaults_section(self, tmp_path):
        doc_dir = tmp_path / 'doc'
        doc_dir.mkdir()
        (doc_dir / 'converge.yaml').write_text(
            "defaults:\n  parallelism: 2\n  on_error: stop\n  state_dir: state\n  refresh: false\n"
        )
        config = load_engine_config(doc_dir)
        assert config.parallelism == 2
        assert config.on_error == 'stop'
        assert config.refresh is False
        assert config.state_dir == doc_dir / 'state'
        assert config.config_file == doc_dir / 'converge.yaml'

    def test_document_dir_searched_before_cwd(self, tmp_path):
        doc_dir = tmp_path / 'doc'
        doc_dir.mkdir()
        (doc_dir / 'converge.yaml').write_text("defaults:\n  parallelism: 3\n")
        (Path.cwd() / 'converge.yaml').write_text("defaults:\n  parallelism: 7\n")
        assert find_config_file([doc_dir, Path.cwd()]) == doc_dir / 'converge.yaml'
        assert load_engine_config(doc_dir).parallelism == 3

    def test_cwd_config_used_as_fallback(self, tmp_path):
        doc_dir = tmp_path / 'doc'
        doc_dir.mkdir()
        (Path.cwd() / 'converge.yaml').write_text("defaults:\n  parallelism: 7\n")
        assert load_engine_config(doc_dir).parallelism == 7

    def test_env_overrides_file(self, tmp_path):
        doc_dir = tmp_path / 'doc'
        doc_dir.mkdir()
        (doc_dir / 'converge.yaml').write_text("defaults:\n  parallelism: 2\n  on_error: stop\n")
        env = {
            'CONVERGE_PARALLELISM': '8',
            'CONVERGE_ON_ERROR': 'continue',
            'CONVERGE_STATE_DIR': str(tmp_path / 'elsewhere'),
        }
        with patch.dict(os.environ, env):
            config = load_engine_config(doc_dir)
        assert config.parallelism == 8
        assert config.on_error == 'continue'
        assert config.state_dir == tmp_path / 'elsewhere'

    def test_env_parallelism_not_integer(self, tmp_path):
        with patch.dict(os.environ, {'CONVERGE_PARALLELISM': 'many'}):
            with pytest.raises(ConfigError) as exc_info:
                load_engine_config(tmp_path)
        assert 'CONVERGE_PARALLELISM' in str(exc_info.value)

    def test_env_invalid_on_error(self, tmp_path):
        with patch.dict(os.environ, {'CONVERGE_ON_ERROR': 'explode'}):
            with pytest.raises(ConfigError):
                load_engine_config(tmp_path)
