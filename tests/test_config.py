"""
Tests for configuration loading and library settings.
"""

import pytest
import yaml

from docusight.config import (
    LibrarySettings, get_config_value, get_default_config, load_config, save_config,
    update_config_value,
)


class TestLoadConfig:
    """Test YAML loading."""

    def test_packaged_config(self):
        config = load_config()
        assert config['identity']['acceptance_threshold'] == 0.75
        assert config['storage']['backend'] == 'memory'

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(tmp_path / 'nope.yaml') == get_default_config()

    def test_partial_file_is_merged(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'identity': {'acceptance_threshold': 0.9}}))
        config = load_config(path)
        assert config['identity']['acceptance_threshold'] == 0.9
        assert config['identity']['tie_epsilon'] == 0.01
        assert config['collections']['min_date'] == 5

    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv('DOCUSIGHT_LIBRARY', '/srv/library')
        path = tmp_path / 'config.yaml'
        path.write_text("storage:\n  backend: json\n  path: ${DOCUSIGHT_LIBRARY}\n"
                        "logging:\n  file: ${DOCUSIGHT_UNSET_VAR}\n")
        config = load_config(path)
        assert config['storage']['path'] == '/srv/library'
        assert config['logging']['file'] == '${DOCUSIGHT_UNSET_VAR}'

    def test_invalid_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("identity: [unclosed")
        assert load_config(path) == get_default_config()


class TestConfigValues:
    """Test dotted access and saving."""

    def test_get_value(self):
        config = get_default_config()
        assert get_config_value(config, 'collections.confidence.person') == 0.85
        assert get_config_value(config, 'collections.missing.key', 'fallback') == 'fallback'

    def test_update_value_creates_sections(self):
        config = {}
        update_config_value(config, 'batch.max_workers', 8)
        assert config == {'batch': {'max_workers': 8}}

    def test_save_and_reload(self, tmp_path):
        config = get_default_config()
        update_config_value(config, 'tagging.object_min', 0.5)
        path = tmp_path / 'saved.yaml'
        assert save_config(config, path) is True
        assert load_config(path)['tagging']['object_min'] == 0.5

    def test_save_to_missing_directory(self, tmp_path):
        assert save_config({}, tmp_path / 'missing' / 'config.yaml') is False


class TestLibrarySettings:
    """Test settings built from config."""

    def test_defaults_match_default_config(self):
        assert LibrarySettings.from_config(get_default_config()) == LibrarySettings()

    def test_overrides(self):
        settings = LibrarySettings.from_config({
            'identity': {'acceptance_threshold': 0.8},
            'collections': {'min_location': 2},
            'quality': {'exposure_band': [0.1, 0.9]},
        })
        assert settings.acceptance_threshold == 0.8
        assert settings.min_location_members == 2
        assert settings.exposure_band == (0.1, 0.9)
        assert settings.min_date_members == 5

    def test_placement_floor_is_fixed(self):
        assert LibrarySettings().placement_min_confidence == 0.5
        with pytest.raises(AttributeError):
            LibrarySettings().placement_min_confidence = 0.1
