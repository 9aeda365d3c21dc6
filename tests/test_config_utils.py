"""
Unit tests for engine configuration and default parameters.
"""
import json

import pytest
from config_utils import (
    DEFAULT_ENGINE_CONFIG, EngineConfig, get_default_simulation_params, load_engine_config
)
from io_utils import dict_to_params


class TestEngineConfig:
    """Test engine configuration values"""

    def test_defaults(self):
        """Test default resource limits"""
        config = EngineConfig()
        assert config.max_total_data_points == 10_000_000
        assert config.max_chart_steps == 500
        assert config.backend == "auto"

    @pytest.mark.parametrize("overrides", [
        {'backend': 'tpu'},
        {'max_chart_steps': 1},
        {'block_size': 0},
        {'n_jobs': 0},
        {'max_total_data_points': 0},
    ])
    def test_invalid_config(self, overrides):
        """Test configuration validation"""
        with pytest.raises(ValueError):
            EngineConfig(**overrides)


class TestLoadEngineConfig:
    """Test loading configuration from files and environment"""

    def test_no_file_gives_defaults(self, tmp_path, monkeypatch):
        """Test defaults when no config file exists"""
        monkeypatch.chdir(tmp_path)
        assert load_engine_config() == DEFAULT_ENGINE_CONFIG

    def test_json_file(self, tmp_path):
        """Test values from a JSON file"""
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({'backend': 'sequential', 'max_chart_steps': 100}))
        config = load_engine_config(str(path))
        assert config.backend == "sequential"
        assert config.max_chart_steps == 100
        assert config.block_size == DEFAULT_ENGINE_CONFIG.block_size

    def test_default_filename_in_working_directory(self, tmp_path, monkeypatch):
        """Test that engine_config.json is picked up automatically"""
        (tmp_path / "engine_config.json").write_text(json.dumps({'n_jobs': 2}))
        monkeypatch.chdir(tmp_path)
        assert load_engine_config().n_jobs == 2

    def test_missing_explicit_file(self, tmp_path):
        """Test that an explicit path must exist"""
        with pytest.raises(FileNotFoundError):
            load_engine_config(str(tmp_path / "missing.json"))

    def test_unknown_keys(self, tmp_path):
        """Test that unknown settings are rejected"""
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({'colour': 'blue'}))
        with pytest.raises(ValueError, match="Unknown engine config keys"):
            load_engine_config(str(path))

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test PORTFOLIO_SIM_* environment overrides"""
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({'backend': 'sequential', 'block_size': 128}))
        monkeypatch.setenv("PORTFOLIO_SIM_BACKEND", "parallel")
        monkeypatch.setenv("PORTFOLIO_SIM_BLOCK_SIZE", "256")
        config = load_engine_config(str(path))
        assert config.backend == "parallel"
        assert config.block_size == 256


class TestDefaultParams:
    """Test default simulation parameters per mode"""

    @pytest.mark.parametrize("mode", ["growth", "withdrawal"])
    def test_defaults_are_valid(self, mode):
        """Test that defaults build valid SimulationParams"""
        dict_to_params(get_default_simulation_params(mode)).validate()

    def test_withdrawal_defaults_larger_portfolio(self):
        """Test mode-specific defaults"""
        growth = get_default_simulation_params("growth")
        withdrawal = get_default_simulation_params("withdrawal")
        assert withdrawal['initial_value'] > growth['initial_value']
        assert withdrawal['portfolio_goal'] is None

    def test_unknown_mode(self):
        """Test that an unknown mode is rejected"""
        with pytest.raises(ValueError):
            get_default_simulation_params("spend")
