"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
import yaml

from rwcompliance.config import AssertionConfig, Config, ReceiverConfig, load_config
from rwcompliance.errors import ConfigError

EXAMPLE = Path(__file__).resolve().parent.parent / "configs" / "example.yaml"


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults():
    config = Config()
    assert config.global_.log_level == "INFO"
    assert config.receiver.host == "127.0.0.1"
    assert config.receiver.port == 0
    assert config.receiver.write_path == "/push"
    assert config.receiver.metrics_path == "/metrics"
    assert config.assertions.time_epsilon == 0.01
    assert config.run.window_s == 15.0
    assert config.run.cases == []
    assert config.targets == {}


def test_example_config_loads():
    config = load_config(str(EXAMPLE))
    assert "prometheus" in config.targets
    assert "{config_file}" in " ".join(config.targets["prometheus"].command)
    assert "{receive_endpoint}" in config.targets["prometheus"].config_template


def test_load_full_config(tmp_path):
    path = write_config(tmp_path, {
        "global": {"log_level": "DEBUG", "log_format": "json"},
        "receiver": {"port": 9999, "write_path": "/api/v1/write"},
        "assertions": {"time_epsilon": 0.05},
        "run": {"window_s": 3, "cases": ["Up", "Invalid"], "parallelism": 2},
        "targets": {"agent": {"command": ["agent", "--push={receive_endpoint}"]}},
    })
    config = load_config(path)
    assert config.global_.log_level == "DEBUG"
    assert config.global_.log_format == "json"
    assert config.receiver.port == 9999
    assert config.receiver.write_path == "/api/v1/write"
    assert config.assertions.time_epsilon == 0.05
    assert config.run.cases == ["Up", "Invalid"]
    assert config.run.parallelism == 2
    assert config.targets["agent"].config_template is None


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)).receiver.write_path == "/push"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/config.yaml")


def test_env_overrides(tmp_path, monkeypatch):
    path = write_config(tmp_path, {"global": {"log_level": "INFO"}})
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("RECEIVER_HOST", "0.0.0.0")
    config = load_config(path)
    assert config.global_.log_level == "WARNING"
    assert config.receiver.host == "0.0.0.0"


@pytest.mark.parametrize("data", [
    {"receiver": {"write_path": "push"}},
    {"receiver": {"write_path": "/same", "metrics_path": "/same"}},
    {"receiver": {"port": 70000}},
    {"assertions": {"time_epsilon": 0}},
    {"run": {"window_s": -1}},
    {"run": {"cases": ["Up", "Up"]}},
    {"targets": {"agent": {"command": []}}},
    {"global": {"log_format": "xml"}},
    {"assertions": {"instance_pattern": "("}},
    {"receiver": {"port": 9090}, "run": {"parallelism": 2}},
])
def test_invalid_configs(tmp_path, data):
    with pytest.raises(ConfigError):
        load_config(write_config(tmp_path, data))


def test_non_mapping_root(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_section_models_standalone():
    assert ReceiverConfig(port=8080).port == 8080
    assert AssertionConfig().instance_pattern == r"127\.0\.0\.1:\d+"


def test_instance_pattern_must_compile():
    with pytest.raises(ValueError, match="instance_pattern"):
        AssertionConfig(instance_pattern="(")
    assert AssertionConfig(instance_pattern=r"localhost:\d+").instance_pattern == r"localhost:\d+"


def test_parallel_runs_need_ephemeral_ports():
    with pytest.raises(ValueError, match="receiver.port 0"):
        Config(receiver={"port": 9090}, run={"parallelism": 2})
    assert Config(receiver={"port": 9090}).receiver.port == 9090
    assert Config(run={"parallelism": 4}).run.parallelism == 4
