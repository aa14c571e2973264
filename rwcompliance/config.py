"""Configuration models using Pydantic for validation."""
from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field, field_validator, model_validator
import os
import re

from rwcompliance.errors import ConfigError


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"


class ReceiverConfig(BaseModel):
    """Remote write receiver and scrape endpoint configuration."""
    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535)  # 0 picks a free port
    write_path: str = "/push"
    metrics_path: str = "/metrics"
    startup_timeout_s: float = Field(default=5.0, gt=0)

    @field_validator('write_path', 'metrics_path')
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError(f"Path must start with '/': {v}")
        return v

    @model_validator(mode='after')
    def validate_distinct_paths(self):
        if self.write_path == self.metrics_path:
            raise ValueError("write_path and metrics_path must differ")
        return self


class AssertionConfig(BaseModel):
    """Tolerances used when checking received samples."""
    # Relative tolerance for values compared against their own timestamp.
    time_epsilon: float = Field(default=0.01, gt=0)
    instance_pattern: str = r"127\.0\.0\.1:\d+"

    @field_validator('instance_pattern')
    @classmethod
    def validate_instance_pattern(cls, v):
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid instance_pattern {v!r}: {e}")
        return v


class RunConfig(BaseModel):
    """How long and how many cases to run."""
    window_s: float = Field(default=15.0, gt=0)
    shutdown_grace_s: float = Field(default=5.0, ge=0)
    parallelism: int = Field(default=1, ge=1)
    cases: List[str] = Field(default_factory=list)  # empty runs every case


class TargetConfig(BaseModel):
    """A sender launched as a child process.

    ``command`` and ``config_template`` may use the placeholders
    {scrape_target}, {receive_endpoint} and, in ``command`` only, {config_file}.
    """
    command: List[str]
    config_template: Optional[str] = None

    @field_validator('command')
    @classmethod
    def validate_command(cls, v):
        if not v:
            raise ValueError("Target command must not be empty")
        return v


class Config(BaseModel):
    """Root configuration model."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    receiver: ReceiverConfig = Field(default_factory=ReceiverConfig)
    assertions: AssertionConfig = Field(default_factory=AssertionConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    targets: Dict[str, TargetConfig] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    @field_validator('run')
    @classmethod
    def validate_unique_cases(cls, v):
        if len(v.cases) != len(set(v.cases)):
            raise ValueError("Case names must be unique")
        return v

    @model_validator(mode='after')
    def validate_parallel_ports(self):
        if self.run.parallelism > 1 and self.receiver.port != 0:
            raise ValueError("run.parallelism > 1 requires receiver.port 0; concurrent cases cannot share a port")
        return self


def load_config(config_path: str) -> Config:
    """Load and validate configuration from YAML file."""
    import yaml

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Configuration root must be a mapping: {config_path}")

    # Apply environment variable overrides
    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config.setdefault('global', {})['log_level'] = env_log_level

    if env_host := os.getenv('RECEIVER_HOST'):
        raw_config.setdefault('receiver', {})['host'] = env_host

    try:
        return Config(**raw_config)
    except Exception as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e
