"""
Configuration for StageGate.

A single StageGateConfig object is loaded from YAML and handed to each
component at construction.
"""

from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from stagegate.errors import ConfigurationError
from stagegate.models import DeploymentPolicy, Environment


class PlatformConfig(BaseModel):
    """Which platform implementation to talk to."""

    provider: Literal["aws", "memory"] = Field(
        "aws", description="aws (CloudFormation + ECS) or memory (dry run)"
    )
    region: Optional[str] = Field(None, description="AWS region")
    profile: Optional[str] = Field(None, description="AWS named profile")
    capabilities: List[str] = Field(
        default_factory=lambda: ["CAPABILITY_NAMED_IAM"],
        description="Capabilities acknowledged on stack apply",
    )
    stack_timeout_seconds: int = Field(1800, ge=1)


class PollingConfig(BaseModel):
    """Stabilization wait: fixed interval, bounded attempts."""

    interval_seconds: float = Field(15.0, ge=0)
    max_attempts: int = Field(40, ge=1)


class GateSuiteConfig(BaseModel):
    command: List[str] = Field(..., min_length=1, description="Suite argv")
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(900.0, gt=0)


class GatesConfig(BaseModel):
    settle_seconds: float = Field(30.0, ge=0, description="Delay before a suite runs")
    base_url_env: str = Field("BASE_URL", description="Env var the endpoint is exported as")
    acceptance_suite: str = "acceptance"
    smoke_suite: str = "smoke"
    suites: Dict[str, GateSuiteConfig] = Field(default_factory=dict)


class EnvironmentConfig(BaseModel):
    """Static description of an environment."""

    stack_name: str
    template: str
    cluster: str
    service: str
    family: str
    execution_role_ref: str = ""
    network_placement_refs: List[str] = Field(default_factory=list)
    parameters: Dict[str, str] = Field(default_factory=dict)
    policy: DeploymentPolicy = Field(default_factory=DeploymentPolicy)
    endpoint_output: str = "ServiceUrl"
    revision_output: str = "TaskDefinitionArn"

    def to_environment(self, name: str) -> Environment:
        return Environment(name=name, **self.model_dump())


class PipelineSettings(BaseModel):
    rollback_marker: str = Field("[rollback]", description="Change-description rollback marker")
    state_dir: str = Field("/var/lib/stagegate", description="Run history directory")
    audit_log: str = Field("/var/log/stagegate/audit.jsonl")
    history_limit: int = Field(100, ge=1, description="Runs kept in the run store")


class RegistryConfig(BaseModel):
    resolve_digests: bool = Field(
        True, description="Resolve image tags to digests before a run starts"
    )
    username: Optional[str] = None
    token: Optional[str] = Field(None, description="Registry token for digest resolution")
    timeout_seconds: float = 30.0


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8890
    deploy_token: Optional[str] = Field(None, description="Bearer token required on trigger routes")


class LoggingConfig(BaseModel):
    log_dir: str = "/var/log/stagegate"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False


def _default_environment(name: str) -> EnvironmentConfig:
    return EnvironmentConfig(
        stack_name=f"app-{name}",
        template="infrastructure/service.yml",
        cluster=f"app-{name}",
        service="app",
        family=f"app-{name}",
    )


class StageGateConfig(BaseModel):
    """Root configuration."""

    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    gates: GatesConfig = Field(default_factory=GatesConfig)
    staging: EnvironmentConfig = Field(default_factory=lambda: _default_environment("staging"))
    production: EnvironmentConfig = Field(
        default_factory=lambda: _default_environment("production")
    )
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str) -> "StageGateConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {path}")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    def save(self, path: str) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

    def environments(self) -> Dict[str, Environment]:
        """Fresh runtime Environment records keyed by name."""
        return {
            "staging": self.staging.to_environment("staging"),
            "production": self.production.to_environment("production"),
        }
