"""Configuration loading."""

from stagegate.config.settings import (
    ApiConfig,
    EnvironmentConfig,
    GatesConfig,
    GateSuiteConfig,
    LoggingConfig,
    PipelineSettings,
    PlatformConfig,
    PollingConfig,
    RegistryConfig,
    StageGateConfig,
)

__all__ = [
    "ApiConfig",
    "EnvironmentConfig",
    "GatesConfig",
    "GateSuiteConfig",
    "LoggingConfig",
    "PipelineSettings",
    "PlatformConfig",
    "PollingConfig",
    "RegistryConfig",
    "StageGateConfig",
]
