"""Application configuration module."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RabbitMQConfig(BaseModel):
    """Configuration options for RabbitMQ connections."""

    url: str = Field(..., description="AMQP URL for the RabbitMQ broker")
    queue: str = Field(..., description="Queue name to consume workspace events from")
    exchange: str = Field("workspace.events", description="Topic exchange carrying workspace events")
    prefetch_count: int = Field(5, ge=1, le=50, description="Consumer prefetch count")


class RedisConfig(BaseModel):
    """Configuration for the Redis connection used for workspace state."""

    url: str = Field(..., description="Redis connection URL")
    decode_responses: bool = Field(True, description="Decode responses to str instead of bytes")


class PulumiConfig(BaseModel):
    """Pulumi Automation API configuration."""

    project_name: str = Field("vm-workspaces", description="Pulumi project name for workspace stacks")
    stack_prefix: str = Field("workspace", description="Prefix for generated Pulumi stack names")
    organization: Optional[str] = Field(
        None,
        description=(
            "Optional Pulumi organization name. When provided, stacks will be scoped as"
            " '<org>/<project>/<stack>'."
        ),
    )
    refresh_before_update: bool = Field(
        True, description="Refresh stack state from the provider before updating"
    )
    kubernetes_plugin_version: str = Field("v4.6.0", description="Version of the kubernetes resource plugin")

    @field_validator("stack_prefix")
    def _normalize_stack_prefix(cls, value: str) -> str:
        return value.replace(" ", "-").lower()


class KubernetesConfig(BaseModel):
    """Cluster access used for readiness checks and resource placement."""

    namespace: str = Field("workspaces", description="Namespace holding workspace secrets and VMs")
    kubeconfig_context: Optional[str] = Field(None, description="kubeconfig context to use outside the cluster")
    in_cluster: bool = Field(False, description="Load the in-cluster service account configuration")


class VMConfig(BaseModel):
    """Settings applied to every workspace VirtualMachine."""

    base_image: str = Field(
        "quay.io/containerdisks/ubuntu:22.04",
        description="Container disk image booted by the workspace VM",
    )
    run_strategy: str = Field("Always", description="KubeVirt runStrategy for started workspaces")
    readiness_timeout_seconds: float = Field(600.0, gt=0, description="Upper bound on the readiness wait")
    readiness_poll_interval_seconds: float = Field(5.0, gt=0, description="Delay between readiness checks")
    swap_cpu_memory_requests: bool = Field(
        False,
        description=(
            "Reproduce the legacy template wiring where the CPU request is taken from the memory"
            " parameter and the memory request from the CPU parameter."
        ),
    )


class AgentAppConfig(BaseModel):
    """Application published by the workspace agent. Passed through verbatim."""

    slug: str = Field("code-server", description="Identifier of the application")
    display_name: str = Field("code-server", description="Name shown on the dashboard")
    port: int = Field(13337, ge=1, le=65535, description="Local port the application listens on")
    url: str = Field("http://localhost:13337/?folder=/home/coder", description="Application URL inside the VM")
    icon: str = Field("/icon/code.svg", description="Icon path used by the dashboard")
    healthcheck_url: str = Field("http://localhost:13337/healthz", description="Health-check URL")
    healthcheck_interval: int = Field(3, ge=1, description="Seconds between health checks")
    healthcheck_threshold: int = Field(10, ge=1, description="Failed checks before the app is unhealthy")

    def as_metadata(self) -> dict:
        return {
            "slug": self.slug,
            "displayName": self.display_name,
            "url": self.url,
            "port": self.port,
            "icon": self.icon,
            "healthcheck": {
                "url": self.healthcheck_url,
                "interval": self.healthcheck_interval,
                "threshold": self.healthcheck_threshold,
            },
        }


class AgentConfig(BaseModel):
    """Bootstrap settings for the in-VM workspace agent."""

    access_url: str = Field("http://coder.coder.svc.cluster.local", description="URL the agent registers with")
    arch: str = Field("amd64", description="Agent binary architecture")
    username: str = Field("coder", description="Unix user the agent runs as")
    token_bytes: int = Field(32, ge=16, le=128, description="Entropy of minted agent tokens")
    app: AgentAppConfig = Field(default_factory=AgentAppConfig)


class LoggingConfig(BaseModel):
    """Simple logging configuration."""

    level: str = Field("INFO", description="Application log level")


class AppConfig(BaseSettings):
    """Top-level application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="VMW_", env_nested_delimiter="__", case_sensitive=False
    )

    rabbitmq: RabbitMQConfig
    redis: RedisConfig
    pulumi: PulumiConfig = Field(default_factory=PulumiConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    vm: VMConfig = Field(default_factory=VMConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api_prefix: str = Field("/api/v1", description="Base prefix for FastAPI routes")
    service_name: str = Field("vm-workspace-service", description="Service identifier")
    event_bindings: List[str] = Field(
        default_factory=lambda: [
            "workspace.start_requested",
            "workspace.stop_requested",
        ],
        description="List of event routing keys the service will subscribe to.",
    )


@lru_cache
def get_settings() -> AppConfig:
    """Return a cached instance of the application settings."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "RabbitMQConfig",
    "RedisConfig",
    "PulumiConfig",
    "KubernetesConfig",
    "VMConfig",
    "AgentConfig",
    "AgentAppConfig",
    "LoggingConfig",
    "get_settings",
]
