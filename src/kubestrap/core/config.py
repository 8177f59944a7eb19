"""Configuration management for kubestrap."""

import ipaddress
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from kubestrap.core.exceptions import ConfigurationError


class AWSConfig(BaseModel):
    """AWS configuration."""

    region: str = "us-east-1"
    profile: str | None = None


class NetworkConfig(BaseModel):
    """VPC layout for the cluster."""

    vpc_cidr: str = "10.0.0.0/16"
    subnet_cidr: str = "10.0.1.0/24"
    availability_zone: str | None = None
    admin_cidr: str = "0.0.0.0/0"  # SSH and API server ingress

    @model_validator(mode="after")
    def validate_cidrs(self) -> "NetworkConfig":
        """Check every CIDR parses and the subnet sits inside the VPC."""
        try:
            vpc = ipaddress.ip_network(self.vpc_cidr)
            subnet = ipaddress.ip_network(self.subnet_cidr)
            ipaddress.ip_network(self.admin_cidr)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR in network config: {e}") from e

        if subnet.version != vpc.version or not subnet.subnet_of(vpc):  # type: ignore[arg-type]
            raise ValueError(f"Subnet {self.subnet_cidr} is not inside VPC {self.vpc_cidr}")
        return self


class NodesConfig(BaseModel):
    """Instance settings shared by all nodes."""

    ami_id: str
    instance_type: str = "t3.medium"
    worker_count: int = Field(default=1, ge=0)
    ssh_user: str = "ubuntu"
    key_name: str | None = None
    private_key_path: str | None = None
    root_volume_gb: int = 20


class KubernetesConfig(BaseModel):
    """Kubernetes bootstrap settings."""

    version: str = "v1.30"  # pkgs.k8s.io minor channel
    pod_network_cidr: str = "10.244.0.0/16"
    cni_manifest_url: str = (
        "https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml"
    )
    token_ttl_seconds: int = Field(default=600, ge=60)
    probe: str = "remote"  # remote (kubectl over SSH) or api (kubernetes client)


class TimeoutsConfig(BaseModel):
    """Deadlines for long-running waits, in seconds."""

    resource_ready: float = 300.0
    api_server_ready: float = 300.0
    network_ready: float = 300.0
    workers_ready: float = 600.0
    poll_interval: float = 5.0


class RetryConfig(BaseModel):
    """Bounded retry settings."""

    max_attempts: int = Field(default=5, ge=1)
    min_wait: float = 1.0
    max_wait: float = 20.0
    max_elapsed: float = 300.0
    ssh_connect_attempts: int = Field(default=10, ge=1)
    join_attempts: int = Field(default=3, ge=1)
    convergence_attempts: int = Field(default=2, ge=1)


class ConcurrencyConfig(BaseModel):
    """Concurrency limits."""

    max_parallel: int = Field(default=4, ge=1)


class StateConfig(BaseModel):
    """Persisted state backend."""

    backend: str = "file"  # file or dynamodb
    directory: str = "~/.kubestrap"
    dynamodb_table: str = "kubestrap-state"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"
    output: str = "stderr"


class KubestrapConfig(BaseModel):
    """Main kubestrap configuration."""

    cluster_name: str = "kubestrap"
    aws: AWSConfig = Field(default_factory=AWSConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    nodes: NodesConfig
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_pod_network(self) -> "KubestrapConfig":
        """The pod network CIDR must at least parse; overlap is a preflight concern."""
        try:
            ipaddress.ip_network(self.kubernetes.pod_network_cidr)
        except ValueError as e:
            raise ValueError(f"Invalid pod_network_cidr: {e}") from e
        if self.kubernetes.probe not in ("remote", "api"):
            raise ValueError(f"Unknown probe type: {self.kubernetes.probe}")
        if self.state.backend not in ("file", "dynamodb"):
            raise ValueError(f"Unknown state backend: {self.state.backend}")
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> "KubestrapConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            KubestrapConfig instance

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        config_path = Path(path).expanduser()

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with config_path.open() as f:
                data = yaml.safe_load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        try:
            return cls(**(data or {}))
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def state_dir(self, cluster_name: str | None = None) -> Path:
        """Directory holding persisted state for a cluster."""
        return Path(self.state.directory).expanduser() / (cluster_name or self.cluster_name)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation
        """
        return self.model_dump()
