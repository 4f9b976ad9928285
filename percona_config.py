"""
Declared configuration for the provisioner.

Options arrive as a flat name -> value mapping (CLI flags, a JSON file, or any
other front-end) and are converted exactly once into typed dataclasses. The
rest of the code only ever sees those dataclasses.
"""

import threading
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

from percona_common import ConfigError

CLOUD_AWS = "aws"
CLOUD_GCP = "gcp"
SUPPORTED_CLOUDS = (CLOUD_AWS, CLOUD_GCP)

REPLICATION_ASYNC = "async"
REPLICATION_GROUP = "group-replication"
REPLICATION_TYPES = (REPLICATION_ASYNC, REPLICATION_GROUP)

DEFAULT_AWS_VOLUME_TYPE = "gp2"
DEFAULT_GCP_VOLUME_TYPE = "pd-balanced"

# Values never reported through telemetry.
SENSITIVE_OPTIONS = {
    "password",
    "replica_password",
    "pmm_password",
    "orchestrator_password",
    "rds_username",
    "rds_password",
    "rds_pmm_user_password",
    "pmm_address",
    "galera_port",
}


def _coerce(name, value, kind):
    if value is None:
        return None
    try:
        if kind is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off", ""):
                    return False
                raise ValueError(value)
            return bool(value)
        if kind is int:
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"option '{name}': expected {kind.__name__}, got {value!r}")


def _from_mapping(cls, options: Mapping[str, Any]):
    kwargs = {}
    for f in fields(cls):
        if f.name not in options or options[f.name] is None:
            continue
        kind = f.type if f.type in (bool, int, str) else str
        kwargs[f.name] = _coerce(f.name, options[f.name], kind)
    return cls(**kwargs)


@dataclass
class CloudOptions:
    cloud: str = ""
    region: str = ""
    profile: str = "default"
    project: str = ""
    zone: str = ""
    ignore_errors_on_destroy: bool = False
    disable_telemetry: bool = False

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "CloudOptions":
        opts = _from_mapping(cls, options)
        opts.validate()
        return opts

    def validate(self):
        if self.cloud not in SUPPORTED_CLOUDS:
            raise ConfigError(f"cloud '{self.cloud}' is not supported, use one of {list(SUPPORTED_CLOUDS)}")
        if self.cloud == CLOUD_AWS and not self.region:
            raise ConfigError("region is required for aws")
        if self.cloud == CLOUD_GCP and not (self.project and self.region and self.zone):
            raise ConfigError("project, region and zone are required for gcp")


@dataclass
class ClusterOptions:
    # Infrastructure
    key_pair_name: str = ""
    path_to_key_pair_storage: str = "."
    instance_type: str = ""
    volume_type: str = ""
    volume_size: int = 20
    volume_iops: int = 0
    volume_throughput: int = 0
    vpc_name: str = ""
    vpc_id: str = ""

    # Database tier
    cluster_size: int = 3
    version: str = ""
    config_file_path: str = ""
    port: int = 3306
    password: str = "password"
    replica_password: str = "replicaPassword"
    replication_type: str = REPLICATION_ASYNC
    myrocks_install: bool = False
    galera_port: int = 4567

    # Monitoring
    pmm_address: str = ""
    pmm_password: str = "password"

    # Orchestrator tier
    orchestrator_size: int = 0
    orchestrator_password: str = "password"

    # Monitoring server / RDS enrollment
    rds_id: str = ""
    rds_username: str = ""
    rds_password: str = ""
    rds_pmm_user_password: str = "password"

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "ClusterOptions":
        return _from_mapping(cls, options)

    def validate_infrastructure(self):
        if not self.key_pair_name:
            raise ConfigError("key_pair_name is required")
        if not self.instance_type:
            raise ConfigError("instance_type is required")
        if self.volume_size <= 0:
            raise ConfigError(f"volume_size must be positive, got {self.volume_size}")

    def validate_mysql(self):
        self.validate_infrastructure()
        if self.cluster_size < 1:
            raise ConfigError(f"cluster_size must be at least 1, got {self.cluster_size}")
        if self.replication_type not in REPLICATION_TYPES:
            raise ConfigError(
                f"replication_type '{self.replication_type}' is not supported, use one of {list(REPLICATION_TYPES)}"
            )
        if 0 < self.orchestrator_size < 3:
            raise ConfigError("orchestrator_size should be 3 or more")
        if self.orchestrator_size < 0:
            raise ConfigError(f"orchestrator_size must not be negative, got {self.orchestrator_size}")

    def telemetry_values(self) -> Dict[str, str]:
        """Declared, non-sensitive, non-default option values."""
        defaults = ClusterOptions()
        values = {}
        for f in fields(self):
            if f.name in SENSITIVE_OPTIONS:
                continue
            value = getattr(self, f.name)
            if value != getattr(defaults, f.name):
                values[f.name] = str(value)
        return values


# ---------------------------------------------------------------------------
# Per-resource provisioning state
# ---------------------------------------------------------------------------

@dataclass
class ResourceConfig:
    """Cloud-side parameters resolved for one ResourceID during a run."""
    key_pair_name: str = ""
    path_to_key_pair: str = "."
    image: str = ""
    instance_type: str = ""
    volume_type: str = ""
    volume_size: int = 20
    volume_iops: Optional[int] = None
    volume_throughput: Optional[int] = None
    vpc_name: str = ""
    vpc_id: str = ""
    security_group_id: str = ""
    subnet_id: str = ""
    public_key: str = ""
    extra: Dict[str, str] = field(default_factory=dict)


class ConfigStore:
    """ResourceID -> ResourceConfig map, shared by the adapters of one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._configs: Dict[str, ResourceConfig] = {}

    def get(self, resource_id: str) -> ResourceConfig:
        with self._lock:
            cfg = self._configs.get(resource_id)
            if cfg is None:
                cfg = ResourceConfig()
                self._configs[resource_id] = cfg
            return cfg

    def __contains__(self, resource_id):
        with self._lock:
            return resource_id in self._configs
