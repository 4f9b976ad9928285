"""
Capability set every cloud adapter implements, plus the pieces that are the
same on every cloud: remote execution against an instance's public address
and the SSH readiness wait after launch.
"""

import abc
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, List, Optional, Tuple

from percona_common import ConfigError, Context, ReadinessTimeout, log, poll_until
from percona_config import CloudOptions, ClusterOptions, ConfigStore
from percona_ssh import RemoteExecutor, key_pair_path

SSH_POLL_INTERVAL = 5.0
SSH_READY_TIMEOUT = 600.0


@dataclass(frozen=True)
class Instance:
    public_ip_address: str
    private_ip_address: str


class Cloud(abc.ABC):
    name = ""

    def __init__(self, options: CloudOptions, store: ConfigStore,
                 executor_factory: Callable[..., RemoteExecutor] = RemoteExecutor):
        self.options = options
        self.store = store
        self.executor_factory = executor_factory

    # -- provider specific --------------------------------------------------

    @abc.abstractmethod
    def configure(self, ctx: Context, resource_id: str, opts: Optional[ClusterOptions] = None):
        """Fill the ResourceConfig for `resource_id`; callable without options for delete-only flows."""

    @abc.abstractmethod
    def create_infrastructure(self, ctx: Context, resource_id: str):
        ...

    @abc.abstractmethod
    def create_instances(self, ctx: Context, resource_id: str, count: int,
                         labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        ...

    @abc.abstractmethod
    def list_instances(self, ctx: Context, resource_id: str,
                       labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        ...

    @abc.abstractmethod
    def delete_infrastructure(self, ctx: Context, resource_id: str):
        ...

    def credentials(self) -> Tuple[str, str]:
        raise ConfigError(f"{self.name} adapter has no credentials to hand out")

    # -- shared -------------------------------------------------------------

    def executor(self, resource_id: str) -> RemoteExecutor:
        cfg = self.store.get(resource_id)
        return self.executor_factory(key_pair_path(cfg.path_to_key_pair, cfg.key_pair_name))

    def run_command(self, ctx: Context, resource_id: str, instance: Instance, cmd: str,
                    strict: bool = True) -> str:
        return self.executor(resource_id).run_command(ctx, instance.public_ip_address, cmd, strict=strict)

    def send_file(self, ctx: Context, resource_id: str, instance: Instance, src, remote_path: str):
        self.executor(resource_id).send_file(ctx, instance.public_ip_address, src, remote_path)

    def edit_file(self, ctx: Context, resource_id: str, instance: Instance, path: str,
                  edit_fn: Callable[[BinaryIO], None]):
        self.executor(resource_id).edit_file(ctx, instance.public_ip_address, path, edit_fn)

    def wait_reachable(self, ctx: Context, resource_id: str, instances: List[Instance],
                       interval: float = SSH_POLL_INTERVAL, timeout: float = SSH_READY_TIMEOUT):
        executor = self.executor(resource_id)
        for inst in instances:
            log(f"Waiting for SSH on {inst.public_ip_address}...")
            try:
                poll_until(ctx, lambda: executor.is_reachable(ctx, inst.public_ip_address),
                           interval=interval, timeout=timeout, what=f"ssh on {inst.public_ip_address}")
            except ReadinessTimeout as exc:
                raise ReadinessTimeout(f"instance {inst.public_ip_address} is not reachable: {exc}") from exc
