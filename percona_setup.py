#!/usr/bin/env python3
"""
Provision and destroy Percona clusters on AWS or GCP.

Products:
  percona-server   Percona Server, async or group replication, optional Orchestrator tier
  xtradb-cluster   Percona XtraDB Cluster (Galera)
  pmm              PMM server in Docker, optionally enrolling discovered RDS instances
  pmm-rds          Enroll one RDS instance into an existing PMM server

Examples:
  percona-cluster create percona-server --cloud aws --region us-east-1 \\
      --key-pair-name pcs --instance-type t3.large --cluster-size 3
  percona-cluster destroy percona-server --cloud aws --region us-east-1 --resource-id <id>
"""

import abc
import argparse
import json
import shlex
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

import requests

from percona_aws import AwsCloud
from percona_cloud import Cloud, Instance
from percona_cluster import ClusterNodes, PerconaServerManager, XtraDBClusterManager, orchestrator_url
from percona_common import (
    ConfigError,
    Context,
    ProvisionError,
    generate_resource_id,
    log,
    set_log_file,
)
from percona_config import CLOUD_AWS, CLOUD_GCP, CloudOptions, ClusterOptions, ConfigStore
from percona_gcp import GcpCloud
from percona_pmm import PmmClient, parse_pmm_address

__version__ = "0.1.0"

PRODUCT_PERCONA_SERVER = "percona-server"
PRODUCT_XTRADB_CLUSTER = "xtradb-cluster"
PRODUCT_PMM = "pmm"
PRODUCT_PMM_RDS = "pmm-rds"

TELEMETRY_URL = "https://check.percona.com/v1/telemetry/Report"
TELEMETRY_TIMEOUT = 10
TELEMETRY_UP_DURATION = "0.673692200s"

PMM_SERVER_IMAGE = "percona/pmm-server:2"
PMM_ADMIN_USER = "admin"
# The RDS discovery endpoint answers only once pmm-managed has fully started.
PMM_SETTLE_SECONDS = 30


def new_cloud(options: CloudOptions, store: ConfigStore, **kwargs) -> Cloud:
    if options.cloud == CLOUD_AWS:
        return AwsCloud(options, store, **kwargs)
    if options.cloud == CLOUD_GCP:
        return GcpCloud(options, store, **kwargs)
    raise ConfigError(f"cloud '{options.cloud}' is not supported")


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

def telemetry_payload(resource_id: str, resource_name: str, values: Dict[str, str]) -> Dict:
    metrics = [
        {"key": "product", "value": "terraform-provider"},
        {"key": "resource", "value": resource_name},
    ]
    metrics.extend({"key": k, "value": v} for k, v in sorted(values.items()))
    return {
        "metrics": {
            "id": resource_id,
            "time": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "pmmServerTelemetryId": uuid.uuid4().hex,
            "pmmServerVersion": __version__,
            "upDuration": TELEMETRY_UP_DURATION,
            "distributionMethod": "DOCKER",
            "metrics": metrics,
        }
    }


def _post_telemetry(payload: Dict, url: str):
    try:
        resp = requests.post(url, json=payload, timeout=TELEMETRY_TIMEOUT)
        if resp.status_code != 200:
            log(f"WARNING: telemetry report returned {resp.status_code}")
    except requests.RequestException as exc:
        log(f"WARNING: telemetry report failed: {exc}")


def send_telemetry(resource_id: str, resource_name: str, values: Dict[str, str],
                   url: str = TELEMETRY_URL) -> threading.Thread:
    thread = threading.Thread(
        target=_post_telemetry,
        args=(telemetry_payload(resource_id, resource_name, values), url),
        name="telemetry",
        daemon=True,
    )
    thread.start()
    return thread


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

def instance_outputs(instances: List[Instance], replicas: Optional[List[bool]] = None) -> List[Dict]:
    replicas = replicas or [False] * len(instances)
    return [
        {
            "public_ip_address": inst.public_ip_address,
            "private_ip_address": inst.private_ip_address,
            "is_replica": is_replica,
        }
        for inst, is_replica in zip(instances, replicas)
    ]


class ClusterResource(abc.ABC):
    """One product: configure provider, reconcile infra, build nodes, publish outputs."""

    name = ""

    def __init__(self, cloud: Cloud, opts: ClusterOptions):
        self.cloud = cloud
        self.opts = opts
        self.telemetry_thread: Optional[threading.Thread] = None

    def validate(self):
        self.opts.validate_mysql()
        if self.opts.pmm_address:
            parse_pmm_address(self.opts.pmm_address)

    def create(self, ctx: Context) -> Dict:
        self.validate()
        resource_id = generate_resource_id()
        log(f"=== Creating {self.name} {resource_id} on {self.cloud.name} ===")
        if not self.cloud.options.disable_telemetry:
            self.telemetry_thread = send_telemetry(resource_id, self.name, self.opts.telemetry_values())
        output = self.provision(ctx, resource_id)
        output["resource_id"] = resource_id
        log(f"=== {self.name} {resource_id} ready ===")
        return output

    def provision(self, ctx: Context, resource_id: str) -> Dict:
        log("=== Provisioning infrastructure ===")
        self.cloud.configure(ctx, resource_id, self.opts)
        self.cloud.create_infrastructure(ctx, resource_id)
        return self.build(ctx, resource_id)

    @abc.abstractmethod
    def build(self, ctx: Context, resource_id: str) -> Dict:
        ...

    def destroy(self, ctx: Context, resource_id: str):
        log(f"=== Destroying {self.name} {resource_id} ===")
        self.cloud.configure(ctx, resource_id)
        self.cloud.delete_infrastructure(ctx, resource_id)


class PerconaServer(ClusterResource):
    name = PRODUCT_PERCONA_SERVER

    def build(self, ctx, resource_id):
        nodes: ClusterNodes = PerconaServerManager(self.cloud, resource_id, self.opts).create(ctx)
        return {
            "instances": instance_outputs(nodes.instances, nodes.replicas),
            "orchestrator_instances": [
                dict(instance_outputs([inst])[0], url=orchestrator_url(inst))
                for inst in nodes.orchestrator_instances
            ],
        }


class XtraDBCluster(ClusterResource):
    name = PRODUCT_XTRADB_CLUSTER

    def build(self, ctx, resource_id):
        nodes = XtraDBClusterManager(self.cloud, resource_id, self.opts).create(ctx)
        return {"instances": instance_outputs(nodes.instances, nodes.replicas)}


def pmm_server_script(admin_password: str) -> str:
    return f"""
sudo apt-get update
sudo DEBIAN_FRONTEND=noninteractive apt-get install -y docker.io curl
sudo systemctl enable --now docker
sudo docker pull {PMM_SERVER_IMAGE}
sudo docker volume create pmm-data
if ! sudo docker ps -a --format '{{{{.Names}}}}' | grep -qx pmm-server; then
    sudo docker run -d -p 443:443 -p 80:80 --volume pmm-data:/srv --name pmm-server \\
        --restart always {PMM_SERVER_IMAGE}
fi
for i in $(seq 1 60); do
    if curl -fsk https://localhost/v1/readyz >/dev/null 2>&1; then
        echo "PMM server ready"
        break
    fi
    echo "Waiting for PMM server... (attempt $i/60)"
    sleep 5
done
sudo docker exec -t pmm-server change-admin-password {shlex.quote(admin_password)}
"""


class Monitoring(ClusterResource):
    """PMM server on one instance; RDS instances enrolled when credentials are given."""

    name = PRODUCT_PMM

    def validate(self):
        self.opts.validate_infrastructure()

    def build(self, ctx, resource_id):
        instances = self.cloud.create_instances(ctx, resource_id, 1)
        server = instances[0]
        log(f"Installing PMM server on {server.public_ip_address}")
        self.cloud.run_command(ctx, resource_id, server, pmm_server_script(self.opts.pmm_password))
        address = f"http://{PMM_ADMIN_USER}:{quote(self.opts.pmm_password, safe='')}@{server.public_ip_address}"
        if self.opts.rds_username and self.opts.rds_password:
            ctx.sleep(PMM_SETTLE_SECONDS, "pmm server start")
            self.enroll_rds(resource_id, PmmClient(address))
        return {"instances": instance_outputs(instances),
                "pmm_url": f"https://{server.public_ip_address}"}

    def enroll_rds(self, resource_id: str, client: PmmClient):
        credentials = self.cloud.credentials()
        for rds in client.rds_discover(*credentials):
            try:
                client.add_rds_instance(resource_id, rds, credentials, self.opts.rds_username,
                                        self.opts.rds_password, self.opts.rds_pmm_user_password)
            except ProvisionError as exc:
                log(f"WARNING: failed to add RDS instance {rds.get('instance_id', '')} to PMM: {exc}")


class MonitoringRds(ClusterResource):
    """Enroll one existing RDS instance; nothing is created in the cloud."""

    name = PRODUCT_PMM_RDS

    def validate(self):
        missing = [k for k in ("pmm_address", "rds_id", "rds_username", "rds_password")
                   if not getattr(self.opts, k)]
        if missing:
            raise ConfigError(f"{', '.join(missing)} required for {self.name}")
        parse_pmm_address(self.opts.pmm_address)

    def provision(self, ctx, resource_id):
        self.cloud.configure(ctx, resource_id)
        return self.build(ctx, resource_id)

    def build(self, ctx, resource_id):
        client = PmmClient(self.opts.pmm_address)
        credentials = self.cloud.credentials()
        for rds in client.rds_discover(*credentials):
            if rds.get("instance_id") == self.opts.rds_id:
                client.add_rds_instance(resource_id, rds, credentials, self.opts.rds_username,
                                        self.opts.rds_password, self.opts.rds_pmm_user_password)
                return {"instances": []}
        raise ConfigError(f"RDS instance {self.opts.rds_id} not found")

    def destroy(self, ctx, resource_id):
        log(f"=== Destroying {self.name} {resource_id} ===")
        PmmClient(self.opts.pmm_address).delete_services_by_resource_id(resource_id)


PRODUCTS = {
    PRODUCT_PERCONA_SERVER: PerconaServer,
    PRODUCT_XTRADB_CLUSTER: XtraDBCluster,
    PRODUCT_PMM: Monitoring,
    PRODUCT_PMM_RDS: MonitoringRds,
}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

CLOUD_FLAGS = ("cloud", "region", "profile", "project", "zone")
CLUSTER_FLAGS = (
    "key_pair_name", "path_to_key_pair_storage", "instance_type", "volume_type", "volume_size",
    "volume_iops", "volume_throughput", "vpc_name", "vpc_id", "cluster_size", "version",
    "config_file_path", "port", "replication_type", "pmm_address", "orchestrator_size",
    "galera_port", "rds_id",
)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Provision or destroy a Percona database cluster.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=["create", "destroy"])
    parser.add_argument("product", choices=sorted(PRODUCTS))
    parser.add_argument("--config", help="JSON file with option values; command-line flags win.")
    parser.add_argument("--resource-id", help="Resource ID of the cluster to destroy.")
    parser.add_argument("--log-file", help="Also append log lines to this file.")
    parser.add_argument("--timeout", type=float, help="Abort the run after this many seconds.")
    parser.add_argument("--ignore-errors-on-destroy", action="store_true", default=None,
                        help="Log and skip resources that fail to delete.")
    parser.add_argument("--disable-telemetry", action="store_true", default=None,
                        help="Do not send the usage report on create.")
    parser.add_argument("--myrocks-install", action="store_true", default=None,
                        help="Install MyRocks and make it the default storage engine.")
    parser.add_argument("--set", dest="extra", action="append", default=[], metavar="KEY=VALUE",
                        help="Any other option, e.g. --set password=secret (repeatable).")
    for name in CLOUD_FLAGS + CLUSTER_FLAGS:
        parser.add_argument("--" + name.replace("_", "-"), dest=name)
    return parser


def option_mapping(args) -> Dict:
    options = {}
    if args.config:
        try:
            with open(args.config, encoding="utf-8") as fh:
                options.update(json.load(fh))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"read config {args.config}: {exc}") from exc
    for item in args.extra:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigError(f"--set expects KEY=VALUE, got {item!r}")
        options[key.strip().replace("-", "_")] = value
    for name in CLOUD_FLAGS + CLUSTER_FLAGS + ("ignore_errors_on_destroy", "disable_telemetry",
                                                "myrocks_install"):
        value = getattr(args, name)
        if value is not None:
            options[name] = value
    return options


def run(args) -> Optional[Dict]:
    options = option_mapping(args)
    cloud_options = CloudOptions.from_mapping(options)
    cluster_options = ClusterOptions.from_mapping(options)
    cloud = new_cloud(cloud_options, ConfigStore())
    resource = PRODUCTS[args.product](cloud, cluster_options)
    ctx = Context(timeout=args.timeout)

    if args.action == "destroy":
        if not args.resource_id:
            raise ConfigError("--resource-id is required for destroy")
        resource.destroy(ctx, args.resource_id)
        return None

    try:
        return resource.create(ctx)
    finally:
        if resource.telemetry_thread is not None:
            resource.telemetry_thread.join(TELEMETRY_TIMEOUT)


def main(argv=None):
    parser = parse_args()
    args = parser.parse_args(argv)
    set_log_file(args.log_file)
    try:
        output = run(args)
    except ProvisionError as exc:
        raise SystemExit(f"ERROR: {exc}")
    except KeyboardInterrupt:
        raise SystemExit("ERROR: interrupted")
    if output is not None:
        print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
