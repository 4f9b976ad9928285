"""
GCP adapter: Compute Engine instances created with one bulk insert, optional
named network/subnetwork/firewall, teardown by label.

GCE networks and firewalls carry no labels, so the objects this adapter
creates record the resource ID in their description instead.
"""

from typing import Dict, List, Optional

from google.api_core import exceptions as gexc
from google.cloud import compute_v1

from percona_cloud import Cloud, Instance
from percona_common import (
    ALL_ADDRESSES_CIDR,
    LABEL_INSTANCE_ROLE,
    TAG_RESOURCE_ID,
    CloudError,
    ConfigError,
    Context,
    ReadinessTimeout,
    log,
    merge_labels,
    poll_until,
)
from percona_config import DEFAULT_GCP_VOLUME_TYPE, ClusterOptions
from percona_ssh import DEFAULT_SSH_USER, RemoteExecutor, key_pair_path, ssh_public_key

IMAGE_PROJECT = "ubuntu-os-cloud"
IMAGE_FAMILY = "ubuntu-2004-lts"
DEFAULT_NETWORK = "default"
SUBNET_CIDR = "10.0.1.0/24"

OPERATION_POLL_INTERVAL = 5.0
OPERATION_TIMEOUT = 900.0


def gce_name(value: str) -> str:
    return value.lower().replace("_", "-")


def label_filter(labels: Dict[str, str]) -> str:
    return " AND ".join(f'labels.{k} = "{v}"' for k, v in sorted(labels.items()))


def owner_marker(resource_id: str) -> str:
    return f"{TAG_RESOURCE_ID}={resource_id}"


class GcpCloud(Cloud):
    name = "gcp"

    def __init__(self, options, store, executor_factory=RemoteExecutor):
        super().__init__(options, store, executor_factory)
        self._clients = {}

    def _client(self, kind):
        if kind not in self._clients:
            self._clients[kind] = getattr(compute_v1, kind)()
        return self._clients[kind]

    def _call(self, op, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except gexc.GoogleAPICallError as exc:
            raise CloudError(f"{op}: {exc.message}") from exc

    def _wait(self, ctx: Context, op_name: str, operation):
        poll_until(ctx, operation.done, interval=OPERATION_POLL_INTERVAL,
                   timeout=OPERATION_TIMEOUT, what=op_name)
        if operation.error_code:
            raise CloudError(f"{op_name}: {operation.error_message or operation.error_code}")

    def _labels(self, labels: Optional[Dict[str, str]], resource_id: str) -> Dict[str, str]:
        return {k: gce_name(v) for k, v in merge_labels(labels, resource_id).items()}

    # ------------------------------------------------------------------
    # Configure
    # ------------------------------------------------------------------

    def configure(self, ctx: Context, resource_id: str, opts: Optional[ClusterOptions] = None):
        cfg = self.store.get(resource_id)
        if opts is None:
            return
        cfg.key_pair_name = opts.key_pair_name
        cfg.path_to_key_pair = opts.path_to_key_pair_storage or "."
        cfg.instance_type = opts.instance_type
        cfg.volume_type = opts.volume_type or DEFAULT_GCP_VOLUME_TYPE
        cfg.volume_size = opts.volume_size
        cfg.vpc_name = gce_name(opts.vpc_name) if opts.vpc_name else ""
        if not cfg.key_pair_name:
            raise ConfigError("key_pair_name is required")
        cfg.public_key = ssh_public_key(key_pair_path(cfg.path_to_key_pair, cfg.key_pair_name), create=True)
        image = self._call("get image", self._client("ImagesClient").get_from_family,
                           project=IMAGE_PROJECT, family=IMAGE_FAMILY)
        cfg.image = image.self_link

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    def create_infrastructure(self, ctx: Context, resource_id: str):
        cfg = self.store.get(resource_id)
        if not cfg.vpc_name:
            log(f"REUSED  network: {DEFAULT_NETWORK}")
            return
        network = self.ensure_network(ctx, resource_id, cfg.vpc_name)
        cfg.subnet_id = self.ensure_subnetwork(ctx, resource_id, network, f"{cfg.vpc_name}-sub")
        cfg.security_group_id = self.ensure_firewall(ctx, resource_id, network, f"{cfg.vpc_name}-sg")

    def _get(self, op, fn, **kwargs):
        try:
            return fn(**kwargs)
        except gexc.NotFound:
            return None
        except gexc.GoogleAPICallError as exc:
            raise CloudError(f"{op}: {exc.message}") from exc

    def ensure_network(self, ctx, resource_id, name):
        client = self._client("NetworksClient")
        found = self._get("get network", client.get, project=self.options.project, network=name)
        if found is not None:
            log(f"REUSED  network: {name}")
            return found.self_link
        network = compute_v1.Network(
            name=name,
            auto_create_subnetworks=False,
            description=owner_marker(resource_id),
        )
        op = self._call("insert network", client.insert, project=self.options.project, network_resource=network)
        self._wait(ctx, "insert network", op)
        log(f"CREATED network: {name}")
        return self._call("get network", client.get, project=self.options.project, network=name).self_link

    def ensure_subnetwork(self, ctx, resource_id, network, name):
        client = self._client("SubnetworksClient")
        found = self._get("get subnetwork", client.get, project=self.options.project,
                          region=self.options.region, subnetwork=name)
        if found is not None:
            log(f"REUSED  subnetwork: {name}")
            return name
        subnet = compute_v1.Subnetwork(
            name=name,
            network=network,
            ip_cidr_range=SUBNET_CIDR,
            description=owner_marker(resource_id),
        )
        op = self._call("insert subnetwork", client.insert, project=self.options.project,
                        region=self.options.region, subnetwork_resource=subnet)
        self._wait(ctx, "insert subnetwork", op)
        log(f"CREATED subnetwork: {name}")
        return name

    def ensure_firewall(self, ctx, resource_id, network, name):
        client = self._client("FirewallsClient")
        found = self._get("get firewall", client.get, project=self.options.project, firewall=name)
        if found is not None:
            log(f"REUSED  firewall: {name}")
            return name
        firewall = compute_v1.Firewall(
            name=name,
            network=network,
            direction="INGRESS",
            source_ranges=[ALL_ADDRESSES_CIDR],
            allowed=[compute_v1.Allowed(I_p_protocol="all")],
            description=owner_marker(resource_id),
        )
        op = self._call("insert firewall", client.insert, project=self.options.project, firewall_resource=firewall)
        self._wait(ctx, "insert firewall", op)
        log(f"CREATED firewall: {name}")
        return name

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def _instance_properties(self, resource_id, labels):
        cfg = self.store.get(resource_id)
        disk = compute_v1.AttachedDisk(
            boot=True,
            auto_delete=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=cfg.image,
                disk_size_gb=cfg.volume_size,
                disk_type=cfg.volume_type or DEFAULT_GCP_VOLUME_TYPE,
            ),
        )
        iface = compute_v1.NetworkInterface(
            access_configs=[compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT",
                                                    network_tier="PREMIUM")],
        )
        if cfg.vpc_name:
            iface.network = f"projects/{self.options.project}/global/networks/{cfg.vpc_name}"
            iface.subnetwork = f"projects/{self.options.project}/regions/{self.options.region}/subnetworks/{cfg.subnet_id}"
        else:
            iface.network = f"projects/{self.options.project}/global/networks/{DEFAULT_NETWORK}"
        metadata = compute_v1.Metadata(items=[
            compute_v1.Items(key="ssh-keys", value=f"{DEFAULT_SSH_USER}:{cfg.public_key.strip()}"),
        ])
        return compute_v1.InstanceProperties(
            machine_type=cfg.instance_type,
            disks=[disk],
            network_interfaces=[iface],
            metadata=metadata,
            labels=labels,
        )

    def create_instances(self, ctx: Context, resource_id: str, count: int,
                         labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        gce_labels = self._labels(labels, resource_id)
        role = gce_labels.get(LABEL_INSTANCE_ROLE, "node")
        request = compute_v1.BulkInsertInstanceResource(
            count=count,
            min_count=count,
            name_pattern=f"{gce_name(resource_id)}-{role}-####",
            instance_properties=self._instance_properties(resource_id, gce_labels),
        )
        op = self._call("bulk insert instances", self._client("InstancesClient").bulk_insert,
                        project=self.options.project, zone=self.options.zone,
                        bulk_insert_instance_resource_resource=request)
        self._wait(ctx, "bulk insert instances", op)
        log(f"CREATED {count} instance(s) {role}")

        def all_running():
            found = self._list(ctx, gce_labels)
            running = [i for i in found if i.status == "RUNNING" and self._nat_ip(i)]
            return running if len(running) >= count else None

        poll_until(ctx, all_running, interval=OPERATION_POLL_INTERVAL,
                   timeout=OPERATION_TIMEOUT, what="instances running")
        instances = self.list_instances(ctx, resource_id, labels)
        self.wait_reachable(ctx, resource_id, instances)
        return instances

    @staticmethod
    def _nat_ip(inst) -> str:
        for iface in inst.network_interfaces:
            for ac in iface.access_configs:
                if ac.nat_i_p:
                    return ac.nat_i_p
        return ""

    def _list(self, ctx, gce_labels):
        request = compute_v1.ListInstancesRequest(
            project=self.options.project, zone=self.options.zone, filter=label_filter(gce_labels),
        )
        ctx.check("list instances")
        pager = self._call("list instances", self._client("InstancesClient").list, request=request)
        try:
            return sorted(pager, key=lambda i: i.name)
        except gexc.GoogleAPICallError as exc:
            raise CloudError(f"list instances: {exc.message}") from exc

    def list_instances(self, ctx: Context, resource_id: str,
                       labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        result = []
        for inst in self._list(ctx, self._labels(labels, resource_id)):
            if inst.status not in ("PROVISIONING", "STAGING", "RUNNING"):
                continue
            private = inst.network_interfaces[0].network_i_p if inst.network_interfaces else ""
            result.append(Instance(public_ip_address=self._nat_ip(inst), private_ip_address=private))
        return result

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete_infrastructure(self, ctx: Context, resource_id: str):
        steps = [("delete instances", lambda: self.delete_instances(ctx, resource_id))]
        marker = owner_marker(resource_id)
        project, region = self.options.project, self.options.region
        firewalls = self._client("FirewallsClient")
        subnets = self._client("SubnetworksClient")
        networks = self._client("NetworksClient")
        for fw in self._call("list firewalls", firewalls.list, project=project):
            if fw.description == marker:
                steps.append((f"delete firewall {fw.name}",
                              lambda n=fw.name: firewalls.delete(project=project, firewall=n)))
        for sn in self._call("list subnetworks", subnets.list, project=project, region=region):
            if sn.description == marker:
                steps.append((f"delete subnetwork {sn.name}",
                              lambda n=sn.name: subnets.delete(project=project, region=region, subnetwork=n)))
        for net in self._call("list networks", networks.list, project=project):
            if net.description == marker:
                steps.append((f"delete network {net.name}",
                              lambda n=net.name: networks.delete(project=project, network=n)))

        for what, step in steps:
            ctx.check(what)
            try:
                log(f"DELETING {what[len('delete '):]}")
                op = step()
                if op is not None:
                    self._wait(ctx, what, op)
            except gexc.NotFound:
                continue
            except ReadinessTimeout as exc:
                if ctx.remaining() == 0:
                    raise
                if not self.options.ignore_errors_on_destroy:
                    raise CloudError(f"{what}: {exc}") from exc
                log(f"WARNING: {what} failed, continuing: {exc}")
            except (CloudError, gexc.GoogleAPICallError) as exc:
                if not self.options.ignore_errors_on_destroy:
                    if isinstance(exc, CloudError):
                        raise
                    raise CloudError(f"{what}: {exc.message}") from exc
                log(f"WARNING: {what} failed, continuing: {exc}")

    def delete_instances(self, ctx, resource_id):
        client = self._client("InstancesClient")
        found = self._list(ctx, self._labels(None, resource_id))
        ops = []
        for inst in found:
            log(f"TERMINATING instance: {inst.name}")
            try:
                ops.append((inst.name, client.delete(project=self.options.project,
                                                     zone=self.options.zone, instance=inst.name)))
            except gexc.NotFound:
                continue
        for name, op in ops:
            self._wait(ctx, f"delete instance {name}", op)
        return None
