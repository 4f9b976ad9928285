"""
Tag-driven teardown of everything one cluster created on AWS.

The tagging index is the only source of membership: whatever carries the
cluster's resource-id tag is deleted, in a fixed dependency order, and nothing
else is touched.
"""

import abc
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import botocore.exceptions

from percona_common import TAG_RESOURCE_ID, CloudError, Context, ReadinessTimeout, log, poll_until

KIND_INSTANCE = "instance"
KIND_ROUTE_TABLE = "route-table"
KIND_SUBNET = "subnet"
KIND_SECURITY_GROUP = "security-group"
KIND_INTERNET_GATEWAY = "internet-gateway"
KIND_VPC = "vpc"
KIND_KEY_PAIR = "key-pair"

DELETION_ORDER = (
    KIND_INSTANCE,
    KIND_ROUTE_TABLE,
    KIND_SUBNET,
    KIND_SECURITY_GROUP,
    KIND_INTERNET_GATEWAY,
    KIND_VPC,
    KIND_KEY_PAIR,
)

TERMINATE_POLL_INTERVAL = 5.0
TERMINATE_TIMEOUT = 600.0
DEPENDENCY_RETRY_INTERVAL = 5.0
DEPENDENCY_RETRY_TIMEOUT = 300.0


def client_error_code(exc) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def client_error_message(exc) -> str:
    return exc.response.get("Error", {}).get("Message", str(exc))


@dataclass(frozen=True)
class TaggedResource:
    kind: str
    id: str


def parse_arn(arn: str) -> Optional[TaggedResource]:
    """'arn:aws:ec2:us-east-1:123:subnet/subnet-0ab' -> TaggedResource('subnet', 'subnet-0ab')."""
    parts = arn.split(":", 5)
    if len(parts) != 6 or parts[0] != "arn":
        return None
    kind, sep, rid = parts[5].partition("/")
    if not sep or not rid:
        return None
    return TaggedResource(kind, rid)


def deletion_order(resources: Iterable[TaggedResource]) -> List[TaggedResource]:
    """Sort into dependency-safe teardown order; kinds we never create are dropped."""
    rank = {kind: i for i, kind in enumerate(DELETION_ORDER)}
    known = []
    for res in resources:
        if res.kind not in rank:
            log(f"WARNING: skipping unmanaged tagged resource {res.kind}/{res.id}")
            continue
        known.append(res)
    return sorted(known, key=lambda r: rank[r.kind])


# ---------------------------------------------------------------------------
# Tagging index
# ---------------------------------------------------------------------------

class TaggingIndex(abc.ABC):
    """Finds every cloud object carrying a given resource-id tag."""

    @abc.abstractmethod
    def find(self, ctx: Context, resource_id: str) -> List[TaggedResource]:
        ...


class AwsTaggingIndex(TaggingIndex):
    def __init__(self, client):
        self.client = client

    def find(self, ctx, resource_id):
        found = []
        paginator = self.client.get_paginator("get_resources")
        try:
            for page in paginator.paginate(
                TagFilters=[{"Key": TAG_RESOURCE_ID, "Values": [resource_id]}],
                ResourceTypeFilters=["ec2"],
            ):
                ctx.check("tagged resource lookup")
                for mapping in page.get("ResourceTagMappingList", []):
                    res = parse_arn(mapping.get("ResourceARN", ""))
                    if res is not None:
                        found.append(res)
        except botocore.exceptions.ClientError as exc:
            raise CloudError(f"get tagged resources: {client_error_message(exc)}") from exc
        return found


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

class Teardown:
    def __init__(self, ec2, index: TaggingIndex, ignore_errors: bool = False,
                 poll_interval: float = TERMINATE_POLL_INTERVAL):
        self.ec2 = ec2
        self.index = index
        self.ignore_errors = ignore_errors
        self.poll_interval = poll_interval

    def run(self, ctx: Context, resource_id: str):
        resources = deletion_order(self.index.find(ctx, resource_id))
        if not resources:
            log(f"No tagged resources found for {resource_id}; nothing to clean up.")
            return
        by_kind: Dict[str, List[str]] = {}
        for res in resources:
            by_kind.setdefault(res.kind, []).append(res.id)

        steps = []
        if KIND_INSTANCE in by_kind:
            steps.append((f"terminate instances {by_kind[KIND_INSTANCE]}",
                          lambda ids=by_kind[KIND_INSTANCE]: self.terminate_instances(ctx, ids)))
        deleters = {
            KIND_ROUTE_TABLE: self.delete_route_table,
            KIND_SUBNET: self.delete_subnet,
            KIND_SECURITY_GROUP: self.delete_security_group,
            KIND_INTERNET_GATEWAY: self.delete_internet_gateway,
            KIND_VPC: self.delete_vpc,
            KIND_KEY_PAIR: self.delete_key_pair,
        }
        for kind in DELETION_ORDER[1:]:
            for rid in by_kind.get(kind, []):
                steps.append((f"delete {kind} {rid}", lambda fn=deleters[kind], rid=rid: fn(ctx, rid)))

        for what, step in steps:
            ctx.check(what)
            try:
                step()
            except (CloudError, botocore.exceptions.ClientError) as exc:
                if not self.ignore_errors:
                    if isinstance(exc, CloudError):
                        raise
                    raise CloudError(f"{what}: {client_error_message(exc)}") from exc
                log(f"WARNING: {what} failed, continuing: {exc}")
        log(f"Cleanup complete for {resource_id}.")

    def _ignoring(self, codes, fn, **kwargs):
        try:
            return fn(**kwargs)
        except botocore.exceptions.ClientError as exc:
            if client_error_code(exc) in codes:
                return None
            raise

    def _retry_dependency(self, ctx, what, call, **kwargs):
        def attempt():
            try:
                call(**kwargs)
            except botocore.exceptions.ClientError as exc:
                if client_error_code(exc) == "DependencyViolation":
                    log(f"  {what}: dependency still present, retrying...")
                    return False
                raise
            return True
        try:
            poll_until(ctx, attempt, interval=DEPENDENCY_RETRY_INTERVAL,
                       timeout=DEPENDENCY_RETRY_TIMEOUT, what=what)
        except ReadinessTimeout as exc:
            if ctx.remaining() == 0:
                raise
            raise CloudError(f"{what}: dependencies still present: {exc}") from exc

    def terminate_instances(self, ctx, instance_ids):
        for iid in instance_ids:
            log(f"TERMINATING instance: {iid}")
        resp = self._ignoring(("InvalidInstanceID.NotFound",), self.ec2.terminate_instances,
                              InstanceIds=list(instance_ids))
        if resp is None:
            return

        def all_terminated():
            try:
                resp = self.ec2.describe_instances(InstanceIds=list(instance_ids))
            except botocore.exceptions.ClientError as exc:
                if client_error_code(exc) == "InvalidInstanceID.NotFound":
                    return True
                raise
            states = [inst["State"]["Name"]
                      for res in resp.get("Reservations", [])
                      for inst in res.get("Instances", [])]
            return all(s == "terminated" for s in states)

        try:
            poll_until(ctx, all_terminated, interval=self.poll_interval,
                       timeout=TERMINATE_TIMEOUT, what="instance termination")
        except ReadinessTimeout as exc:
            if ctx.remaining() == 0:
                raise
            raise CloudError(f"terminate instances: still not terminated: {exc}") from exc

    def delete_route_table(self, ctx, rtb_id):
        resp = self._ignoring(("InvalidRouteTableID.NotFound",), self.ec2.describe_route_tables,
                              RouteTableIds=[rtb_id])
        if resp is None or not resp.get("RouteTables"):
            return
        for assoc in resp["RouteTables"][0].get("Associations", []):
            if assoc.get("Main"):
                log(f"WARNING: route table {rtb_id} is the main table of its VPC, leaving it")
                return
            log(f"DETACHING route table {rtb_id}: {assoc['RouteTableAssociationId']}")
            self._ignoring(("InvalidAssociationID.NotFound",), self.ec2.disassociate_route_table,
                           AssociationId=assoc["RouteTableAssociationId"])
        log(f"DELETING route table: {rtb_id}")
        self._ignoring(("InvalidRouteTableID.NotFound",), self.ec2.delete_route_table, RouteTableId=rtb_id)

    def delete_subnet(self, ctx, subnet_id):
        log(f"DELETING subnet: {subnet_id}")
        self._retry_dependency(ctx, f"delete subnet {subnet_id}", self._ignoring,
                               codes=("InvalidSubnetID.NotFound",), fn=self.ec2.delete_subnet,
                               SubnetId=subnet_id)

    def delete_security_group(self, ctx, sg_id):
        resp = self._ignoring(("InvalidGroup.NotFound",), self.ec2.describe_security_groups, GroupIds=[sg_id])
        if resp is None or not resp.get("SecurityGroups"):
            return
        group = resp["SecurityGroups"][0]
        if group.get("IpPermissions"):
            self._ignoring(("InvalidPermission.NotFound",), self.ec2.revoke_security_group_ingress,
                           GroupId=sg_id, IpPermissions=group["IpPermissions"])
        if group.get("IpPermissionsEgress"):
            self._ignoring(("InvalidPermission.NotFound",), self.ec2.revoke_security_group_egress,
                           GroupId=sg_id, IpPermissions=group["IpPermissionsEgress"])
        log(f"DELETING security group {group.get('GroupName', sg_id)}: {sg_id}")
        self._retry_dependency(ctx, f"delete security group {sg_id}", self._ignoring,
                               codes=("InvalidGroup.NotFound",), fn=self.ec2.delete_security_group,
                               GroupId=sg_id)

    def delete_internet_gateway(self, ctx, igw_id):
        resp = self._ignoring(("InvalidInternetGatewayID.NotFound",), self.ec2.describe_internet_gateways,
                              InternetGatewayIds=[igw_id])
        if resp is None or not resp.get("InternetGateways"):
            return
        for attachment in resp["InternetGateways"][0].get("Attachments", []):
            log(f"DETACHING internet gateway {igw_id} from {attachment['VpcId']}")
            self._ignoring(("Gateway.NotAttached", "InvalidInternetGatewayID.NotFound"),
                           self.ec2.detach_internet_gateway,
                           InternetGatewayId=igw_id, VpcId=attachment["VpcId"])
        log(f"DELETING internet gateway: {igw_id}")
        self._retry_dependency(ctx, f"delete internet gateway {igw_id}", self._ignoring,
                               codes=("InvalidInternetGatewayID.NotFound",),
                               fn=self.ec2.delete_internet_gateway, InternetGatewayId=igw_id)

    def delete_vpc(self, ctx, vpc_id):
        resp = self._ignoring(("InvalidVpcID.NotFound",), self.ec2.describe_vpcs, VpcIds=[vpc_id])
        if resp is None or not resp.get("Vpcs"):
            return
        if resp["Vpcs"][0].get("IsDefault"):
            log(f"WARNING: {vpc_id} is the default VPC, leaving it")
            return
        log(f"DELETING VPC: {vpc_id}")
        self._retry_dependency(ctx, f"delete vpc {vpc_id}", self._ignoring,
                               codes=("InvalidVpcID.NotFound",), fn=self.ec2.delete_vpc, VpcId=vpc_id)

    def delete_key_pair(self, ctx, key_pair_id):
        log(f"DELETING key pair: {key_pair_id}")
        self._ignoring(("InvalidKeyPair.NotFound",), self.ec2.delete_key_pair, KeyPairId=key_pair_id)
