import io
import itertools
import shlex
from typing import Dict, List

import botocore.exceptions
import pytest

from percona_aws import AwsCloud
from percona_cloud import Cloud, Instance
from percona_common import TAG_RESOURCE_ID, Context, merge_labels
from percona_config import CloudOptions, ClusterOptions, ConfigStore
from percona_teardown import TaggedResource, TaggingIndex


def client_error(code, op="Operation", message=None):
    return botocore.exceptions.ClientError(
        {"Error": {"Code": code, "Message": message or code}}, op)


def mysql_statement(cmd: str) -> str:
    """The SQL passed to `mysql ... -e`, unquoted."""
    return shlex.split(cmd)[-1]


# ---------------------------------------------------------------------------
# In-memory EC2
# ---------------------------------------------------------------------------

def _tags_of(spec, resource_type):
    for s in spec or []:
        if s["ResourceType"] == resource_type:
            return {t["Key"]: t["Value"] for t in s["Tags"]}
    return {}


class FakePaginator:
    def __init__(self, fn):
        self.fn = fn

    def paginate(self, **kwargs):
        yield self.fn(**kwargs)


class FakeEC2:
    """Just enough EC2 for get-or-create, instance launch, and teardown."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.objects: Dict[str, Dict] = {}
        self.calls: List[str] = []

    def _new(self, kind, prefix, tags, **fields):
        oid = f"{prefix}-{next(self._ids):08x}"
        self.objects[oid] = dict(fields, kind=kind, id=oid, tags=dict(tags))
        return oid

    def _of(self, kind):
        return [o for o in self.objects.values() if o["kind"] == kind]

    def _get(self, oid, code):
        if oid not in self.objects:
            raise client_error(code)
        return self.objects[oid]

    @staticmethod
    def _matches(obj, filters):
        for f in filters or []:
            name, values = f["Name"], f["Values"]
            if name.startswith("tag:"):
                value = obj["tags"].get(name[4:])
            elif name == "vpc-id":
                value = obj.get("vpc")
            elif name == "group-name":
                value = obj.get("name")
            elif name == "attachment.vpc-id":
                value = obj.get("vpc")
            elif name == "instance-state-name":
                value = obj.get("state")
            else:
                raise AssertionError(f"unsupported filter {name}")
            if value not in values:
                return False
        return True

    def _tag_list(self, obj):
        return [{"Key": k, "Value": v} for k, v in obj["tags"].items()]

    # -- key pairs --

    def describe_key_pairs(self, KeyNames, IncludePublicKey=False):
        self.calls.append("describe_key_pairs")
        pairs = [o for o in self._of("key-pair") if o["name"] in KeyNames]
        if not pairs:
            raise client_error("InvalidKeyPair.NotFound")
        return {"KeyPairs": [{"KeyPairId": p["id"], "KeyName": p["name"], "PublicKey": p["public_key"]}
                             for p in pairs]}

    def import_key_pair(self, KeyName, PublicKeyMaterial, TagSpecifications=None):
        self.calls.append("import_key_pair")
        kid = self._new("key-pair", "key", _tags_of(TagSpecifications, "key-pair"),
                        name=KeyName, public_key=PublicKeyMaterial.decode() + " imported")
        return {"KeyPairId": kid}

    def delete_key_pair(self, KeyPairId):
        self.calls.append(f"delete_key_pair {KeyPairId}")
        self.objects.pop(KeyPairId, None)

    # -- vpc --

    def describe_vpcs(self, VpcIds=None, Filters=None):
        vpcs = self._of("vpc")
        if VpcIds:
            vpcs = [self._get(v, "InvalidVpcID.NotFound") for v in VpcIds]
        vpcs = [v for v in vpcs if self._matches(v, Filters)]
        return {"Vpcs": [{"VpcId": v["id"], "CidrBlock": v["cidr"], "IsDefault": v.get("default", False),
                          "Tags": self._tag_list(v)} for v in vpcs]}

    def create_vpc(self, CidrBlock, TagSpecifications=None):
        self.calls.append("create_vpc")
        vid = self._new("vpc", "vpc", _tags_of(TagSpecifications, "vpc"), cidr=CidrBlock)
        return {"Vpc": {"VpcId": vid, "CidrBlock": CidrBlock}}

    def modify_vpc_attribute(self, **kwargs):
        pass

    def delete_vpc(self, VpcId):
        self.calls.append(f"delete_vpc {VpcId}")
        self._get(VpcId, "InvalidVpcID.NotFound")
        if any(o.get("vpc") == VpcId for o in self.objects.values() if o["kind"] != "route-table"):
            raise AssertionError(f"{VpcId} still has dependencies")
        del self.objects[VpcId]

    # -- internet gateway --

    def describe_internet_gateways(self, Filters=None, InternetGatewayIds=None):
        igws = self._of("internet-gateway")
        if InternetGatewayIds:
            igws = [self._get(i, "InvalidInternetGatewayID.NotFound") for i in InternetGatewayIds]
        igws = [i for i in igws if self._matches(i, Filters)]
        return {"InternetGateways": [
            {"InternetGatewayId": i["id"],
             "Attachments": [{"VpcId": i["vpc"], "State": "available"}] if i.get("vpc") else []}
            for i in igws]}

    def create_internet_gateway(self, TagSpecifications=None):
        self.calls.append("create_internet_gateway")
        iid = self._new("internet-gateway", "igw", _tags_of(TagSpecifications, "internet-gateway"))
        return {"InternetGateway": {"InternetGatewayId": iid}}

    def attach_internet_gateway(self, InternetGatewayId, VpcId):
        self._get(InternetGatewayId, "InvalidInternetGatewayID.NotFound")["vpc"] = VpcId

    def detach_internet_gateway(self, InternetGatewayId, VpcId):
        self.calls.append(f"detach_internet_gateway {InternetGatewayId}")
        self._get(InternetGatewayId, "InvalidInternetGatewayID.NotFound")["vpc"] = None

    def delete_internet_gateway(self, InternetGatewayId):
        self.calls.append(f"delete_internet_gateway {InternetGatewayId}")
        self._get(InternetGatewayId, "InvalidInternetGatewayID.NotFound")
        del self.objects[InternetGatewayId]

    # -- security group --

    def describe_security_groups(self, Filters=None, GroupIds=None):
        groups = self._of("security-group")
        if GroupIds:
            groups = [self._get(g, "InvalidGroup.NotFound") for g in GroupIds]
        groups = [g for g in groups if self._matches(g, Filters)]
        return {"SecurityGroups": [
            {"GroupId": g["id"], "GroupName": g["name"], "VpcId": g["vpc"],
             "IpPermissions": list(g["ingress"]), "IpPermissionsEgress": list(g["egress"])}
            for g in groups]}

    def create_security_group(self, GroupName, Description, VpcId, TagSpecifications=None):
        self.calls.append("create_security_group")
        gid = self._new("security-group", "sg", _tags_of(TagSpecifications, "security-group"),
                        name=GroupName, vpc=VpcId, ingress=[], egress=[])
        return {"GroupId": gid}

    def authorize_security_group_ingress(self, GroupId, IpPermissions):
        self.objects[GroupId]["ingress"].extend(IpPermissions)

    def authorize_security_group_egress(self, GroupId, IpPermissions):
        self.objects[GroupId]["egress"].extend(IpPermissions)

    def revoke_security_group_ingress(self, GroupId, IpPermissions):
        self.calls.append(f"revoke_security_group_ingress {GroupId}")
        self.objects[GroupId]["ingress"] = []

    def revoke_security_group_egress(self, GroupId, IpPermissions):
        self.calls.append(f"revoke_security_group_egress {GroupId}")
        self.objects[GroupId]["egress"] = []

    def delete_security_group(self, GroupId):
        self.calls.append(f"delete_security_group {GroupId}")
        self._get(GroupId, "InvalidGroup.NotFound")
        del self.objects[GroupId]

    # -- subnet --

    def describe_subnets(self, Filters=None):
        subnets = [s for s in self._of("subnet") if self._matches(s, Filters)]
        return {"Subnets": [{"SubnetId": s["id"], "VpcId": s["vpc"], "CidrBlock": s["cidr"],
                             "Tags": self._tag_list(s)} for s in subnets]}

    def create_subnet(self, VpcId, CidrBlock, TagSpecifications=None):
        self.calls.append("create_subnet")
        sid = self._new("subnet", "subnet", _tags_of(TagSpecifications, "subnet"), vpc=VpcId, cidr=CidrBlock)
        return {"Subnet": {"SubnetId": sid}}

    def modify_subnet_attribute(self, **kwargs):
        pass

    def delete_subnet(self, SubnetId):
        self.calls.append(f"delete_subnet {SubnetId}")
        self._get(SubnetId, "InvalidSubnetID.NotFound")
        del self.objects[SubnetId]

    # -- route table --

    def describe_route_tables(self, Filters=None, RouteTableIds=None):
        tables = self._of("route-table")
        if RouteTableIds:
            tables = [self._get(r, "InvalidRouteTableID.NotFound") for r in RouteTableIds]
        tables = [t for t in tables if self._matches(t, Filters)]
        return {"RouteTables": [
            {"RouteTableId": t["id"], "VpcId": t["vpc"],
             "Associations": [{"RouteTableAssociationId": a, "SubnetId": s, "Main": False}
                              for a, s in t["associations"].items()]}
            for t in tables]}

    def create_route_table(self, VpcId, TagSpecifications=None):
        self.calls.append("create_route_table")
        rid = self._new("route-table", "rtb", _tags_of(TagSpecifications, "route-table"),
                        vpc=VpcId, routes=[], associations={})
        return {"RouteTable": {"RouteTableId": rid}}

    def create_route(self, RouteTableId, DestinationCidrBlock, GatewayId):
        table = self.objects[RouteTableId]
        if DestinationCidrBlock in table["routes"]:
            raise client_error("RouteAlreadyExists")
        table["routes"].append(DestinationCidrBlock)

    def associate_route_table(self, RouteTableId, SubnetId):
        table = self.objects[RouteTableId]
        if SubnetId in table["associations"].values():
            raise client_error("Resource.AlreadyAssociated")
        assoc = f"rtbassoc-{next(self._ids):08x}"
        table["associations"][assoc] = SubnetId
        return {"AssociationId": assoc}

    def disassociate_route_table(self, AssociationId):
        self.calls.append(f"disassociate_route_table {AssociationId}")
        for table in self._of("route-table"):
            table["associations"].pop(AssociationId, None)

    def delete_route_table(self, RouteTableId):
        self.calls.append(f"delete_route_table {RouteTableId}")
        self._get(RouteTableId, "InvalidRouteTableID.NotFound")
        del self.objects[RouteTableId]

    # -- instances --

    def run_instances(self, MinCount, MaxCount, TagSpecifications=None, NetworkInterfaces=None, **kwargs):
        self.calls.append("run_instances")
        tags = _tags_of(TagSpecifications, "instance")
        created = []
        for i in range(MaxCount):
            n = next(self._ids)
            iid = self._new("instance", "i", tags, state="running", launch=n, index=i,
                            vpc=None, public=f"203.0.113.{n}", private=f"10.0.1.{n}")
            created.append({"InstanceId": iid})
        return {"Instances": created}

    def describe_instance_status(self, InstanceIds, IncludeAllInstances=True):
        return {"InstanceStatuses": [
            {"InstanceId": i, "InstanceState": {"Name": self.objects[i]["state"]},
             "InstanceStatus": {"Status": "ok"}, "SystemStatus": {"Status": "ok"}}
            for i in InstanceIds]}

    def _describe_instances(self, Filters=None, InstanceIds=None):
        insts = self._of("instance")
        if InstanceIds:
            insts = [o for o in insts if o["id"] in InstanceIds]
        insts = [o for o in insts if self._matches(o, Filters)]
        return {"Reservations": [{"Instances": [
            {"InstanceId": o["id"], "State": {"Name": o["state"]}, "LaunchTime": o["launch"],
             "AmiLaunchIndex": o["index"], "PublicIpAddress": o["public"], "PrivateIpAddress": o["private"]}
            for o in insts]}]}

    def describe_instances(self, InstanceIds=None, Filters=None):
        return self._describe_instances(Filters=Filters, InstanceIds=InstanceIds)

    def get_paginator(self, name):
        assert name == "describe_instances"
        return FakePaginator(self._describe_instances)

    def terminate_instances(self, InstanceIds):
        self.calls.append(f"terminate_instances {sorted(InstanceIds)}")
        for iid in InstanceIds:
            self._get(iid, "InvalidInstanceID.NotFound")["state"] = "terminated"
        return {"TerminatingInstances": [{"InstanceId": i} for i in InstanceIds]}

    # -- inspection --

    def live(self):
        """Objects a teardown is expected to remove."""
        return [o for o in self.objects.values() if not (o["kind"] == "instance" and o["state"] == "terminated")]


class FakeTaggingIndex(TaggingIndex):
    def __init__(self, ec2: FakeEC2):
        self.ec2 = ec2

    def find(self, ctx, resource_id):
        return [TaggedResource(o["kind"], o["id"]) for o in self.ec2.live()
                if o["tags"].get(TAG_RESOURCE_ID) == resource_id]


class FakeSession:
    def __init__(self, ec2):
        self.ec2 = ec2

    def client(self, name, **kwargs):
        assert name == "ec2"
        return self.ec2


# ---------------------------------------------------------------------------
# Remote execution
# ---------------------------------------------------------------------------

class RecordingExecutor:
    """Stands in for RemoteExecutor; keeps files per host and answers commands."""

    def __init__(self):
        self.calls = []
        self.files: Dict[tuple, bytes] = {}
        self.responders = []

    def __call__(self, key_path, *args, **kwargs):
        self.key_path = key_path
        return self

    def respond(self, needle, fn):
        self.responders.append((needle, fn))

    def commands(self, host=None):
        return [c for h, kind, c in self.calls if kind == "run" and (host is None or h == host)]

    def statements(self, host=None):
        return [mysql_statement(c) for c in self.commands(host) if c.startswith("mysql ")]

    def run_command(self, ctx, host, script, strict=True):
        ctx.check("command")
        self.calls.append((host, "run", script))
        for line in script.splitlines():
            parts = line.split()
            if parts[:2] in (["sudo", "cp"], ["sudo", "mv"]) and len(parts) == 4:
                src, dst = (host, parts[2]), (host, parts[3])
                self.files[dst] = self.files.get(src, b"[mysqld]\n")
                if parts[1] == "mv":
                    self.files.pop(src, None)
        for needle, fn in self.responders:
            if needle in script:
                return fn(host, script)
        return ""

    def send_file(self, ctx, host, src, remote_path):
        data = src.encode() if isinstance(src, str) else src
        self.calls.append((host, "send", remote_path))
        self.files[(host, remote_path)] = data

    def edit_file(self, ctx, host, path, edit_fn):
        self.calls.append((host, "edit", path))
        buf = io.BytesIO(self.files.get((host, path), b"[mysqld]\n"))
        edit_fn(buf)
        self.files[(host, path)] = buf.getvalue()

    def is_reachable(self, ctx, host):
        return True


class RecordingCloud(Cloud):
    name = "fake"

    def __init__(self, executor=None, store=None):
        self.recorder = executor or RecordingExecutor()
        super().__init__(CloudOptions(cloud="aws", region="us-east-1", disable_telemetry=True),
                         store or ConfigStore(), self.recorder)
        self._n = itertools.count(1)
        self.created = []
        self.deleted = []
        self.configured = []

    def configure(self, ctx, resource_id, opts=None):
        self.configured.append((resource_id, opts))
        cfg = self.store.get(resource_id)
        if opts is not None:
            cfg.key_pair_name = opts.key_pair_name or "test"

    def create_infrastructure(self, ctx, resource_id):
        pass

    def create_instances(self, ctx, resource_id, count, labels=None):
        instances = []
        for _ in range(count):
            n = next(self._n)
            instances.append(Instance(f"203.0.113.{n}", f"10.0.1.{n}"))
        self.created.append((merge_labels(labels, resource_id), instances))
        return instances

    def list_instances(self, ctx, resource_id, labels=None):
        wanted = merge_labels(labels, resource_id)
        return [i for labels_, insts in self.created for i in insts
                if all(labels_.get(k) == v for k, v in wanted.items())]

    def delete_infrastructure(self, ctx, resource_id):
        self.deleted.append(resource_id)

    def credentials(self):
        return "AKIA", "SECRET"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ctx():
    return Context()


@pytest.fixture
def fake_ec2():
    return FakeEC2()


@pytest.fixture
def aws_cloud(fake_ec2, tmp_path):
    cloud = AwsCloud(
        CloudOptions(cloud="aws", region="us-east-1"),
        ConfigStore(),
        executor_factory=RecordingExecutor(),
        session_factory=lambda **kwargs: FakeSession(fake_ec2),
    )
    return cloud


@pytest.fixture
def aws_options(tmp_path):
    return ClusterOptions(key_pair_name="pcs", path_to_key_pair_storage=str(tmp_path),
                          instance_type="t3.large", vpc_name="shared")


@pytest.fixture
def recording_cloud():
    return RecordingCloud()


@pytest.fixture
def cluster_options():
    return ClusterOptions(key_pair_name="pcs", instance_type="t3.large", cluster_size=3,
                          password="rootPass", replica_password="replPass")
