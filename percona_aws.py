"""
AWS adapter: EC2 networking get-or-create, instance lifecycle, and tag-driven
teardown through the Resource Groups Tagging API.
"""

import ipaddress
from typing import Dict, List, Optional

import boto3
import botocore.exceptions
from botocore.config import Config

from percona_cloud import Cloud, Instance
from percona_common import (
    ALL_ADDRESSES_CIDR,
    LABEL_INSTANCE_ROLE,
    TAG_NAME,
    TAG_RESOURCE_ID,
    CloudError,
    ConfigError,
    Context,
    log,
    merge_labels,
    poll_until,
)
from percona_config import DEFAULT_AWS_VOLUME_TYPE, ClusterOptions
from percona_ssh import RemoteExecutor, key_pair_path, normalize_public_key, ssh_public_key
from percona_teardown import AwsTaggingIndex, Teardown, client_error_code, client_error_message

BOTO_CONFIG = Config(
    retries={"max_attempts": 10, "mode": "adaptive"},
    connect_timeout=15,
    read_timeout=60,
)

VPC_CIDR = "10.0.0.0/16"
SUBNET_CIDR = "10.0.1.0/24"
SUBNET_PREFIX = 24
SECURITY_GROUP_DESCRIPTION = "Percona cluster security group"
ROOT_DEVICE = "/dev/sda1"

STATUS_POLL_INTERVAL = 15.0
STATUS_TIMEOUT = 900.0

# Ubuntu 20.04 LTS (focal), amd64, hvm:ebs-ssd.
REGION_IMAGES = {
    "us-east-1": "ami-04505e74c0741db8d",
    "us-east-2": "ami-0fb653ca2d3203ac1",
    "us-west-1": "ami-01f87c43e618bf8f0",
    "us-west-2": "ami-0892d3c7ee96c0bf7",
    "af-south-1": "ami-0670428c515903d37",
    "ap-east-1": "ami-0350928fdb53ae439",
    "ap-southeast-3": "ami-0f06496957d1fe04a",
    "ap-south-1": "ami-05ba3a39a75be1ec4",
    "ap-northeast-3": "ami-0c2223049202ca738",
    "ap-northeast-2": "ami-0225bc2990c54ce9a",
    "ap-southeast-1": "ami-0750a20e9959e44ff",
    "ap-southeast-2": "ami-0d539270873f66397",
    "ap-northeast-1": "ami-0a3eb6ca097b78895",
    "ca-central-1": "ami-073c944d45ffb4f27",
    "eu-central-1": "ami-02584c1c9d05efa69",
    "eu-west-1": "ami-00e7df8df28dfa791",
    "eu-west-2": "ami-00826bd51e68b1487",
    "eu-south-1": "ami-06ea0ad3f5adc2565",
    "eu-west-3": "ami-0a21d1c76ac56fee7",
    "eu-north-1": "ami-09f0506c9ef0fb473",
    "me-south-1": "ami-05b680b37c7917206",
    "sa-east-1": "ami-077518a464c82703b",
    "us-gov-east-1": "ami-0eb7ef4cc0594fa04",
    "us-gov-west-1": "ami-029a634618d6c0300",
}


def tag_list(tags: Dict[str, str]):
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def tag_spec(resource_type: str, tags: Dict[str, str]):
    return [{"ResourceType": resource_type, "Tags": tag_list(tags)}]


def pick_subnet_cidr(vpc_cidr: str, taken: List[str]) -> str:
    """First free /24 inside the VPC, preferring the default subnet block."""
    vpc_net = ipaddress.ip_network(vpc_cidr)
    used = [ipaddress.ip_network(c) for c in taken]
    preferred = ipaddress.ip_network(SUBNET_CIDR)
    candidates = [preferred] if preferred.subnet_of(vpc_net) else []
    prefix = max(SUBNET_PREFIX, vpc_net.prefixlen)
    candidates += list(vpc_net.subnets(new_prefix=prefix))
    for cand in candidates:
        if not any(cand.overlaps(u) for u in used):
            return str(cand)
    raise CloudError(f"create subnet: no free /{prefix} block left in {vpc_cidr}")


class AwsCloud(Cloud):
    name = "aws"

    def __init__(self, options, store, executor_factory=RemoteExecutor, session_factory=boto3.session.Session):
        super().__init__(options, store, executor_factory)
        self.session_factory = session_factory
        self._session = None
        self._ec2 = None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def session(self):
        if self._session is None:
            try:
                self._session = self.session_factory(
                    profile_name=self.options.profile or None, region_name=self.options.region
                )
            except botocore.exceptions.ProfileNotFound as exc:
                raise ConfigError(f"AWS profile '{self.options.profile}' not found.") from exc
        return self._session

    def ec2(self):
        if self._ec2 is None:
            self._ec2 = self.session().client("ec2", region_name=self.options.region, config=BOTO_CONFIG)
        return self._ec2

    def tagging(self):
        return self.session().client(
            "resourcegroupstaggingapi", region_name=self.options.region, config=BOTO_CONFIG
        )

    def _call(self, op, fn, **kwargs):
        try:
            return fn(**kwargs)
        except botocore.exceptions.ClientError as exc:
            raise CloudError(f"{op}: {client_error_message(exc)}") from exc

    def credentials(self):
        creds = self.session().get_credentials()
        if creds is None:
            raise ConfigError("no AWS credentials found for profile " + repr(self.options.profile))
        frozen = creds.get_frozen_credentials()
        return frozen.access_key, frozen.secret_key

    # ------------------------------------------------------------------
    # Configure
    # ------------------------------------------------------------------

    def configure(self, ctx: Context, resource_id: str, opts: Optional[ClusterOptions] = None):
        cfg = self.store.get(resource_id)
        if opts is not None:
            cfg.key_pair_name = opts.key_pair_name
            cfg.path_to_key_pair = opts.path_to_key_pair_storage or "."
            cfg.instance_type = opts.instance_type
            cfg.volume_type = opts.volume_type or DEFAULT_AWS_VOLUME_TYPE
            cfg.volume_size = opts.volume_size
            cfg.volume_iops = opts.volume_iops or None
            cfg.volume_throughput = opts.volume_throughput or None
            cfg.vpc_name = opts.vpc_name
            cfg.vpc_id = opts.vpc_id
        image = REGION_IMAGES.get(self.options.region)
        if image is None:
            raise ConfigError(f"can't find any AMI for region - {self.options.region}")
        cfg.image = image
        self.ec2()

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    def create_infrastructure(self, ctx: Context, resource_id: str):
        cfg = self.store.get(resource_id)
        ctx.check("create infrastructure")
        self.ensure_key_pair(resource_id)
        vpc_id, vpc_cidr = self.ensure_vpc(resource_id)
        base = cfg.vpc_name or resource_id
        ctx.check("create infrastructure")
        igw_id = self.ensure_igw(resource_id, vpc_id, f"{base}-igw")
        cfg.security_group_id = self.ensure_security_group(resource_id, vpc_id, f"{base}-sg")
        cfg.subnet_id = self.ensure_subnet(resource_id, vpc_id, vpc_cidr, f"{base}-sub")
        self.ensure_route_table(resource_id, vpc_id, igw_id, cfg.subnet_id, f"{base}-rtb")
        cfg.vpc_id = vpc_id

    def ensure_key_pair(self, resource_id: str):
        cfg = self.store.get(resource_id)
        if not cfg.key_pair_name:
            raise ConfigError("cannot create key pair with empty name")
        path = key_pair_path(cfg.path_to_key_pair, cfg.key_pair_name)
        try:
            resp = self.ec2().describe_key_pairs(KeyNames=[cfg.key_pair_name], IncludePublicKey=True)
            pairs = resp.get("KeyPairs", [])
        except botocore.exceptions.ClientError as exc:
            if client_error_code(exc) != "InvalidKeyPair.NotFound":
                raise CloudError(f"describe key pairs: {client_error_message(exc)}") from exc
            pairs = []

        if pairs and not path.exists():
            raise ConfigError(f"ssh key pair {cfg.key_pair_name} exists in AWS but {path} does not exist locally")
        local_key = ssh_public_key(path, create=True)
        if pairs:
            remote_key = pairs[0].get("PublicKey", "")
            if normalize_public_key(remote_key) != normalize_public_key(local_key):
                raise ConfigError(f"local public key {path} does not match key pair {cfg.key_pair_name} in AWS")
            log(f"REUSED  key pair: {cfg.key_pair_name}")
            cfg.public_key = local_key
            return
        resp = self._call(
            "import key pair",
            self.ec2().import_key_pair,
            KeyName=cfg.key_pair_name,
            PublicKeyMaterial=local_key.encode(),
            TagSpecifications=tag_spec("key-pair", {TAG_RESOURCE_ID: resource_id}),
        )
        cfg.public_key = local_key
        log(f"CREATED key pair: {cfg.key_pair_name} ({resp.get('KeyPairId', '')})")

    def ensure_vpc(self, resource_id: str):
        cfg = self.store.get(resource_id)
        if cfg.vpc_id:
            resp = self._call("describe vpcs", self.ec2().describe_vpcs, VpcIds=[cfg.vpc_id])
            vpc = resp["Vpcs"][0]
            log(f"REUSED  vpc: {vpc['VpcId']}")
            return vpc["VpcId"], vpc["CidrBlock"]

        name = cfg.vpc_name or resource_id
        resp = self._call("describe vpcs", self.ec2().describe_vpcs,
                          Filters=[{"Name": f"tag:{TAG_NAME}", "Values": [name]}])
        vpcs = resp.get("Vpcs", [])
        if vpcs:
            vpc = vpcs[0]
            log(f"REUSED  vpc: {vpc['VpcId']}")
            return vpc["VpcId"], vpc["CidrBlock"]

        resp = self._call(
            "create vpc",
            self.ec2().create_vpc,
            CidrBlock=VPC_CIDR,
            TagSpecifications=tag_spec("vpc", {TAG_RESOURCE_ID: resource_id, TAG_NAME: name}),
        )
        vpc_id = resp["Vpc"]["VpcId"]
        log(f"CREATED vpc: {vpc_id}")
        self._call("modify vpc attribute", self.ec2().modify_vpc_attribute,
                   VpcId=vpc_id, EnableDnsHostnames={"Value": True})
        return vpc_id, VPC_CIDR

    def ensure_igw(self, resource_id: str, vpc_id: str, name: str):
        resp = self._call("describe internet gateways", self.ec2().describe_internet_gateways,
                          Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}])
        igws = resp.get("InternetGateways", [])
        if igws:
            igw_id = igws[0]["InternetGatewayId"]
            log(f"REUSED  igw (attached): {igw_id}")
            return igw_id
        resp = self._call(
            "create internet gateway",
            self.ec2().create_internet_gateway,
            TagSpecifications=tag_spec("internet-gateway", {TAG_RESOURCE_ID: resource_id, TAG_NAME: name}),
        )
        igw_id = resp["InternetGateway"]["InternetGatewayId"]
        self._call("attach internet gateway", self.ec2().attach_internet_gateway,
                   InternetGatewayId=igw_id, VpcId=vpc_id)
        log(f"CREATED igw: {igw_id}")
        return igw_id

    def ensure_security_group(self, resource_id: str, vpc_id: str, name: str):
        resp = self._call(
            "describe security groups",
            self.ec2().describe_security_groups,
            Filters=[{"Name": "group-name", "Values": [name]}, {"Name": "vpc-id", "Values": [vpc_id]}],
        )
        groups = resp.get("SecurityGroups", [])
        if groups:
            sg_id = groups[0]["GroupId"]
            log(f"REUSED  sg {name}: {sg_id}")
            return sg_id
        resp = self._call(
            "create security group",
            self.ec2().create_security_group,
            GroupName=name,
            Description=SECURITY_GROUP_DESCRIPTION,
            VpcId=vpc_id,
            TagSpecifications=tag_spec("security-group", {TAG_RESOURCE_ID: resource_id, TAG_NAME: name}),
        )
        sg_id = resp["GroupId"]
        log(f"CREATED sg {name}: {sg_id}")
        allow_all = [{"IpProtocol": "-1", "IpRanges": [{"CidrIp": ALL_ADDRESSES_CIDR}]}]
        for op, fn in (("authorize ingress", self.ec2().authorize_security_group_ingress),
                       ("authorize egress", self.ec2().authorize_security_group_egress)):
            try:
                fn(GroupId=sg_id, IpPermissions=allow_all)
            except botocore.exceptions.ClientError as exc:
                if client_error_code(exc) != "InvalidPermission.Duplicate":
                    raise CloudError(f"{op}: {client_error_message(exc)}") from exc
        return sg_id

    def ensure_subnet(self, resource_id: str, vpc_id: str, vpc_cidr: str, name: str):
        resp = self._call("describe subnets", self.ec2().describe_subnets,
                          Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        subnets = resp.get("Subnets", [])
        for sn in subnets:
            tags = {t["Key"]: t["Value"] for t in sn.get("Tags", [])}
            if tags.get(TAG_NAME) == name:
                log(f"REUSED  subnet: {sn['SubnetId']}")
                return sn["SubnetId"]
        cidr = pick_subnet_cidr(vpc_cidr, [sn["CidrBlock"] for sn in subnets])
        resp = self._call(
            "create subnet",
            self.ec2().create_subnet,
            VpcId=vpc_id,
            CidrBlock=cidr,
            TagSpecifications=tag_spec("subnet", {TAG_RESOURCE_ID: resource_id, TAG_NAME: name}),
        )
        subnet_id = resp["Subnet"]["SubnetId"]
        self._call("modify subnet attribute", self.ec2().modify_subnet_attribute,
                   SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
        log(f"CREATED subnet: {subnet_id} ({cidr})")
        return subnet_id

    def ensure_route_table(self, resource_id: str, vpc_id: str, igw_id: str, subnet_id: str, name: str):
        resp = self._call(
            "describe route tables",
            self.ec2().describe_route_tables,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, {"Name": f"tag:{TAG_NAME}", "Values": [name]}],
        )
        tables = resp.get("RouteTables", [])
        if tables:
            rtb_id = tables[0]["RouteTableId"]
            log(f"REUSED  rtb: {rtb_id}")
        else:
            resp = self._call(
                "create route table",
                self.ec2().create_route_table,
                VpcId=vpc_id,
                TagSpecifications=tag_spec("route-table", {TAG_RESOURCE_ID: resource_id, TAG_NAME: name}),
            )
            rtb_id = resp["RouteTable"]["RouteTableId"]
            log(f"CREATED rtb: {rtb_id}")
        try:
            self.ec2().create_route(RouteTableId=rtb_id, DestinationCidrBlock=ALL_ADDRESSES_CIDR, GatewayId=igw_id)
        except botocore.exceptions.ClientError as exc:
            if client_error_code(exc) != "RouteAlreadyExists":
                raise CloudError(f"create route: {client_error_message(exc)}") from exc
        try:
            self.ec2().associate_route_table(RouteTableId=rtb_id, SubnetId=subnet_id)
        except botocore.exceptions.ClientError as exc:
            if client_error_code(exc) != "Resource.AlreadyAssociated":
                raise CloudError(f"associate route table: {client_error_message(exc)}") from exc
        return rtb_id

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def create_instances(self, ctx: Context, resource_id: str, count: int,
                         labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        cfg = self.store.get(resource_id)
        tags = merge_labels(labels, resource_id)
        role = tags.get(LABEL_INSTANCE_ROLE, "node")
        ebs = {
            "VolumeType": cfg.volume_type or DEFAULT_AWS_VOLUME_TYPE,
            "VolumeSize": cfg.volume_size,
            "DeleteOnTermination": True,
        }
        if cfg.volume_iops:
            ebs["Iops"] = cfg.volume_iops
        if cfg.volume_throughput:
            ebs["Throughput"] = cfg.volume_throughput
        resp = self._call(
            "run instances",
            self.ec2().run_instances,
            ImageId=cfg.image,
            InstanceType=cfg.instance_type,
            KeyName=cfg.key_pair_name,
            MinCount=count,
            MaxCount=count,
            NetworkInterfaces=[{
                "DeviceIndex": 0,
                "SubnetId": cfg.subnet_id,
                "AssociatePublicIpAddress": True,
                "Groups": [cfg.security_group_id],
            }],
            BlockDeviceMappings=[{"DeviceName": ROOT_DEVICE, "Ebs": ebs}],
            TagSpecifications=tag_spec("instance", dict(tags, **{TAG_NAME: f"{resource_id}-{role}"})),
        )
        ids = [inst["InstanceId"] for inst in resp.get("Instances", [])]
        for iid in ids:
            log(f"CREATED instance {role}: {iid}")
        self.wait_status_ok(ctx, ids)
        instances = self.list_instances(ctx, resource_id, labels)
        self.wait_reachable(ctx, resource_id, instances)
        return instances

    def wait_status_ok(self, ctx: Context, instance_ids: List[str], interval: float = STATUS_POLL_INTERVAL):
        def all_ok():
            resp = self._call("describe instance status", self.ec2().describe_instance_status,
                              InstanceIds=instance_ids, IncludeAllInstances=True)
            statuses = resp.get("InstanceStatuses", [])
            ok = [
                s for s in statuses
                if s.get("InstanceState", {}).get("Name") == "running"
                and s.get("InstanceStatus", {}).get("Status") == "ok"
                and s.get("SystemStatus", {}).get("Status") == "ok"
            ]
            return len(ok) == len(instance_ids)

        log(f"Waiting for {len(instance_ids)} instance(s) to pass status checks...")
        poll_until(ctx, all_ok, interval=interval, timeout=STATUS_TIMEOUT, what="instance status ok")

    def list_instances(self, ctx: Context, resource_id: str,
                       labels: Optional[Dict[str, str]] = None) -> List[Instance]:
        tags = merge_labels(labels, resource_id)
        filters = [{"Name": f"tag:{k}", "Values": [v]} for k, v in tags.items()]
        filters.append({"Name": "instance-state-name", "Values": ["pending", "running"]})
        found = []
        try:
            for page in self.ec2().get_paginator("describe_instances").paginate(Filters=filters):
                ctx.check("list instances")
                for res in page.get("Reservations", []):
                    found.extend(res.get("Instances", []))
        except botocore.exceptions.ClientError as exc:
            raise CloudError(f"describe instances: {client_error_message(exc)}") from exc
        found.sort(key=lambda i: (i.get("LaunchTime", ""), i.get("AmiLaunchIndex", 0), i["InstanceId"]))
        return [
            Instance(public_ip_address=i.get("PublicIpAddress", ""),
                     private_ip_address=i.get("PrivateIpAddress", ""))
            for i in found
        ]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def delete_infrastructure(self, ctx: Context, resource_id: str, index=None):
        teardown = Teardown(
            self.ec2(),
            index or AwsTaggingIndex(self.tagging()),
            ignore_errors=self.options.ignore_errors_on_destroy,
        )
        teardown.run(ctx, resource_id)
