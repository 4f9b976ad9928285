"""
Node-level install and replication bootstrap for Percona Server (async or
group replication), Percona XtraDB Cluster (Galera), the optional
Orchestrator tier, and PMM client wiring.

Per-node install runs in parallel across the tier; the replication bootstrap
that follows is strictly ordered by node index.
"""

import json
import posixpath
import shlex
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from percona_cloud import Cloud, Instance
from percona_common import (
    ROLE_MYSQL,
    ROLE_ORCHESTRATOR,
    Cancelled,
    ConfigError,
    Context,
    ProvisionError,
    log,
    role_labels,
    run_parallel,
)
from percona_config import REPLICATION_GROUP, ClusterOptions
from percona_pmm import parse_pmm_address
from percona_ssh import DEFAULT_SSH_USER, ini_document, set_ini_fields
from percona_versions import parse_version_list, select_version

STAGING_DIR = "/opt/percona"
MYSQLD_CNF = "/etc/mysql/mysql.conf.d/mysqld.cnf"
CUSTOM_CNF = "/etc/mysql/mysql.conf.d/custom.cnf"
MYSQLD_SECTION = "mysqld"

BINLOG_PATH = "/var/log/mysql/mysql-bin.log"
RELAY_LOG_PATH = "/var/log/mysql/mysql-relay-bin.log"
GROUP_REPLICATION_PORT = 33061
REPLICA_USER = "replica_user"

ORCHESTRATOR_VERSION = "3.2.6"
ORCHESTRATOR_RELEASES = f"https://github.com/openark/orchestrator/releases/download/v{ORCHESTRATOR_VERSION}"
ORCHESTRATOR_PORT = 3000
ORCHESTRATOR_URL_PREFIX = "/orchestrator"
ORCHESTRATOR_RAFT_PORT = 10008
ORCHESTRATOR_USER = "orchestrator"
ORCHESTRATOR_CONFIG = "/etc/orchestrator.conf.json"
ORCHESTRATOR_TOPOLOGY_CNF = "/etc/mysql/orchestrator-topology.cnf"
ORCHESTRATOR_DATA_DIR = "/var/lib/orchestrator"
# Raft leader election needs a moment after restart before discovery calls land.
ORCHESTRATOR_SETTLE_SECONDS = 30

PMM_USER = "pmm"
PMM_MAX_USER_CONNECTIONS = 10
PMM_SLOW_LOG_SETTINGS = {
    "slow_query_log": "ON",
    "log_output": "FILE",
    "long_query_time": "0",
    "log_slow_admin_statements": "ON",
    "log_slow_slave_statements": "ON",
    "log_slow_rate_limit": "100",
    "log_slow_rate_type": "query",
    "slow_query_log_always_write_time": "1",
    "log_slow_verbosity": "full",
    "slow_query_log_use_global_control": "all",
    "performance_schema": "OFF",
    "userstat": "ON",
}

PS_UDFS = (
    ("fnv1a_64", "libfnv1a_udf.so"),
    ("fnv_64", "libfnv_udf.so"),
    ("murmur_hash", "libmurmur_udf.so"),
)

GR_DISABLED_ENGINES = "MyISAM,BLACKHOLE,FEDERATED,ARCHIVE,MEMORY"


class NodeSetupError(ProvisionError):
    """A node-level step failed; the message names the step and the host."""


@dataclass
class ClusterNodes:
    instances: List[Instance] = field(default_factory=list)
    replicas: List[bool] = field(default_factory=list)
    orchestrator_instances: List[Instance] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------

def sql_quote(value) -> str:
    """SQL string literal: O'Brien -> 'O\\'Brien'."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def mysql_command(password: str, statement: str) -> str:
    return f"mysql -uroot -p{shlex.quote(password)} -N -e {shlex.quote(statement)}"


def apt_install(*packages: str) -> str:
    return "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y " + " ".join(packages)


def debconf_selection(package: str, question: str, kind: str, value: str) -> str:
    line = f"{package} {package}/{question} {kind} {value}"
    return f"echo {shlex.quote(line)} | sudo debconf-set-selections"


def init_script() -> str:
    return f"""
sudo cloud-init status --wait >/dev/null 2>&1 || true
sudo apt-get update
sudo DEBIAN_FRONTEND=noninteractive apt-get -y upgrade
sudo mkdir -p {STAGING_DIR}
sudo chown {DEFAULT_SSH_USER} {STAGING_DIR}
"""


def percona_release_script(release_deb: str, setup: str) -> str:
    return f"""
wget -q -O /tmp/percona-release.deb https://repo.percona.com/apt/{release_deb}
sudo dpkg -i /tmp/percona-release.deb
sudo percona-release setup -y {setup}
"""


def ps_configure_script(password: str) -> str:
    pkg = "percona-server-server"
    return "\n".join([
        apt_install("gnupg2", "curl", "debconf-utils", "net-tools", "wget", "lsb-release"),
        percona_release_script("percona-release_latest.$(lsb_release -sc)_all.deb", "ps80"),
        debconf_selection(pkg, "root-pass", "password", password),
        debconf_selection(pkg, "re-root-pass", "password", password),
        debconf_selection(pkg, "default-auth-override", "select",
                          "Use Legacy Authentication Method (Retain MySQL 5.x Compatibility)"),
    ])


def pxc_configure_script(password: str) -> str:
    pkg = "percona-xtradb-cluster-server"
    return "\n".join([
        apt_install("net-tools", "debconf-utils", "wget", "gnupg2", "lsb-release", "curl"),
        percona_release_script("percona-release_latest.generic_all.deb", "pxc80"),
        debconf_selection(pkg, "root-pass", "password", password),
        debconf_selection(pkg, "re-root-pass", "password", password),
        debconf_selection(pkg, "default-auth-override", "select",
                          "Use Legacy Authentication Method (Retain MySQL 5.x Compatibility)"),
    ])


def available_versions_script(package: str, epoch: str = "") -> str:
    return f"apt-cache show {package} | grep 'Version' | sed 's/Version: {epoch}//'"


def ps_install_script(version: str) -> str:
    return apt_install(*(f"{pkg}={version}" for pkg in (
        "percona-server-client", "percona-server-common", "percona-server-server")))


def pxc_install_script(version: str) -> str:
    return apt_install(*(f"{pkg}=1:{version}" for pkg in (
        "percona-xtradb-cluster-common", "percona-xtradb-cluster-server",
        "percona-xtradb-cluster-client", "percona-xtradb-cluster")))


def fix_root_user_sql() -> str:
    return "RENAME USER 'root'@'localhost' TO 'root'@'%';FLUSH PRIVILEGES;"


def udf_sql() -> str:
    return "".join(f"CREATE FUNCTION {name} RETURNS INTEGER SONAME '{lib}';" for name, lib in PS_UDFS)


def pmm_user_sql(password: str, local_only: bool = True) -> str:
    user = f"{sql_quote(PMM_USER)}@'localhost'"
    stmts = (
        f"CREATE USER IF NOT EXISTS {user} IDENTIFIED WITH mysql_native_password BY {sql_quote(password)};"
        f"ALTER USER {user} WITH MAX_USER_CONNECTIONS {PMM_MAX_USER_CONNECTIONS};"
        f"GRANT SELECT, PROCESS, REPLICATION CLIENT, RELOAD, BACKUP_ADMIN ON *.* TO {user};"
    )
    if local_only:
        return "SET SQL_LOG_BIN=0;" + stmts + "SET SQL_LOG_BIN=1;"
    return stmts


def orchestrator_user_sql(password: str, group_replication: bool) -> str:
    user = f"{sql_quote(ORCHESTRATOR_USER)}@'%'"
    stmts = [
        "SET SQL_LOG_BIN=0;",
        f"CREATE USER IF NOT EXISTS {user} IDENTIFIED WITH mysql_native_password BY {sql_quote(password)};",
        f"GRANT SUPER, PROCESS, REPLICATION SLAVE, REPLICATION CLIENT, RELOAD ON *.* TO {user};",
        f"GRANT SELECT ON meta.* TO {user};",
    ]
    if group_replication:
        stmts.append(f"GRANT SELECT ON performance_schema.replication_group_members TO {user};")
    stmts.append("SET SQL_LOG_BIN=1;")
    return "".join(stmts)


def replica_user_sql(password: str, group_replication: bool = False) -> str:
    user = f"{sql_quote(REPLICA_USER)}@'%'"
    create = f"CREATE USER IF NOT EXISTS {user} IDENTIFIED WITH mysql_native_password BY {sql_quote(password)};"
    if not group_replication:
        return create + f"GRANT REPLICATION SLAVE ON *.* TO {user};FLUSH PRIVILEGES;"
    return (
        "SET SQL_LOG_BIN=0;"
        + create
        + f"GRANT REPLICATION SLAVE ON *.* TO {user};"
        + f"GRANT CONNECTION_ADMIN ON *.* TO {user};"
        + f"GRANT BACKUP_ADMIN ON *.* TO {user};"
        + f"GRANT GROUP_REPLICATION_STREAM ON *.* TO {user};"
        + "FLUSH PRIVILEGES;"
        + "SET SQL_LOG_BIN=1;"
    )


def change_source_sql(host: str, port: int, password: str, log_file: str, log_pos: int) -> str:
    return (
        f"CHANGE REPLICATION SOURCE TO SOURCE_HOST={sql_quote(host)}, SOURCE_PORT={port}, "
        f"SOURCE_USER={sql_quote(REPLICA_USER)}, SOURCE_PASSWORD={sql_quote(password)}, "
        f"SOURCE_LOG_FILE={sql_quote(log_file)}, SOURCE_LOG_POS={log_pos};"
        "START REPLICA;"
    )


def group_recovery_sql(password: str) -> str:
    return (
        f"CHANGE REPLICATION SOURCE TO SOURCE_USER={sql_quote(REPLICA_USER)}, "
        f"SOURCE_PASSWORD={sql_quote(password)} FOR CHANNEL 'group_replication_recovery';"
    )


def parse_master_status(output: str) -> Tuple[str, int]:
    """First row of `SHOW MASTER STATUS` in -N mode -> (binlog file, position)."""
    for line in output.splitlines():
        cols = line.split("\t")
        if len(cols) >= 2 and cols[0].strip():
            try:
                return cols[0].strip(), int(cols[1])
            except ValueError:
                continue
    raise ProvisionError(f"unexpected SHOW MASTER STATUS output: {output!r}")


def pmm_client_script(pmm_url: str) -> str:
    return f"""
sudo percona-release disable all
sudo percona-release enable original release
sudo apt-get update
{apt_install("pmm2-client")}
sudo pmm-admin config --server-insecure-tls --server-url={shlex.quote(pmm_url)}
"""


def pmm_add_mysql_script(password: str, port: int) -> str:
    return (f"sudo pmm-admin add mysql --query-source=slowlog --username={PMM_USER} "
            f"--password={shlex.quote(password)} --port={port}")


def orchestrator_api(instances: List[Instance]) -> str:
    return " ".join(
        f"http://{inst.private_ip_address}:{ORCHESTRATOR_PORT}{ORCHESTRATOR_URL_PREFIX}/api" for inst in instances
    )


def orchestrator_url(inst: Instance) -> str:
    return f"http://{inst.public_ip_address}:{ORCHESTRATOR_PORT}{ORCHESTRATOR_URL_PREFIX}"


def orchestrator_config(instance: Instance, peers: List[Instance]) -> Dict:
    return {
        "Debug": True,
        "ListenAddress": f":{ORCHESTRATOR_PORT}",
        "RaftEnabled": True,
        "RaftNodes": [p.private_ip_address for p in peers],
        "RaftDataDir": ORCHESTRATOR_DATA_DIR,
        "RaftBind": instance.private_ip_address,
        "DefaultRaftPort": ORCHESTRATOR_RAFT_PORT,
        "URLPrefix": ORCHESTRATOR_URL_PREFIX,
        "MySQLTopologyCredentialsConfigFile": ORCHESTRATOR_TOPOLOGY_CNF,
        "InstancePollSeconds": 5,
        "BackendDB": "sqlite",
        "SQLite3DataFile": f"{ORCHESTRATOR_DATA_DIR}/orchestrator.db",
        "HostnameResolveMethod": "none",
        "MySQLHostnameResolveMethod": "@@hostname",
        "InstanceFlushIntervalMilliseconds": 100,
    }


def orchestrator_install_script(package: str) -> str:
    return f"""
{apt_install("libonig5", "libjq1", "jq", "curl")}
curl -fsSL -o /tmp/{package}.deb {ORCHESTRATOR_RELEASES}/{package}_{ORCHESTRATOR_VERSION}_amd64.deb
sudo dpkg -i /tmp/{package}.deb
"""


@contextmanager
def node_step(what: str, inst: Instance):
    log(f"{what} on {inst.public_ip_address}")
    try:
        yield
    except (Cancelled, ConfigError, NodeSetupError):
        raise
    except ProvisionError as exc:
        raise NodeSetupError(f"{what} on {inst.public_ip_address}: {exc}") from exc


# ---------------------------------------------------------------------------
# Shared node operations
# ---------------------------------------------------------------------------

class NodeManager:
    def __init__(self, cloud: Cloud, resource_id: str, opts: ClusterOptions):
        self.cloud = cloud
        self.resource_id = resource_id
        self.opts = opts
        self.pmm_url = parse_pmm_address(opts.pmm_address) if opts.pmm_address else ""

    def run(self, ctx: Context, inst: Instance, cmd: str, strict: bool = True) -> str:
        return self.cloud.run_command(ctx, self.resource_id, inst, cmd, strict=strict)

    def sql(self, ctx: Context, inst: Instance, statement: str) -> str:
        return self.run(ctx, inst, mysql_command(self.opts.password, statement))

    def restart_mysql(self, ctx: Context, inst: Instance):
        self.run(ctx, inst, "sudo systemctl restart mysql")

    def install_file(self, ctx: Context, inst: Instance, data, path: str):
        """Upload through the staging directory and move into a root-owned path."""
        tmp = f"{STAGING_DIR}/{posixpath.basename(path)}"
        self.cloud.send_file(ctx, self.resource_id, inst, data, tmp)
        self.run(ctx, inst, f"""
sudo mkdir -p {posixpath.dirname(path)}
sudo mv {tmp} {path}
sudo chown root:root {path}
""")

    def edit_config(self, ctx: Context, inst: Instance, values: Dict[str, object],
                    path: str = MYSQLD_CNF, section: str = MYSQLD_SECTION):
        tmp = f"{STAGING_DIR}/{posixpath.basename(path)}"
        self.run(ctx, inst, f"""
sudo cp {path} {tmp}
sudo chown {DEFAULT_SSH_USER} {tmp}
""")
        self.cloud.edit_file(ctx, self.resource_id, inst, tmp,
                             set_ini_fields(section, {k: str(v) for k, v in values.items()}))
        self.run(ctx, inst, f"""
sudo chown root:root {tmp}
sudo mv {tmp} {path}
""")

    def send_custom_config(self, ctx: Context, inst: Instance):
        if not self.opts.config_file_path:
            return
        try:
            with open(self.opts.config_file_path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            raise ConfigError(f"read config file {self.opts.config_file_path}: {exc}") from exc
        self.install_file(ctx, inst, data, CUSTOM_CNF)

    def resolve_version(self, ctx: Context, inst: Instance, script: str) -> str:
        available = parse_version_list(self.run(ctx, inst, script))
        return select_version(available, self.opts.version)

    def install_pmm_client(self, ctx: Context, inst: Instance):
        self.run(ctx, inst, pmm_client_script(self.pmm_url))

    def add_pmm_service(self, ctx: Context, inst: Instance):
        with node_step("Registering MySQL with PMM", inst):
            self.run(ctx, inst, pmm_add_mysql_script(self.opts.pmm_password, self.opts.port))

    def create_instances(self, ctx: Context, count: int, role: str) -> List[Instance]:
        log(f"=== Creating {count} {role} instance(s) ===")
        instances = self.cloud.create_instances(ctx, self.resource_id, count, role_labels(role))
        for i, inst in enumerate(instances):
            log(f"  {role}-{i}: public={inst.public_ip_address} private={inst.private_ip_address}")
        return instances


# ---------------------------------------------------------------------------
# Percona Server
# ---------------------------------------------------------------------------

class PerconaServerManager(NodeManager):
    """Database tier plus the optional Orchestrator tier."""

    def create(self, ctx: Context) -> ClusterNodes:
        nodes = ClusterNodes()

        def mysql_tier(task_ctx):
            nodes.instances = self.create_mysql_tier(task_ctx)

        def orchestrator_tier(task_ctx):
            nodes.orchestrator_instances = self.create_orchestrator_tier(task_ctx)

        tiers = [mysql_tier]
        if self.opts.orchestrator_size > 0:
            tiers.append(orchestrator_tier)
        run_parallel(ctx, lambda task_ctx, tier: tier(task_ctx), tiers)

        if nodes.orchestrator_instances:
            self.wire_orchestrator(ctx, nodes.orchestrator_instances, nodes.instances)
        nodes.replicas = [i > 0 for i in range(len(nodes.instances))]
        return nodes

    def create_mysql_tier(self, ctx: Context) -> List[Instance]:
        instances = self.create_instances(ctx, self.opts.cluster_size, ROLE_MYSQL)
        log("=== Installing Percona Server ===")
        run_parallel(ctx, self.install_node, instances)

        if self.opts.replication_type == REPLICATION_GROUP:
            log("=== Bootstrapping group replication ===")
            self.setup_group_replication(ctx, instances)
        else:
            log("=== Setting up async replication ===")
            self.setup_async_replication(ctx, instances)

        if self.opts.pmm_address:
            for inst in instances:
                self.add_pmm_service(ctx, inst)
        return instances

    def install_node(self, ctx: Context, inst: Instance):
        opts = self.opts
        with node_step("Preparing OS", inst):
            self.run(ctx, inst, init_script())
        with node_step("Installing Percona Server", inst):
            self.run(ctx, inst, ps_configure_script(opts.password))
            version = self.resolve_version(ctx, inst, available_versions_script("percona-server-server"))
            log(f"  {inst.public_ip_address}: percona-server {version}")
            self.run(ctx, inst, ps_install_script(version))
            self.sql(ctx, inst, fix_root_user_sql())
        with node_step("Installing UDFs", inst):
            self.sql(ctx, inst, udf_sql())

        settings: Dict[str, object] = {"port": opts.port}
        if opts.myrocks_install:
            with node_step("Installing MyRocks", inst):
                self.run(ctx, inst, "\n".join([
                    apt_install(f"percona-server-rocksdb={version}"),
                    f"sudo ps-admin --enable-rocksdb -uroot -p{shlex.quote(opts.password)}",
                ]))
            settings["default-storage-engine"] = "rocksdb"
        if opts.pmm_address:
            with node_step("Installing PMM client", inst):
                self.install_pmm_client(ctx, inst)
                self.sql(ctx, inst, pmm_user_sql(opts.pmm_password))
            settings.update(PMM_SLOW_LOG_SETTINGS)
        if opts.orchestrator_size > 0:
            with node_step("Installing orchestrator client", inst):
                self.sql(ctx, inst, orchestrator_user_sql(opts.orchestrator_password,
                                                          opts.replication_type == REPLICATION_GROUP))
                self.run(ctx, inst, orchestrator_install_script("orchestrator-client"))

        with node_step("Configuring mysqld", inst):
            self.edit_config(ctx, inst, settings)
            self.send_custom_config(ctx, inst)
            self.restart_mysql(ctx, inst)

    # -- async ----------------------------------------------------------------

    def setup_async_replication(self, ctx: Context, instances: List[Instance]) -> List[Tuple[str, int]]:
        """Point every node after the first at node 0; returns the positions used."""
        source = instances[0]
        with node_step("Creating replication user", source):
            self.sql(ctx, source, replica_user_sql(self.opts.replica_password))
        if len(instances) < 2:
            return []

        for i, inst in enumerate(instances):
            ctx.check("async replication setup")
            settings: Dict[str, object] = {
                "log_bin": BINLOG_PATH,
                "server_id": i + 1,
                "relay-log": RELAY_LOG_PATH,
                "gtid-mode": "ON",
                "enforce-gtid-consistency": "ON",
            }
            if i == 0:
                settings["bind-address"] = f"{inst.private_ip_address},localhost"
            with node_step("Enabling binary log", inst):
                self.edit_config(ctx, inst, settings)
                self.restart_mysql(ctx, inst)

        positions = []
        for inst in instances[1:]:
            ctx.check("async replication setup")
            with node_step("Reading source position", source):
                log_file, log_pos = parse_master_status(self.sql(ctx, source, "SHOW MASTER STATUS"))
            with node_step(f"Starting replica of {source.private_ip_address} at {log_file}:{log_pos}", inst):
                self.sql(ctx, inst, change_source_sql(source.private_ip_address, self.opts.port,
                                                      self.opts.replica_password, log_file, log_pos))
            positions.append((log_file, log_pos))
        return positions

    # -- group replication ----------------------------------------------------

    def group_replication_settings(self, i: int, inst: Instance, instances: List[Instance],
                                   group_name: str) -> Dict[str, object]:
        privs = [n.private_ip_address for n in instances]
        return {
            "disabled_storage_engines": f'"{GR_DISABLED_ENGINES}"',
            "server_id": i + 1,
            "log_bin": BINLOG_PATH,
            "relay-log": RELAY_LOG_PATH,
            "gtid_mode": "ON",
            "enforce_gtid_consistency": "ON",
            "bind-address": f"{inst.private_ip_address},localhost",
            "plugin_load_add": "group_replication.so",
            "group_replication_group_name": group_name,
            "group_replication_start_on_boot": "off",
            "group_replication_local_address": f"{inst.private_ip_address}:{GROUP_REPLICATION_PORT}",
            "group_replication_bootstrap_group": "off",
            "group_replication_group_seeds": ",".join(f"{p}:{GROUP_REPLICATION_PORT}" for p in privs),
            "group_replication_ip_allowlist": ",".join(privs),
        }

    def setup_group_replication(self, ctx: Context, instances: List[Instance]) -> str:
        group_name = str(uuid.uuid4())
        log(f"Group name: {group_name}")
        index = {inst: i for i, inst in enumerate(instances)}

        def configure(task_ctx, inst):
            with node_step("Configuring group replication", inst):
                self.edit_config(task_ctx, inst,
                                 self.group_replication_settings(index[inst], inst, instances, group_name))
                self.restart_mysql(task_ctx, inst)
                self.sql(task_ctx, inst, replica_user_sql(self.opts.replica_password, group_replication=True))
                self.sql(task_ctx, inst, group_recovery_sql(self.opts.replica_password))

        run_parallel(ctx, configure, instances)

        primary = instances[0]
        with node_step("Bootstrapping group", primary):
            try:
                self.sql(ctx, primary, "SET GLOBAL group_replication_bootstrap_group=ON;START GROUP_REPLICATION;")
            finally:
                self.sql(ctx, primary, "SET GLOBAL group_replication_bootstrap_group=OFF;")
        for inst in instances[1:]:
            ctx.check("group replication join")
            with node_step("Joining group", inst):
                self.sql(ctx, inst, "START GROUP_REPLICATION;")
        return group_name

    # -- orchestrator -----------------------------------------------------------

    def create_orchestrator_tier(self, ctx: Context) -> List[Instance]:
        instances = self.create_instances(ctx, self.opts.orchestrator_size, ROLE_ORCHESTRATOR)
        log("=== Installing Orchestrator ===")
        run_parallel(ctx, lambda task_ctx, inst: self.install_orchestrator(task_ctx, inst, instances), instances)
        return instances

    def install_orchestrator(self, ctx: Context, inst: Instance, peers: List[Instance]):
        with node_step("Preparing OS", inst):
            self.run(ctx, inst, init_script())
        with node_step("Installing orchestrator", inst):
            self.run(ctx, inst, orchestrator_install_script("orchestrator"))
            self.run(ctx, inst, f"sudo mkdir -p /etc/mysql {ORCHESTRATOR_DATA_DIR}")
            config = json.dumps(orchestrator_config(inst, peers), indent=2)
            self.install_file(ctx, inst, config, ORCHESTRATOR_CONFIG)
            self.install_file(ctx, inst, ini_document("client", {
                "user": ORCHESTRATOR_USER,
                "password": self.opts.orchestrator_password,
            }), ORCHESTRATOR_TOPOLOGY_CNF)
            self.run(ctx, inst, "sudo systemctl start orchestrator")

    def wire_orchestrator(self, ctx: Context, orchestrators: List[Instance], instances: List[Instance]):
        log("=== Registering MySQL nodes with Orchestrator ===")
        for inst in orchestrators:
            with node_step("Restarting orchestrator", inst):
                self.run(ctx, inst, "sudo systemctl restart orchestrator")
        ctx.sleep(ORCHESTRATOR_SETTLE_SECONDS, "orchestrator restart")
        api = orchestrator_api(orchestrators)
        for inst in instances:
            cmd = (f"ORCHESTRATOR_API={shlex.quote(api)} orchestrator-client -c discover "
                   f"-i {inst.private_ip_address}:{self.opts.port}")
            try:
                self.run(ctx, inst, cmd)
            except Cancelled:
                raise
            except ProvisionError as exc:
                log(f"WARNING: orchestrator discovery of {inst.private_ip_address} failed: {exc}")


# ---------------------------------------------------------------------------
# Percona XtraDB Cluster
# ---------------------------------------------------------------------------

class XtraDBClusterManager(NodeManager):
    """Galera cluster: every node knows all peers; node 0 bootstraps."""

    def create(self, ctx: Context) -> ClusterNodes:
        instances = self.create_instances(ctx, self.opts.cluster_size, ROLE_MYSQL)
        log("=== Installing Percona XtraDB Cluster ===")
        run_parallel(ctx, lambda task_ctx, inst: self.install_node(task_ctx, inst, instances), instances)
        log("=== Starting Galera cluster ===")
        self.start_cluster(ctx, instances)
        if self.opts.pmm_address:
            with node_step("Creating PMM user", instances[0]):
                self.sql(ctx, instances[0], pmm_user_sql(self.opts.pmm_password, local_only=False))
            for inst in instances:
                self.add_pmm_service(ctx, inst)
        return ClusterNodes(instances=instances, replicas=[False] * len(instances))

    def galera_settings(self, inst: Instance, instances: List[Instance]) -> Dict[str, object]:
        gport = self.opts.galera_port
        peers = ",".join(f"{n.private_ip_address}:{gport}" for n in instances)
        return {
            "port": self.opts.port,
            "wsrep_cluster_address": f"gcomm://{peers}",
            "wsrep_node_name": inst.private_ip_address,
            "wsrep_node_address": f"{inst.private_ip_address}:{gport}",
            "wsrep_provider_options": f"base_port={gport}",
            "pxc-encrypt-cluster-traffic": "OFF",
        }

    def install_node(self, ctx: Context, inst: Instance, instances: List[Instance]):
        with node_step("Preparing OS", inst):
            self.run(ctx, inst, init_script())
        with node_step("Installing Percona XtraDB Cluster", inst):
            self.run(ctx, inst, pxc_configure_script(self.opts.password))
            version = self.resolve_version(
                ctx, inst, available_versions_script("percona-xtradb-cluster", epoch="1:"))
            log(f"  {inst.public_ip_address}: percona-xtradb-cluster {version}")
            self.run(ctx, inst, pxc_install_script(version))
            self.run(ctx, inst, "sudo systemctl stop mysql || true")
        settings = self.galera_settings(inst, instances)
        if self.opts.pmm_address:
            with node_step("Installing PMM client", inst):
                self.install_pmm_client(ctx, inst)
            settings.update(PMM_SLOW_LOG_SETTINGS)
        with node_step("Configuring wsrep", inst):
            self.edit_config(ctx, inst, settings)
            self.send_custom_config(ctx, inst)

    def start_cluster(self, ctx: Context, instances: List[Instance]):
        first = instances[0]
        with node_step("Bootstrapping cluster", first):
            self.run(ctx, first, "sudo systemctl start mysql@bootstrap.service")
        for inst in instances[1:]:
            ctx.check("galera join")
            with node_step("Joining cluster", inst):
                self.run(ctx, inst, "sudo systemctl start mysql")
        if len(instances) > 1:
            with node_step("Restarting bootstrap node in normal mode", first):
                self.run(ctx, first, """
sudo systemctl stop mysql@bootstrap.service
sudo systemctl start mysql
""")
        with node_step("Fixing root user", first):
            self.sql(ctx, first, fix_root_user_sql())

