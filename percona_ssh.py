"""
Remote execution on a single host: shell commands, file upload, in-place file
edits, and a readiness ping. Every call opens its own authenticated SSH
connection and closes it before returning.

Host keys are not verified: cluster nodes are fresh instances whose keys are
unknown ahead of time.
"""

import configparser
import io
import os
import socket
import textwrap
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Union

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from percona_common import SSH_PORT, Cancelled, ConfigError, Context, RemoteCommandError

DEFAULT_SSH_USER = "ubuntu"
CONNECT_TIMEOUT = 30
RSA_KEY_BITS = 2048


def key_pair_path(path_to_key_pair: str, key_pair_name: str) -> Path:
    return (Path(path_to_key_pair or ".").expanduser() / f"{key_pair_name}.pem").resolve()


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------

def create_private_key(path: Path):
    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_BITS)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(pem)
    return key


def normalize_public_key(text: str) -> str:
    """'ssh-rsa AAAA... comment' -> 'ssh-rsa AAAA...'."""
    parts = text.strip().split()
    if len(parts) < 2:
        raise ConfigError(f"malformed public key: {text!r}")
    return f"{parts[0]} {parts[1]}"


def ssh_public_key(path: Path, create: bool = True) -> str:
    """OpenSSH public key for the private key at `path`, creating it if allowed."""
    if not path.exists():
        if not create:
            raise ConfigError(f"private key {path} does not exist")
        key = create_private_key(path)
    else:
        try:
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            raise ConfigError(f"failed to read private key {path}: {exc}") from exc
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return public.decode()


# ---------------------------------------------------------------------------
# ini editing
# ---------------------------------------------------------------------------

def set_ini_fields(section: str, values: Dict[str, str]) -> Callable[[BinaryIO], None]:
    """Edit function that sets `values` under `[section]` of an ini/cnf file.

    Keys without a value (mysqld flags such as `skip-name-resolve`) and any
    directives before the first section header are kept.
    """
    def edit(fh):
        data = fh.read()
        text = data.decode() if isinstance(data, bytes) else data
        lines = text.splitlines()
        preamble = []
        while lines and not lines[0].lstrip().startswith("["):
            preamble.append(lines.pop(0))

        parser = configparser.ConfigParser(
            allow_no_value=True, strict=False, interpolation=None, delimiters=("=",),
        )
        parser.optionxform = str
        parser.read_string("\n".join(lines))
        if not parser.has_section(section):
            parser.add_section(section)
        for key, value in values.items():
            parser.set(section, key, str(value))

        buf = io.StringIO()
        if preamble:
            buf.write("\n".join(preamble).rstrip("\n") + "\n\n")
        parser.write(buf)
        out = buf.getvalue().encode()
        fh.seek(0)
        fh.write(out)
        fh.truncate(len(out))
    return edit


def ini_document(section: str, values: Dict[str, str]) -> bytes:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    parser.add_section(section)
    for key, value in values.items():
        parser.set(section, key, str(value))
    buf = io.StringIO()
    parser.write(buf)
    return buf.getvalue().encode()


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RemoteExecutor:
    """Runs commands and file operations on hosts reachable with one key pair."""

    def __init__(self, key_path: Path, user: str = DEFAULT_SSH_USER, port: int = SSH_PORT,
                 connect_timeout: float = CONNECT_TIMEOUT):
        self.key_path = Path(key_path)
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout

    def _pkey(self):
        try:
            return paramiko.RSAKey.from_private_key_file(str(self.key_path))
        except (OSError, paramiko.SSHException) as exc:
            raise ConfigError(f"read private key {self.key_path}: {exc}") from exc

    def _connect(self, ctx: Context, host: str, what: str) -> paramiko.SSHClient:
        ctx.check(f"{what} on {host}")
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.MissingHostKeyPolicy())
        timeout = self.connect_timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = max(1.0, min(timeout, remaining))
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=self.user,
                pkey=self._pkey(),
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise RemoteCommandError(host, what, reason=f"ssh dial: {exc}") from exc
        return client

    def run_command(self, ctx: Context, host: str, script: str, strict: bool = True) -> str:
        """Run `script` with bash on `host`; return combined stdout+stderr.

        A non-zero exit status raises RemoteCommandError carrying the output.
        """
        full_script = textwrap.dedent(script).lstrip()
        if strict:
            full_script = "set -euo pipefail\n" + full_script
        client = self._connect(ctx, host, full_script)
        try:
            channel = client.get_transport().open_session()
            channel.set_combine_stderr(True)
            channel.settimeout(1.0)
            channel.exec_command("bash -s")
            channel.sendall(full_script.encode())
            channel.shutdown_write()
            chunks = []
            while True:
                try:
                    data = channel.recv(65536)
                except socket.timeout:
                    if ctx.cancelled:
                        channel.close()
                        raise Cancelled(f"command on {host}: cancelled")
                    ctx.check(f"command on {host}")
                    continue
                if not data:
                    break
                chunks.append(data)
            status = channel.recv_exit_status()
            output = b"".join(chunks).decode(errors="replace")
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(host, full_script, reason=f"ssh session: {exc}") from exc
        finally:
            client.close()
        if status != 0:
            raise RemoteCommandError(host, full_script, output, status)
        return output

    def send_file(self, ctx: Context, host: str, src: Union[BinaryIO, bytes, str], remote_path: str):
        if isinstance(src, str):
            src = src.encode()
        if isinstance(src, bytes):
            src = io.BytesIO(src)
        client = self._connect(ctx, host, f"send {remote_path}")
        try:
            sftp = client.open_sftp()
            try:
                sftp.putfo(src, remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(host, f"send {remote_path}", reason=f"sftp: {exc}") from exc
        finally:
            client.close()

    def edit_file(self, ctx: Context, host: str, path: str, edit_fn: Callable[[BinaryIO], None]):
        """Open `path` read-write over SFTP and hand the handle to `edit_fn`."""
        client = self._connect(ctx, host, f"edit {path}")
        try:
            sftp = client.open_sftp()
            try:
                with sftp.open(path, "r+") as fh:
                    edit_fn(fh)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(host, f"edit {path}", reason=f"sftp: {exc}") from exc
        finally:
            client.close()

    def ssh_ping(self, ctx: Context, host: str):
        """Log in with the cluster key and disconnect.

        This is a full authenticated login rather than a bare TCP dial, so a
        host whose sshd answers before the key is installed still counts as
        unreachable.
        """
        client = self._connect(ctx, host, "ping")
        client.close()

    def is_reachable(self, ctx: Context, host: str) -> bool:
        try:
            self.ssh_ping(ctx, host)
            return True
        except RemoteCommandError:
            return False
