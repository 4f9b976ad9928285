"""
Shared plumbing for the Percona cluster provisioner.

Logging, the error taxonomy, cancellable contexts, the single poll loop used
for every readiness wait, and the bounded parallel runner used for per-node
install work.
"""

import random
import string
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

LOG_TO_FILE: Optional[Path] = None

RESOURCE_ID_LENGTH = 20
TAG_RESOURCE_ID = "percona-cluster-stack-id"
TAG_NAME = "Name"

LABEL_INSTANCE_ROLE = "percona-instance-type"
ROLE_MYSQL = "mysql"
ROLE_ORCHESTRATOR = "orchestrator"

ALL_ADDRESSES_CIDR = "0.0.0.0/0"
SSH_PORT = 22

_log_lock = threading.Lock()


def ts():
    return datetime.now().strftime("[%Y-%m-%dT%H:%M:%S%z]")


def log(msg):
    line = f"{ts()} {msg}"
    with _log_lock:
        print(line, flush=True)
        if LOG_TO_FILE:
            try:
                LOG_TO_FILE.parent.mkdir(parents=True, exist_ok=True)
                with LOG_TO_FILE.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
            except OSError:
                pass


def set_log_file(path):
    global LOG_TO_FILE
    LOG_TO_FILE = Path(path).expanduser() if path else None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProvisionError(RuntimeError):
    """Base class for every failure surfaced by the provisioner."""


class ConfigError(ProvisionError):
    """Missing or invalid declared parameter. Never retried."""


class CloudError(ProvisionError):
    """A cloud API call failed; the message starts with the operation name."""


class RemoteCommandError(ProvisionError):
    def __init__(self, host, command, output="", exit_status=None, reason=None):
        self.host = host
        self.command = command
        self.output = output
        self.exit_status = exit_status
        if reason is None:
            reason = f"exit status {exit_status}"
        super().__init__(f"{host}: {reason}, output: {output.strip()}")


class Cancelled(ProvisionError):
    """The operation's context was cancelled before it finished."""


class ReadinessTimeout(Cancelled):
    """A readiness wait ran past its deadline."""


# ---------------------------------------------------------------------------
# Context / polling
# ---------------------------------------------------------------------------

class Context:
    """Cancellation flag plus optional deadline, shared by a provisioning run.

    A child context is cancelled whenever its parent is, and may carry a
    tighter deadline of its own.
    """

    def __init__(self, timeout: Optional[float] = None, parent: "Optional[Context]" = None):
        self._event = threading.Event()
        self._parent = parent
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, what="operation"):
        if self.cancelled:
            raise Cancelled(f"{what}: cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise ReadinessTimeout(f"{what}: deadline exceeded")

    def sleep(self, seconds, what="operation"):
        """Sleep up to `seconds`, waking early on cancellation."""
        end = time.monotonic() + seconds
        while True:
            self.check(what)
            left = end - time.monotonic()
            rem = self.remaining()
            if rem is not None:
                left = min(left, rem)
            if left <= 0:
                break
            self._event.wait(min(left, 0.5))
        self.check(what)

    def child(self, timeout: Optional[float] = None) -> "Context":
        return Context(timeout=timeout, parent=self)


def poll_until(ctx: Context, predicate: Callable[[], object], interval: float = 5.0,
               timeout: Optional[float] = None, what: str = "condition"):
    """Call `predicate` every `interval` seconds until it returns a truthy value.

    Returns that value. Raises Cancelled if `ctx` is cancelled and
    ReadinessTimeout once `timeout` (or the context deadline) passes.
    """
    wait_ctx = ctx.child(timeout)
    attempt = 0
    while True:
        wait_ctx.check(f"waiting for {what}")
        attempt += 1
        result = predicate()
        if result:
            return result
        wait_ctx.sleep(interval, f"waiting for {what} (attempt {attempt})")


def run_parallel(ctx: Context, fn: Callable, items: List) -> List:
    """Run fn(task_ctx, item) for every item, one worker per item.

    The first failure cancels the rest and is raised once they have stopped.
    Results come back in the order of `items`.
    """
    if not items:
        return []
    group = ctx.child()
    with ThreadPoolExecutor(max_workers=len(items)) as pool:
        futures = [pool.submit(fn, group, item) for item in items]
        first_error = None
        pending = set(futures)
        while pending:
            done, pending = wait(pending, return_when=FIRST_EXCEPTION)
            for fut in done:
                exc = fut.exception()
                if exc is not None and first_error is None:
                    first_error = exc
                    group.cancel()
        if first_error is not None:
            raise first_error
        return [f.result() for f in futures]


# ---------------------------------------------------------------------------
# Resource IDs / labels
# ---------------------------------------------------------------------------

def generate_resource_id(length=RESOURCE_ID_LENGTH):
    letters = string.ascii_letters
    rng = random.SystemRandom()
    return "".join(rng.choice(letters) for _ in range(length))


def merge_labels(labels: Optional[Dict[str, str]], resource_id: str) -> Dict[str, str]:
    merged = dict(labels or {})
    merged[TAG_RESOURCE_ID] = resource_id
    return merged


def role_labels(role: str) -> Dict[str, str]:
    return {LABEL_INSTANCE_ROLE: role}
