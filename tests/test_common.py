import threading
import time

import pytest

from percona_common import (
    TAG_RESOURCE_ID,
    Cancelled,
    Context,
    ReadinessTimeout,
    generate_resource_id,
    merge_labels,
    poll_until,
    role_labels,
    run_parallel,
)


def test_poll_until_returns_truthy_value(ctx):
    answers = iter([None, 0, "ready"])
    assert poll_until(ctx, lambda: next(answers), interval=0.01) == "ready"


def test_poll_until_with_cancelled_context_returns_promptly():
    ctx = Context()
    ctx.cancel()
    calls = []
    started = time.monotonic()
    with pytest.raises(Cancelled):
        poll_until(ctx, lambda: calls.append(1), interval=60, timeout=600)
    assert time.monotonic() - started < 1
    assert calls == []


def test_poll_until_times_out(ctx):
    with pytest.raises(ReadinessTimeout):
        poll_until(ctx, lambda: False, interval=0.01, timeout=0.05)


def test_cancel_wakes_sleeping_poll():
    ctx = Context()
    threading.Timer(0.1, ctx.cancel).start()
    started = time.monotonic()
    with pytest.raises(Cancelled):
        poll_until(ctx, lambda: False, interval=30)
    assert time.monotonic() - started < 5


def test_child_context_follows_parent():
    parent = Context()
    child = parent.child(timeout=100)
    assert not child.cancelled
    parent.cancel()
    assert child.cancelled


def test_child_never_outlives_parent_deadline():
    parent = Context(timeout=1)
    child = parent.child(timeout=100)
    assert child.remaining() <= 1


def test_run_parallel_keeps_order(ctx):
    assert run_parallel(ctx, lambda c, x: x * 2, [3, 1, 2]) == [6, 2, 4]


def test_run_parallel_empty(ctx):
    assert run_parallel(ctx, lambda c, x: x, []) == []


def test_run_parallel_first_error_cancels_the_rest(ctx):
    seen = {}

    def task(task_ctx, item):
        if item == "bad":
            raise ValueError("boom")
        try:
            task_ctx.sleep(30, "slow task")
        except Cancelled:
            seen[item] = "cancelled"
            raise

    started = time.monotonic()
    with pytest.raises(ValueError, match="boom"):
        run_parallel(ctx, task, ["bad", "slow-1", "slow-2"])
    assert time.monotonic() - started < 10
    assert seen == {"slow-1": "cancelled", "slow-2": "cancelled"}
    assert not ctx.cancelled


def test_resource_id_is_random_letters():
    a, b = generate_resource_id(), generate_resource_id()
    assert len(a) == 20 and a.isalpha()
    assert a != b


def test_merge_labels_always_carries_resource_id():
    labels = merge_labels(role_labels("mysql"), "abc")
    assert labels[TAG_RESOURCE_ID] == "abc"
    assert labels["percona-instance-type"] == "mysql"
    assert merge_labels(None, "abc") == {TAG_RESOURCE_ID: "abc"}
