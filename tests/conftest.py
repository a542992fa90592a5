"""Shared fixtures: an in-memory Cloudflare list and a controllable clock."""

import itertools
import logging
import threading

import pytest

from cloudflare_bouncer import (
    FlushScheduler,
    ReconciliationState,
    RetryPolicy,
)


class FakeCloudflareAPI:
    """In-memory stand-in for CloudflareAPI list item calls.

    Item IDs are handed out as R1, R2, ... in creation order. Exceptions put
    on ``failures`` are raised by the next list item call, one per call.
    """

    def __init__(self):
        self.items: dict[str, str] = {}
        self.create_calls: list[list] = []
        self.delete_calls: list[list] = []
        self.calls: list[str] = []
        self.failures: list[Exception] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def create_list_items(self, list_id, items):
        with self._lock:
            self.calls.append("create")
            self._maybe_fail()
            self.create_calls.append(list(items))
            for item in items:
                if item.ip not in self.items:
                    self.items[item.ip] = f"R{next(self._ids)}"
            return [(item.ip, self.items[item.ip]) for item in items]

    def delete_list_items(self, list_id, items):
        with self._lock:
            self.calls.append("delete")
            self._maybe_fail()
            self.delete_calls.append(list(items))
            doomed = {item.remote_id for item in items}
            self.items = {ip: rid for ip, rid in self.items.items() if rid not in doomed}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("cloudflare-bouncer-tests")


@pytest.fixture
def fake_api() -> FakeCloudflareAPI:
    return FakeCloudflareAPI()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state(logger) -> ReconciliationState:
    return ReconciliationState(comment="crowdsec", logger=logger)


@pytest.fixture
def scheduler(state, fake_api, clock, logger) -> FlushScheduler:
    return FlushScheduler(
        state=state,
        api=fake_api,
        list_id="list-1",
        interval=60,
        logger=logger,
        retry_policy=RetryPolicy(base_delay=60, max_delay=600, max_age=3600),
        clock=clock,
    )
