"""Shared fixtures for automation engine tests"""
import threading
import time

import pytest

from automation_engine.collaborators import InferenceClient, Mailer, Recipient, StaticUserDirectory
from automation_engine.config import EngineConfig
from automation_engine.controller import LifecycleController
from automation_engine.jobs.base import BaseHandler, HandlerResult
from automation_engine.models import AutomationType


class FakeMailer(Mailer):
    """Records messages; can be told to fail or be unreachable"""

    def __init__(self):
        self.sent = []
        self.fail = False
        self.reachable = True

    def send(self, to, subject, html, text=None):
        if self.fail:
            return False
        self.sent.append({'to': to, 'subject': subject, 'html': html, 'text': text})
        return True

    def ping(self):
        return self.reachable


class FakeInference(InferenceClient):
    def __init__(self):
        self.calls = []

    def process(self, entity_id, capabilities):
        self.calls.append((entity_id, list(capabilities)))
        return {'entity_id': entity_id, 'score': 0.9}


class BlockingHandler(BaseHandler):
    """Runs until released or cancelled; records concurrency"""

    automation_type = AutomationType.CLEANUP
    description = "Test handler that blocks"

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.started = threading.Semaphore(0)
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def run(self, payload, cancel_token):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.started.release()
        try:
            while not self.release.is_set():
                if cancel_token.wait(0.01):
                    cancel_token.raise_if_cancelled()
            return HandlerResult(result_data={'payload': payload})
        finally:
            with self._lock:
                self.active -= 1


class FlakyHandler(BaseHandler):
    """Fails every call with a recoverable error"""

    automation_type = AutomationType.CLEANUP
    description = "Test handler that always fails"

    def __init__(self):
        super().__init__()
        self.calls = 0

    def run(self, payload, cancel_token):
        self.calls += 1
        raise ConnectionError("collaborator unreachable")


class RecordingHandler(BaseHandler):
    """Appends payload['label'] to a shared list"""

    automation_type = AutomationType.CLEANUP
    description = "Test handler that records execution order"

    def __init__(self, order):
        super().__init__()
        self.order = order

    def run(self, payload, cancel_token):
        self.order.append(payload['label'])
        return HandlerResult()


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy; return its final value"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def fast_config():
    return EngineConfig(
        concurrency=2,
        max_retries=3,
        retry_base_seconds=0.0,
        job_timeout_seconds=None,
        shutdown_grace_seconds=1.0,
        poll_interval_seconds=0.02,
        heartbeat_tolerance_seconds=5.0,
    )


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def users():
    return StaticUserDirectory([
        Recipient(user_id='user-1', email='arben@example.com', name='Arben'),
        Recipient(user_id='user-2', email='elira@example.com', name='Elira'),
    ])


@pytest.fixture
def controller(fast_config, mailer, users, inference):
    ctl = LifecycleController(fast_config, mailer=mailer, users=users, inference=inference)
    yield ctl
    ctl.shutdown(grace=0)
