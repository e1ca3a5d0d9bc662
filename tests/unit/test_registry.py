"""Unit Tests for the Task Registry and the BaseHandler template"""
import pytest

from automation_engine.errors import ExecutionError, UnknownTypeError, ValidationError
from automation_engine.jobs.base import BaseHandler, CancelToken, HandlerResult
from automation_engine.models import AutomationType
from automation_engine.runner.registry import TaskRegistry, coerce_type


class EchoHandler(BaseHandler):
    automation_type = AutomationType.CLEANUP
    description = "Echo payload"

    def validate_payload(self, payload):
        self.require_keys(payload, 'value')

    def run(self, payload, cancel_token):
        return HandlerResult(result_data={'value': payload['value']})


class ReportsFailure(BaseHandler):
    automation_type = AutomationType.CLEANUP

    def run(self, payload, cancel_token):
        return HandlerResult(success=False, error_message='nothing to do')


class Explodes(BaseHandler):
    automation_type = AutomationType.CLEANUP

    def run(self, payload, cancel_token):
        raise RuntimeError('kaboom')


class TestTaskRegistry:
    def test_register_and_resolve(self):
        """A registered handler is returned for its tag"""
        registry = TaskRegistry()
        handler = EchoHandler()
        registry.register(AutomationType.CLEANUP, handler)

        assert registry.resolve(AutomationType.CLEANUP) is handler
        assert registry.resolve('cleanup') is handler
        assert AutomationType.CLEANUP in registry

    def test_unregistered_type_raises(self):
        """Resolving a known but unregistered tag raises UnknownTypeError"""
        with pytest.raises(UnknownTypeError):
            TaskRegistry().resolve(AutomationType.FRAUD_CHECK)

    def test_unknown_tag_raises(self):
        """Strings outside the closed set raise UnknownTypeError"""
        with pytest.raises(UnknownTypeError):
            coerce_type('bitcoin_mining')
        assert 'bitcoin_mining' not in TaskRegistry()

    def test_reregister_replaces(self):
        """Last registration wins"""
        registry = TaskRegistry()
        first, second = EchoHandler(), EchoHandler()
        registry.register(AutomationType.CLEANUP, first)
        registry.register(AutomationType.CLEANUP, second)

        assert registry.resolve(AutomationType.CLEANUP) is second
        assert registry.registered_types() == [AutomationType.CLEANUP]

    def test_rejects_object_without_execute(self):
        """Handlers must expose execute()"""
        with pytest.raises(ValidationError):
            TaskRegistry().register(AutomationType.CLEANUP, object())


class TestBaseHandler:
    def test_execute_returns_result_with_duration(self):
        """Successful run is timed"""
        result = EchoHandler().execute({'value': 3}, CancelToken())
        assert result.success
        assert result.result_data == {'value': 3}
        assert result.duration_seconds >= 0

    def test_invalid_payload_is_not_recoverable(self):
        """Payload validation failures are never retried"""
        with pytest.raises(ExecutionError) as exc:
            EchoHandler().execute({}, CancelToken())
        assert exc.value.recoverable is False
        assert 'value' in str(exc.value)

    def test_reported_failure_is_recoverable(self):
        """success=False becomes a recoverable ExecutionError"""
        with pytest.raises(ExecutionError) as exc:
            ReportsFailure().execute(None, CancelToken())
        assert exc.value.recoverable is True
        assert str(exc.value) == 'nothing to do'

    def test_unexpected_exception_is_wrapped(self):
        """Arbitrary exceptions are wrapped with their cause"""
        with pytest.raises(ExecutionError) as exc:
            Explodes().execute(None, CancelToken())
        assert exc.value.recoverable is True
        assert isinstance(exc.value.cause, RuntimeError)

    def test_cancelled_token_stops_before_run(self):
        """A cancelled token short-circuits execution"""
        token = CancelToken()
        token.cancel('ShutdownTimeout')
        with pytest.raises(ExecutionError) as exc:
            EchoHandler().execute({'value': 1}, token)
        assert exc.value.recoverable is False
        assert 'ShutdownTimeout' in str(exc.value)


class TestCancelToken:
    def test_expired_deadline_reports_timed_out(self):
        """A zero timeout is immediately expired"""
        token = CancelToken(timeout=0)
        assert token.cancelled
        assert token.reason == 'TimedOut'

    def test_no_deadline(self):
        """Without a timeout there is no remaining budget"""
        token = CancelToken()
        assert token.remaining() is None
        assert not token.cancelled

    def test_wait_wakes_on_cancel(self):
        """wait() returns True once cancelled"""
        token = CancelToken()
        token.cancel()
        assert token.wait(5) is True
        assert token.reason == 'Cancelled'
