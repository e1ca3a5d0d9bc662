"""
Base handler class that all automation handlers inherit from.
Provides timing, payload validation, cancellation and error wrapping.
"""

import logging
import threading
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from automation_engine.errors import ExecutionError, JobCancelled, ValidationError
from automation_engine.models import AutomationType


@dataclass
class HandlerResult:
    """Result of a handler execution."""
    success: bool = True
    error_message: Optional[str] = None
    result_data: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'success': self.success,
            'error_message': self.error_message,
            'result_data': self.result_data,
            'duration_seconds': self.duration_seconds,
        }


class CancelToken:
    """
    Cooperative cancellation handle passed to every handler.

    Handlers poll it (or wait on it) at I/O boundaries. It fires when the
    scheduler shuts down, when the job overruns its timeout, or when the
    optional deadline passes.
    """

    def __init__(self, timeout: float = None):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def reason(self) -> Optional[str]:
        if self._reason is None and self.expired:
            return "TimedOut"
        return self._reason

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancel. Returns True if cancelled."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelled(self.reason or "Cancelled")


class BaseHandler(ABC):
    """
    Abstract base class for all automation handlers.

    Subclasses must implement:
        - run(self, payload, cancel_token) -> HandlerResult

    Optional overrides:
        - validate_payload(self, payload) -> None (raise ValidationError)
        - on_success(self, result: HandlerResult)
        - on_failure(self, error: ExecutionError)

    Example:
        class MyHandler(BaseHandler):
            automation_type = AutomationType.CLEANUP
            description = "Does something useful"

            def run(self, payload, cancel_token) -> HandlerResult:
                cancel_token.raise_if_cancelled()
                return HandlerResult(result_data={'done': True})
    """

    # Class-level metadata (override in subclasses)
    automation_type: AutomationType = None
    description: str = "Base handler"

    def __init__(self):
        self.logger = self._setup_logger()

    @property
    def name(self) -> str:
        if self.automation_type is None:
            return type(self).__name__
        return self.automation_type.value

    def _setup_logger(self) -> logging.Logger:
        """Set up a logger for this handler."""
        logger = logging.getLogger(f"automation.job.{self.name}")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            logger.addHandler(handler)
            logger.propagate = False
        return logger

    def execute(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        """
        Execute the handler with timing and error wrapping.

        This is the entry point called by the scheduler.
        Do not override this method - override run() instead.

        Raises:
            ExecutionError: on any failure; `recoverable` tells the
                scheduler whether a retry makes sense
        """
        start_time = time.time()

        try:
            try:
                self.validate_payload(payload)
            except ValidationError as e:
                raise ExecutionError(f"Invalid payload: {e}", recoverable=False, cause=e)

            cancel_token.raise_if_cancelled()
            result = self.run(payload, cancel_token) or HandlerResult()

            if not result.success:
                raise ExecutionError(result.error_message or "Handler reported failure")

            result.duration_seconds = time.time() - start_time
            self.on_success(result)
            return result

        except ExecutionError as e:
            self.on_failure(e)
            raise
        except JobCancelled as e:
            error = ExecutionError(f"Cancelled: {e}", recoverable=False, cause=e)
            self.on_failure(error)
            raise error
        except Exception as e:
            self.logger.debug(traceback.format_exc())
            error = ExecutionError(str(e) or type(e).__name__, recoverable=True, cause=e)
            self.on_failure(error)
            raise error

    @abstractmethod
    def run(self, payload: Any, cancel_token: CancelToken) -> HandlerResult:
        """
        Main handler logic. Override this in subclasses.

        Returns:
            HandlerResult with any result data
        """
        pass

    def validate_payload(self, payload: Any) -> None:
        """
        Validate the job payload before execution.

        Override this to add custom validation logic.
        """

    def on_success(self, result: HandlerResult) -> None:
        self.logger.info(
            f"Handler '{self.name}' completed successfully in {result.duration_seconds:.2f}s"
        )

    def on_failure(self, error: ExecutionError) -> None:
        self.logger.error(f"Handler '{self.name}' failed: {error}")

    def require_keys(self, payload: Any, *keys: str) -> None:
        """
        Check that the payload is a mapping with the required keys.

        Raises:
            ValidationError: listing the missing keys
        """
        if not isinstance(payload, dict):
            raise ValidationError(f"payload must be an object, got {type(payload).__name__}")
        missing = [k for k in keys if payload.get(k) in (None, '')]
        if missing:
            raise ValidationError(f"Missing required payload keys: {missing}")
