"""
Task registry: binds each AutomationType to the handler that executes it.
"""

import logging
import threading
from typing import Dict, List, Union

from automation_engine.errors import UnknownTypeError, ValidationError
from automation_engine.jobs.base import BaseHandler
from automation_engine.models import AutomationType


logger = logging.getLogger("automation.registry")


def coerce_type(automation_type: Union[AutomationType, str]) -> AutomationType:
    """Map a tag string onto the closed AutomationType set."""
    try:
        return AutomationType(automation_type)
    except ValueError:
        raise UnknownTypeError(automation_type)


class TaskRegistry:
    """
    Registration happens while the engine is composed; resolution happens
    on every dispatch. Re-registering a tag replaces the previous handler.
    """

    def __init__(self):
        self._handlers: Dict[AutomationType, BaseHandler] = {}
        self._lock = threading.Lock()

    def register(self, automation_type: Union[AutomationType, str], handler) -> None:
        """
        Bind a tag to a handler.

        Args:
            automation_type: Tag to bind
            handler: Object exposing execute(payload, cancel_token)
        """
        automation_type = coerce_type(automation_type)
        if not callable(getattr(handler, 'execute', None)):
            raise ValidationError(
                f"Handler for '{automation_type.value}' must define execute(payload, cancel_token)"
            )

        with self._lock:
            if automation_type in self._handlers:
                logger.warning(f"Overwriting handler for '{automation_type.value}'")
            self._handlers[automation_type] = handler

        logger.debug(f"Registered handler {type(handler).__name__} for '{automation_type.value}'")

    def resolve(self, automation_type: Union[AutomationType, str]):
        """Return the handler bound to the tag, or raise UnknownTypeError."""
        automation_type = coerce_type(automation_type)
        with self._lock:
            handler = self._handlers.get(automation_type)
        if handler is None:
            raise UnknownTypeError(automation_type.value)
        return handler

    def registered_types(self) -> List[AutomationType]:
        with self._lock:
            return list(self._handlers)

    def __contains__(self, automation_type) -> bool:
        try:
            self.resolve(automation_type)
        except UnknownTypeError:
            return False
        return True
