"""
Handler definitions for the automation engine.

Each handler inherits from BaseHandler and implements the run() method.
"""

from automation_engine.jobs.base import BaseHandler, CancelToken, HandlerResult

__all__ = ['BaseHandler', 'CancelToken', 'HandlerResult']
