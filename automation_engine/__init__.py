"""
Automation engine for the AutoMarket marketplace.

Queues background jobs (AI analysis, notifications, maintenance), runs them
on a bounded worker pool with retry, and reports health and analytics.

- controller.py: Lifecycle controller and command surface
- runner/: Queue, registry, scheduler, persistence and failure alerts
- jobs/: Built-in handlers
"""

from automation_engine.config import EngineConfig
from automation_engine.controller import LifecycleController, build_controller
from automation_engine.models import AutomationType, Job, JobState

__all__ = [
    'AutomationType',
    'EngineConfig',
    'Job',
    'JobState',
    'LifecycleController',
    'build_controller',
]

__version__ = '0.1.0'
