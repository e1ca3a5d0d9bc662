"""
Job runner components for the automation engine.

- queue.py: Priority queue with dedup tracking and retry backoff
- registry.py: AutomationType -> handler bindings
- scheduler.py: Worker pool, timeout watchdog and graceful shutdown
- store.py: In-memory and SQLite job persistence
- periodic.py: Cron-driven periodic task table
- alerts.py: Email/Slack alerting on final job failures
"""
