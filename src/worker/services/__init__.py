"""Scheduling engine services.

- scheduler.py (whole-time schedule math)
- execution_lock.py (per-indicator locks + global execution slots)
- indicator_executor.py / monitoring_loop.py (running due indicators)
- alert_lifecycle.py (escalation and auto-resolution)
- health_monitor.py / shutdown.py / engine.py (loop supervision and wiring)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
