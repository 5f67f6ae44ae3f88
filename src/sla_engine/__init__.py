"""
SLA Timer Engine
================

Service-level tracking and escalation for support cases.

Modules:
- tracking: timers, calendars, rule trees, escalations and violations
- shared: logging shared by every module
- infrastructure: database engine and sessions
"""

__version__ = "1.0.0"
