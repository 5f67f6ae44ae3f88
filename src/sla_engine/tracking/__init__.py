"""
Commitment Tracking Module
==========================

Bounded context for service-level commitment tracking.

Each tracked metric of a case gets a timer that accrues business time on
its policy's calendar, pauses and resumes on rule matches, and is
completed or violated. Violations produce a record; escalation thresholds
produce commands for the workflow collaborator.

Layers:
- domain: calendars, rule trees, policies, timers
- application: timer state machine, engine, reporting, DTOs
- infrastructure: persistence, policy catalogs, webhook, scheduler
- interfaces: FastAPI routes
"""
