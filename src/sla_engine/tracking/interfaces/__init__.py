"""
Tracking Interfaces Layer
=========================

Interface adapters (controllers) for the tracking module.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to the engine and application services.
"""

from sla_engine.tracking.interfaces.controllers import tracking_router

__all__ = ["tracking_router"]
