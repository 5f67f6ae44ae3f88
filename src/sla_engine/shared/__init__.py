"""
Shared Kernel Module
====================

Generic infrastructure used by every bounded context of the engine.

DO NOT add tracking business logic to the shared kernel.
"""
