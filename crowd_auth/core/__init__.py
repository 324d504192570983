"""Core Business Logic Module

This module provides the directory bridge logic, independent of any web
framework.

Architecture:
    - Pure Python (no framework dependencies in core logic)
    - Directory access behind the DirectoryClient protocol, replaceable by a fake
    - Persistence behind IdentityStore repositories

Module Structure:
    - crowd/              : Crowd REST client, services and wire mapping
    - models.py           : Shared data types and typed results
    - validators.py       : Login input validation
    - sync_service.py     : IdentitySyncEngine (remote identity → local rows)
    - session_validator.py: SessionValidator (login, cached lookup, logout)

Usage Pattern:
    These modules are NOT auto-imported; import explicitly when needed:
        from crowd_auth.core.session_validator import SessionValidator
        from crowd_auth.core.sync_service import IdentitySyncEngine, ReconciliationError
        from crowd_auth.core.models import Credentials, LocalPrincipal, Rejected
"""
