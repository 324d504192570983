"""Crowd identity bridge package.

To authenticate and sync users:
    from crowd_auth.bootstrap import create_validator

To use the Crowd REST client directly:
    from crowd_auth.core.crowd import CrowdClient, CrowdDirectory

To work with the local identity store:
    from crowd_auth.store import IdentityStore
"""
