"""
softupdate - Self-update orchestrator for an installed application

Reconciles the local artifact set against a remote release manifest,
keeps a single rollback snapshot and migrates the local database schema.
"""

__version__ = "0.1.0"
