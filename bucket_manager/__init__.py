"""Bucket Manager: compose stack orchestration across local and SSH hosts."""

__version__ = "0.1.0"
