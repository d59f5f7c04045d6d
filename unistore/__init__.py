"""Unified file storage for local disks and cloud object stores."""

__version__ = "0.1.0"
