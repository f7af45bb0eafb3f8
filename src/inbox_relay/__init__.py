"""Inbox relay: watch a directory and run each arriving file through an external tool."""

__version__ = "0.1.0"
