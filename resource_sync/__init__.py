"""Synchronization engine for external mailbox and calendar resources."""

__version__ = "1.0.0"
