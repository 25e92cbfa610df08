"""Background jobs module."""

from resource_sync.jobs.scheduler import setup_scheduler, shutdown_scheduler

__all__ = ["setup_scheduler", "shutdown_scheduler"]
