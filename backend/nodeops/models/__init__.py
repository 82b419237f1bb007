"""Database models."""
from nodeops.models.restart_run import RestartRun

__all__ = ["RestartRun"]
