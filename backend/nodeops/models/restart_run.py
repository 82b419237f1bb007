"""Restart run model for the restart audit trail."""
from sqlalchemy import Column, Integer, Boolean, DateTime, JSON
from sqlalchemy.sql import func

from nodeops.database import Base


class RestartRun(Base):
    """One selective restart and its outcome.

    Health records are never stored; only restart runs are kept so operators
    can see what was restarted after a configuration change.
    """

    __tablename__ = "restart_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requested = Column(JSON, nullable=False, default=list)  # Service names as submitted
    order = Column(JSON, nullable=False, default=list)  # Planned restart order
    restarted = Column(JSON, nullable=False, default=list)
    failed = Column(JSON, nullable=False, default=list)  # [{"service", "error"}]
    skipped = Column(JSON, nullable=False, default=list)  # [{"service", "reason"}]
    success = Column(Boolean, default=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requested": self.requested,
            "order": self.order,
            "restarted": self.restarted,
            "failed": self.failed,
            "skipped": self.skipped,
            "success": self.success,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
