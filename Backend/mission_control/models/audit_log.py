"""Audit log ORM model (SQLAlchemy), used by the database audit backend."""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from mission_control.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    # insertion order; newest-first queries sort on this, not on timestamp
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    username = Column(String(100), nullable=True)
    action = Column(String(64), nullable=False, index=True)
    resource = Column(String(255), nullable=False)
    result = Column(String(20), nullable=False, index=True)
    details = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)


Index("ix_audit_logs_user_action_ts", AuditLog.user_id, AuditLog.action, AuditLog.timestamp)
