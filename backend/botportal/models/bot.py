"""
Read-only views of the tenant/bot catalogue.
"""
from sqlalchemy import Column, Float, JSON, String, UniqueConstraint

from ..database import Base


class Bot(Base):
    __tablename__ = "bots"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="active")

    # Per-bot overrides for the agent call
    webhook_url = Column(String(1000), nullable=True)
    webhook_headers = Column(JSON, default=dict)
    timeout_seconds = Column(Float, nullable=True)

    def __repr__(self):
        return f"<Bot(id={self.id}, name={self.name})>"


class BotAccess(Base):
    __tablename__ = "bot_access"
    __table_args__ = (UniqueConstraint("tenant_id", "bot_id", name="uq_bot_access_tenant_bot"),)

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    bot_id = Column(String(36), nullable=False, index=True)
