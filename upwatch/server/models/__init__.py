"""Database models for the Upwatch monitoring engine."""

from upwatch.server.models.base import Base, BaseModel
from upwatch.server.models.incident import Incident
from upwatch.server.models.monitor import AlertRecipient, Monitor, MonitorLog, MonitorResult
from upwatch.server.models.user import User

__all__ = [
    "Base",
    "BaseModel",
    "User",
    "Monitor",
    "AlertRecipient",
    "MonitorResult",
    "MonitorLog",
    "Incident",
]
