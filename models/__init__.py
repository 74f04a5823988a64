"""
Models package initialization.
"""

from .active_connection import ActiveConnection
from .base import Base, BaseModel
from .connection_request import ConnectionRequest, RequestStatus
from .message import Message
from .profile import Profile, ProfileRole

__all__ = [
    "Base",
    "BaseModel",
    "Profile",
    "ProfileRole",
    # Connect models
    "ConnectionRequest",
    "RequestStatus",
    "ActiveConnection",
    "Message",
]
