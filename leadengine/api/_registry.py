"""
Centralized router registry for all API endpoints
"""
from . import (
    conversations,
    moderation,
    tracking,
)

ROUTERS = [
    moderation.router,
    conversations.router,
    tracking.router,
]
