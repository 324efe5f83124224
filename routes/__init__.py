"""
CurtainPoint API Route Blueprints
"""
from .jobs import jobs_bp
from .points import points_bp
from .collaborations import collaborations_bp
from .admin import admin_bp
from .notifications import notifications_bp

__all__ = [
    "jobs_bp",
    "points_bp",
    "collaborations_bp",
    "admin_bp",
    "notifications_bp",
]
