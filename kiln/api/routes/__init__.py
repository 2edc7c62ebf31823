"""
API routes module.
"""

from kiln.api.routes.health import router as health_router
from kiln.api.routes.remote import router as remote_router
from kiln.api.routes.tasks import router as tasks_router

__all__ = ["tasks_router", "remote_router", "health_router"]
