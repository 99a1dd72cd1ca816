"""API routers package.

Each router handles one resource of the kanban API.
"""

from .admin_portal import router as admin_portal_router
from .boards import router as boards_router
from .columns import router as columns_router
from .instance_portal import router as instance_portal_router
from .tasks import router as tasks_router

__all__ = [
    "admin_portal_router",
    "boards_router",
    "columns_router",
    "instance_portal_router",
    "tasks_router",
]
