"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.linking import router as linking_router

__all__ = [
    "linking_router",
]
