"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from taskbox.app.api.v1.endpoints import tasks

router = APIRouter()

# Outbox ops endpoints
router.include_router(tasks.router)
