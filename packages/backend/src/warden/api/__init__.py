"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Health and the sign-in routes are open. Email and admin routes
declare their own principal / permission dependencies per handler, since
different admin actions need different permissions.
"""

from fastapi import APIRouter

from warden.api.admin import router as admin_router
from warden.api.auth import router as auth_router
from warden.api.emails import router as emails_router
from warden.api.health import router as health_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(emails_router, tags=["emails"])
api_router.include_router(admin_router, tags=["admin"])
