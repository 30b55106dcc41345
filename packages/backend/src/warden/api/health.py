"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running, the
identity store is reachable, and the role table has been loaded.
"""

from fastapi import APIRouter
from sqlalchemy import text

from warden import __version__
from warden.db import engine as db_engine
from warden.services import permission_resolver

router = APIRouter()


@router.get("/health")
async def health_check():
    """Check server health and store connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        async with db_engine.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"

    checks["role_table"] = (
        "ok" if permission_resolver._role_table is not None else "not loaded"
    )

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
