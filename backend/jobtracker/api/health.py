"""
Health check endpoint.
Verifies database connectivity.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from jobtracker.api.dependencies import get_database
from jobtracker.database import Database

router = APIRouter()


@router.get("")
async def health_check(database: Database = Depends(get_database)):
    """
    Health check endpoint.
    Returns status of the database connection.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
    }

    try:
        await database.ping()
        health_status["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        health_status["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
