"""
Status and health check endpoints.

WHAT: Health monitoring for the database and configured collaborators
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoint calling the DB ping and reading provider settings
"""

from fastapi import APIRouter

from ....core.database import ping_database
from ....core.config import settings
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/system/health")
def health_check():
    """
    Overall application health check.

    WHAT: Database status plus configured collaborator providers and version
    WHY: Ops and monitoring tools need simple health endpoint
    HOW: Ping the database; collaborators are reported as configured

    Returns:
        JSON with overall health status
    """
    db_status = ping_database()
    db_available = db_status["available"]
    if not db_available:
        logger.error(f"Health check database failed: {db_status['error']}")

    return {
        "status": "healthy" if db_available else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": {
                "available": db_available
            },
            "payment_gateway": {
                "provider": settings.PAYMENT_PROVIDER
            },
            "user_directory": {
                "provider": settings.DIRECTORY_PROVIDER
            },
            "catalog": {
                "provider": settings.CATALOG_PROVIDER
            },
        },
        "governance_fee": {
            "amount": str(settings.GOVERNANCE_FEE_AMOUNT),
            "currency": settings.GOVERNANCE_FEE_CURRENCY
        }
    }
