"""
Health check and monitoring endpoints for production.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from leadflow.config import config
from leadflow.database import get_db
from leadflow.logging_config import logger

router = APIRouter(tags=["Health & Monitoring"])


# GET /health
# Gets: nothing
# Returns: {status, service, version}
# Example:
#   curl http://localhost:8000/health
@router.get("/health")
async def health_check():
    """
    Basic health check - returns 200 if service is running.
    Use this for basic liveness probes.
    """
    return {
        "status": "healthy",
        "service": "leadflow",
        "version": "1.0.0"
    }


# GET /health/ready
# Gets: nothing
# Returns: dependency readiness checks; 503 when the database is unreachable
# Example:
#   curl http://localhost:8000/health/ready
@router.get("/health/ready")
def readiness_check(request: Request, db: Session = Depends(get_db)):
    """
    Readiness check - verifies the dependencies a turn needs.

    Checks:
    - Database (SELECT 1)
    - WhatsApp transport status (reported, not required: messages queue while offline)
    - AI providers (configured or not)
    """
    checks = {
        "database": False,
        "whatsapp": "not_started",
        "ai": config.has_openai_key() or config.has_gemini_key(),
        "ready": False
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_check_database", status="error", error=str(e))

    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None:
        status = runtime.transport.status()
        checks["whatsapp"] = status.status
        checks["pending_messages"] = len(runtime.delivery_queue)

    checks["ready"] = checks["database"] is True
    return JSONResponse(content=checks, status_code=200 if checks["ready"] else 503)


# GET /health/info
# Gets: nothing
# Returns: service configuration summary
# Example:
#   curl http://localhost:8000/health/info
@router.get("/health/info")
async def system_info():
    """
    System information and configuration status.
    """
    return {
        "service": "leadflow",
        "version": "1.0.0",
        "configuration": {
            "ai_provider": config.AI_PROVIDER,
            "openai_configured": config.has_openai_key(),
            "openai_model": config.OPENAI_MODEL if config.has_openai_key() else None,
            "gemini_configured": config.has_gemini_key(),
            "gemini_model": config.GEMINI_MODEL if config.has_gemini_key() else None,
            "business_hours": f"{config.BUSINESS_HOURS_START}-{config.BUSINESS_HOURS_END}",
            "working_days": config.WORKING_DAYS,
            "debug_mode": config.DEBUG
        },
        "features": {
            "ai_conversations": config.has_openai_key() or config.has_gemini_key(),
            "google_sheets": config.has_sheets_config(),
            "telegram_notifications": config.has_telegram_config(),
            "twilio_whatsapp": config.has_twilio_config(),
            "database_persistence": True,
        }
    }
