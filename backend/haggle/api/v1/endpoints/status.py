"""
Status and health check endpoints.

WHAT: Health monitoring for the database and the agent's LLM provider
WHY: Quick diagnostics for the marketplace frontend and ops
HOW: FastAPI endpoints calling provider ping and DB ping
"""

from fastapi import APIRouter

from ....llm.provider_factory import get_provider
from ....llm.types import ProviderError
from ....core.database import ping_database
from ....core.config import settings
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


async def _agent_status() -> dict:
    """Ping the configured provider; a disabled agent is reported, not pinged."""
    if not settings.AGENT_ENABLED:
        return {"enabled": False, "available": False, "provider": settings.LLM_PROVIDER, "error": None}

    try:
        provider = get_provider()
        llm_status = await provider.ping()
    except (ProviderError, ValueError) as e:
        logger.error(f"Failed to get LLM status: {e}")
        return {"enabled": True, "available": False, "provider": settings.LLM_PROVIDER, "error": str(e)}

    return {
        "enabled": True,
        "available": llm_status.available,
        "provider": settings.LLM_PROVIDER,
        "base_url": llm_status.base_url,
        "models": llm_status.models,
        "error": llm_status.error
    }


@router.get("/status")
async def service_status():
    """
    Check service dependencies.

    WHAT: Database and agent provider health
    WHY: The negotiation core works without the agent; the database is required
    HOW: Database ping decides overall health, agent status is informational

    Returns:
        JSON with overall status and component details
    """
    db_status = ping_database()
    agent_status = await _agent_status()

    if not db_status["available"]:
        overall = "unhealthy"
    elif agent_status["enabled"] and not agent_status["available"]:
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": db_status,
            "agent": agent_status
        }
    }
