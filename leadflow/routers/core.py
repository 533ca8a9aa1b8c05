from fastapi import APIRouter

router = APIRouter(tags=["Core"])


# GET /
# Gets: nothing
# Returns: basic API metadata and a map of key endpoints
# Example:
#   curl http://localhost:8000/
@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "LeadFlow API - WhatsApp lead qualification and appointment booking",
        "version": "1.0.0",
        "description": "Qualifies inbound WhatsApp leads with an AI assistant and books store visits",
        "endpoints": {
            "simulate": "/simulate",
            "conversations": "/conversations",
            "appointments": "/appointments",
            "appointments_today": "/appointments/today",
            "stats": "/stats",
            "whatsapp_webhook": "/whatsapp/webhook",
            "whatsapp_status": "/whatsapp/status",
            "health": "/health",
            "metrics": "/metrics",
        },
        "features": [
            "AI lead qualification (OpenAI / Gemini with fallback)",
            "Appointment booking against the store calendar",
            "Human takeover of conversations",
            "Automatic follow-ups and no-show recovery",
            "Offline message queue",
        ],
    }
