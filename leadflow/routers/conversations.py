from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from leadflow.database import get_db
from leadflow.db_models import ConversationStatus
from leadflow.logging_config import logger
from leadflow.models import (
    AppointmentOut,
    ConversationDetail,
    ConversationOut,
    HumanMessageRequest,
    MessageOut,
    SimulateRequest,
    SimulateResponse,
    TransferRequest,
)
from leadflow.orchestrator import ConversationNotFound
from leadflow.runtime import Runtime, get_runtime
from leadflow.security import verify_api_key
from leadflow.services import AppointmentService, ConversationService, MessageService, StatsService

router = APIRouter(tags=["Conversations"])


# POST /simulate
# Gets: JSON body SimulateRequest {phone, message, force?}
# Returns: SimulateResponse with the bot reply (nothing is sent over WhatsApp)
# Example:
#   curl -X POST http://localhost:8000/simulate -H 'Content-Type: application/json' \
#     -d '{"phone":"5511999999999","message":"Oi, quero avaliar meu carro","force":true}'
@router.post("/simulate", response_model=SimulateResponse)
async def simulate(request: SimulateRequest, runtime: Runtime = Depends(get_runtime)):
    """Run a full conversation turn for a fake inbound message."""
    if not request.phone.strip() or not request.message.strip():
        raise HTTPException(status_code=400, detail="Missing required fields: phone, message")

    logger.info("simulating_incoming_message", phone=request.phone, force=request.force)
    reply = await runtime.orchestrator.process_incoming_message(
        request.phone, request.message, bypass_hours_gate=request.force, deliver=False
    )
    return SimulateResponse(success=True, phone=request.phone, incoming_message=request.message, bot_response=reply)


# GET /conversations
# Gets: optional X-API-Key header
# Returns: {count, conversations: [ConversationOut]} for active conversations
# Example:
#   curl -H 'X-API-Key: <key>' http://localhost:8000/conversations
@router.get("/conversations")
def list_conversations(db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    conversations = ConversationService.list_active(db)
    return {
        "count": len(conversations),
        "conversations": [ConversationOut.model_validate(c) for c in conversations],
    }


# GET /conversations/{phone}
# Gets: path param phone, optional X-API-Key header
# Returns: ConversationDetail of the active conversation (or the latest one) with its last 50 messages
# Example:
#   curl -H 'X-API-Key: <key>' http://localhost:8000/conversations/5511999999999
@router.get("/conversations/{phone}", response_model=ConversationDetail)
def get_conversation(phone: str, db: Session = Depends(get_db), api_key: str = Depends(verify_api_key)):
    conversations = ConversationService.list_by_phone(db, phone)
    if not conversations:
        raise HTTPException(status_code=404, detail="No conversations found for this phone number")

    conversation = next((c for c in conversations if c.status == ConversationStatus.ACTIVE), conversations[0])
    messages = MessageService.recent_messages(db, conversation.id, 50)

    return ConversationDetail(
        **ConversationOut.model_validate(conversation).model_dump(),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


# POST /conversations/{phone}/transfer
# Gets: path param phone, JSON body TransferRequest {agent_name?}, optional X-API-Key header
# Returns: {success, message, mode, assigned_to}
# Example:
#   curl -X POST http://localhost:8000/conversations/5511999999999/transfer \
#     -H 'Content-Type: application/json' -d '{"agent_name":"Carlos"}'
@router.post("/conversations/{phone}/transfer")
async def transfer_conversation(
    phone: str,
    request: Optional[TransferRequest] = None,
    runtime: Runtime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    agent_name = (request.agent_name if request else None) or "Atendente"
    try:
        transferred = await runtime.orchestrator.transfer_to_human(phone, agent_name)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="No active conversation found")

    if not transferred:
        return {"success": True, "message": "Conversation is already in human mode"}
    return {
        "success": True,
        "message": f"Conversation transferred to {agent_name}",
        "mode": "human",
        "assigned_to": agent_name,
    }


# POST /conversations/{phone}/messages
# Gets: path param phone, JSON body HumanMessageRequest {message, agent_name?}, optional X-API-Key header
# Returns: {success, message}
# Example:
#   curl -X POST http://localhost:8000/conversations/5511999999999/messages \
#     -H 'Content-Type: application/json' -d '{"message":"Oi! Aqui é o Carlos.","agent_name":"Carlos"}'
@router.post("/conversations/{phone}/messages")
async def send_human_message(
    phone: str,
    request: HumanMessageRequest,
    runtime: Runtime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Missing required field: message")
    try:
        await runtime.orchestrator.send_human_message(phone, request.message, request.agent_name)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="No active conversation found")
    return {"success": True, "message": "Message sent and recorded"}


# POST /conversations/{phone}/return-to-ai
# Gets: path param phone, optional X-API-Key header
# Returns: {success, message}
# Example:
#   curl -X POST http://localhost:8000/conversations/5511999999999/return-to-ai
@router.post("/conversations/{phone}/return-to-ai")
async def return_to_ai(phone: str, runtime: Runtime = Depends(get_runtime), api_key: str = Depends(verify_api_key)):
    try:
        await runtime.orchestrator.return_to_ai(phone)
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="No active conversation found")
    return {"success": True, "message": "Conversation returned to AI mode"}


# GET /appointments?on_date=2026-10-20
# Gets: optional query param on_date (YYYY-MM-DD), optional X-API-Key header
# Returns: {count, appointments: [AppointmentOut]}
# Example:
#   curl http://localhost:8000/appointments
@router.get("/appointments")
def list_appointments(
    on_date: Optional[date] = None,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    appointments = AppointmentService.list_appointments(db, on_date=on_date)
    return {
        "count": len(appointments),
        "appointments": [AppointmentOut.model_validate(a) for a in appointments],
    }


# GET /appointments/today
# Gets: optional X-API-Key header
# Returns: {date, count, appointments: [AppointmentOut]}
# Example:
#   curl http://localhost:8000/appointments/today
@router.get("/appointments/today")
def list_today_appointments(
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
    api_key: str = Depends(verify_api_key),
):
    today = runtime.orchestrator.clock().date()
    appointments = AppointmentService.list_today(db, today=today)
    return {
        "date": today.isoformat(),
        "count": len(appointments),
        "appointments": [AppointmentOut.model_validate(a) for a in appointments],
    }


# GET /stats
# Gets: optional X-API-Key header
# Returns: lead, appointment, conversion and message counters
# Example:
#   curl http://localhost:8000/stats
@router.get("/stats")
def stats(db: Session = Depends(get_db), runtime: Runtime = Depends(get_runtime), api_key: str = Depends(verify_api_key)):
    return StatsService.summary(db, today=runtime.orchestrator.clock().date())
