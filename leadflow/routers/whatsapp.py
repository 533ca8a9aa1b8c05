from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import Response
from twilio.twiml.messaging_response import MessagingResponse

from leadflow.logging_config import logger
from leadflow.runtime import Runtime, get_runtime
from leadflow.security import verify_api_key, verify_twilio_signature

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])


def normalize_sender(raw: str) -> str:
    """'whatsapp:+5511999999999' -> '5511999999999'."""
    return raw.replace("whatsapp:", "").strip().lstrip("+")


async def handle_inbound_message(runtime: Runtime, phone: str, body: str) -> None:
    """Run the turn after the webhook has answered; the reply goes out through the delivery queue."""
    try:
        await runtime.orchestrator.process_incoming_message(phone, body)
    except Exception as e:
        logger.error("inbound_message_processing_failed", phone=phone, error=str(e), exc_info=True)


# POST /whatsapp/webhook
# Gets: Twilio form fields (From, Body, MessageSid, NumMedia, ...)
# Returns: empty TwiML <Response/>; the reply is sent asynchronously
# Example:
#   curl -X POST http://localhost:8000/whatsapp/webhook \
#     -d 'From=whatsapp:+5511999999999' -d 'Body=Oi, quero vender meu carro'
@router.post("/webhook", dependencies=[Depends(verify_twilio_signature)])
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
):
    """Receive an inbound WhatsApp message from Twilio."""
    form_data = await request.form()

    sender = form_data.get("From", "")
    body = (form_data.get("Body") or "").strip()
    message_sid = form_data.get("MessageSid", "")

    # Group chats and broadcasts are not leads.
    if not sender or "@g.us" in sender or "status@broadcast" in sender:
        logger.debug("inbound_message_ignored", sender=sender)
    elif not body:
        logger.debug("inbound_message_without_text", sender=sender, message_sid=message_sid)
    else:
        phone = normalize_sender(sender)
        logger.info("whatsapp_message_received", phone=phone, length=len(body), message_sid=message_sid)
        background_tasks.add_task(handle_inbound_message, runtime, phone, body)

    return Response(content=str(MessagingResponse()), media_type="application/xml")


# GET /whatsapp/status
# Gets: optional X-API-Key header
# Returns: {status, is_ready, has_pending_auth_challenge, pending_messages}
# Example:
#   curl http://localhost:8000/whatsapp/status
@router.get("/status")
async def whatsapp_status(runtime: Runtime = Depends(get_runtime), api_key: str = Depends(verify_api_key)):
    status = runtime.transport.status()
    return {**status.model_dump(), "pending_messages": len(runtime.delivery_queue)}
