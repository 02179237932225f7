from __future__ import annotations

from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from paperkeep.core.db import db_session
from paperkeep.core.logging import get_logger, log_event
from paperkeep.modules.inbound.service import InboundMessage, route_inbound_message
from paperkeep.worker.tasks import poke_extraction_worker

router = APIRouter(tags=["inbound"])
logger = get_logger(__name__)

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def twiml_message(text: str) -> Response:
    body = (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message><Body>{escape(text, _XML_ENTITIES)}</Body></Message></Response>"
    )
    return Response(content=body, media_type="application/xml")


def _field(form, *names: str) -> str:
    for name in names:
        value = form.get(name)
        if isinstance(value, str) and value:
            return value
    return ""


@router.get("/webhooks/incoming")
def incoming_webhook_health() -> dict[str, object]:
    return {"ok": True, "message": "Webhook expects POST with a Twilio incoming message body."}


@router.post("/webhooks/incoming")
async def incoming_webhook(request: Request, session: Session = Depends(db_session)) -> Response:
    form = await request.form()
    try:
        num_media = int(_field(form, "NumMedia", "numMedia") or "0")
    except ValueError:
        num_media = 0
    media_url = _field(form, "MediaUrl0", "mediaUrl0") if num_media > 0 else ""
    message = InboundMessage(
        sender=_field(form, "From", "from"),
        recipient=_field(form, "To", "to"),
        body=_field(form, "Body", "body").strip(),
        media_url=media_url or None,
        media_content_type=_field(form, "MediaContentType0", "mediaContentType0") or None,
    )
    log_event(
        logger,
        "inbound.webhook.received",
        num_media=num_media,
        has_media=message.has_media,
        body_chars=len(message.body),
    )
    reply = route_inbound_message(session, message)
    if reply.kind == "document_created":
        poke_extraction_worker(reason="inbound")
    return twiml_message(reply.text)
