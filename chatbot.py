# chatbot.py
"""
Kwasu Lost & Found WhatsApp bot (Twilio webhook).

- Report lost items, report found items (photo + details), search, my reports.
- Claimed/recovered updates gated by per-report verification codes.
- Sessions expire after SESSION_MAX_AGE_SECONDS, swept every SESSION_SWEEP_SECONDS.
- Integrates with:
    - db_io.py (DocumentStore, ReportStore, SessionManager)
    - dialog.py (DialogEngine, Conversation)
    - media.py (MediaIngestor)
    - whatsapp_messaging.TwilioWhatsAppClient
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from mangum import Mangum
from starlette.concurrency import run_in_threadpool

from db_io import ReportStore, SessionManager, build_document_store, iso_timestamp, now_ts
from dialog import Conversation, DialogEngine, InboundMessage
from media import MediaIngestor, image_byte_limit
from whatsapp_messaging import TWIML_CONTENT_TYPE, TwilioWhatsAppClient, extract_media

# --- Configuration & logging ---
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("lostfound.chatbot")

# Environment / defaults
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
STORE_BACKEND = os.getenv("STORE_BACKEND", "dynamodb")
TABLE_PREFIX = os.getenv("TABLE_PREFIX", "lostfound_")
AWS_REGION = os.getenv("AWS_REGION", "eu-west-1")
MATCH_MODE = os.getenv("MATCH_MODE", "weighted")
SEARCH_MODE = os.getenv("SEARCH_MODE", "exact")
SEARCH_SCOPE = os.getenv("SEARCH_SCOPE", "found")
IMAGE_INTAKE_ENABLED = bool(int(os.getenv("IMAGE_INTAKE_ENABLED", "1")))
MEDIA_TIMEOUT_SECONDS = float(os.getenv("MEDIA_TIMEOUT_SECONDS", "20"))
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(image_byte_limit(STORE_BACKEND))))
SESSION_MAX_AGE_SECONDS = float(os.getenv("SESSION_MAX_AGE_SECONDS", "600"))
SESSION_SWEEP_SECONDS = float(os.getenv("SESSION_SWEEP_SECONDS", "300"))
ENABLE_DEBUG_ENDPOINTS = bool(int(os.getenv("ENABLE_DEBUG_ENDPOINTS", "0")))

GENERIC_ERROR_REPLY = "⚠️ Sorry, something went wrong on our side. Please try again in a moment."

# ---------------------------------------------------------------------------
# Stores & services
# ---------------------------------------------------------------------------

document_store = build_document_store(STORE_BACKEND, TABLE_PREFIX, AWS_REGION)
report_store = ReportStore(document_store)
session_manager = SessionManager(document_store)

messenger = TwilioWhatsAppClient(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
media_ingestor = MediaIngestor(messenger, timeout=MEDIA_TIMEOUT_SECONDS, max_bytes=MAX_IMAGE_BYTES)

dialog_engine = DialogEngine(
    report_store,
    media_ingestor,
    match_mode=MATCH_MODE,
    search_mode=SEARCH_MODE,
    search_scope=SEARCH_SCOPE,
    image_intake=IMAGE_INTAKE_ENABLED,
)
conversation = Conversation(session_manager, dialog_engine)


class SessionSweeper:
    """Background thread deleting sessions older than max_age every interval seconds."""

    def __init__(self, sessions: SessionManager, interval: float, max_age: float):
        self.sessions = sessions
        self.interval = interval
        self.max_age = max_age
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> List[str]:
        try:
            return self.sessions.sweep_expired(now_ts(), self.max_age)
        except Exception:
            logger.exception("Session sweep failed")
            return []

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-sweeper", daemon=True)
        self._thread.start()
        logger.info("Session sweeper started (every %ss, max age %ss)", self.interval, self.max_age)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None


session_sweeper = SessionSweeper(session_manager, SESSION_SWEEP_SECONDS, SESSION_MAX_AGE_SECONDS)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    session_sweeper.start()
    try:
        yield
    finally:
        session_sweeper.stop()


app = FastAPI(title="Kwasu Lost And Found Bot", version="1.0.0", lifespan=lifespan)
_lambda_adapter = Mangum(app, lifespan="off")

# ---------------------------------------------------------------------------
# Main message handler
# ---------------------------------------------------------------------------


def handle_incoming_message(message: InboundMessage) -> List[str]:
    """Run one dialog turn. Never raises: failures become a generic reply and the session is left as it was."""
    try:
        replies = conversation.respond(message)
    except Exception:
        logger.exception("Failed to handle message from %s", message.sender)
        return [GENERIC_ERROR_REPLY]
    return replies or [GENERIC_ERROR_REPLY]


# ---------------------------------------------------------------------------
# Webhook endpoints
# ---------------------------------------------------------------------------


@app.post("/whatsapp")
@app.post("/webhook")
async def receive_webhook(request: Request):
    form = {key: str(value) for key, value in (await request.form()).items()}
    sender = form.get("From")
    if not sender:
        logger.warning("Webhook call without a sender, ignoring")
        return Response(content=messenger.build_reply([]), media_type=TWIML_CONTENT_TYPE)
    message = InboundMessage(sender=sender, body=form.get("Body", ""), media=extract_media(form))
    logger.info("[%s] Received: %r (media=%d)", sender, message.body, len(message.media))
    replies = await run_in_threadpool(handle_incoming_message, message)
    return Response(content=messenger.build_reply(replies), media_type=TWIML_CONTENT_TYPE)


@app.get("/")
@app.get("/healthz")
def healthcheck():
    return {
        "status": "ok",
        "timestamp": iso_timestamp(),
        "store_backend": document_store.backend,
        "media_auth_enabled": messenger.enabled,
    }


@app.get("/debug/reports")
def debug_reports():
    # no auth: keep ENABLE_DEBUG_ENDPOINTS off in deployments
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not Found")
    return [
        {
            "id": report.id,
            "type": report.type,
            "item": report.item,
            "location": report.location,
            "has_image": report.has_image,
        }
        for report in report_store.all()
    ]


# ---------------------------------------------------------------------------
# Local runner
# ---------------------------------------------------------------------------

def run():
    import uvicorn
    uvicorn.run("chatbot:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)), reload=bool(int(os.environ.get("RELOAD", "0"))))


def lambda_handler(event, context):
    return _lambda_adapter(event, context)


if __name__ == "__main__":
    run()
