# whatsapp_messaging.py
"""
Twilio WhatsApp helper.

Provides:
- build_reply: wrap reply texts in TwiML <Message> elements
- fetch_media: authenticated download of an inbound media URL

Twilio media URLs look like:
https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages/{message_sid}/Media/{media_sid}
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from twilio.twiml.messaging_response import MessagingResponse

logger = logging.getLogger("whatsapp_messaging")

TWIML_CONTENT_TYPE = "application/xml"
CHUNK_SIZE = 16 * 1024


class MediaTooLargeError(Exception):
    """Raised when a media download grows past the caller's byte limit."""


@dataclass
class MediaAttachment:
    url: str
    content_type: str = ""


@dataclass
class FetchedMedia:
    content: bytes
    content_type: str


def extract_media(form: Dict[str, str]) -> List[MediaAttachment]:
    try:
        count = int(form.get("NumMedia") or 0)
    except ValueError:
        count = 0
    attachments = []
    for idx in range(count):
        url = form.get(f"MediaUrl{idx}")
        if url:
            attachments.append(MediaAttachment(url=url, content_type=form.get(f"MediaContentType{idx}", "")))
    return attachments


class TwilioWhatsAppClient:
    def __init__(self, account_sid: Optional[str], auth_token: Optional[str]):
        self.account_sid = account_sid
        self.auth_token = auth_token

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    def build_reply(self, texts: List[str]) -> str:
        response = MessagingResponse()
        for text in texts:
            response.message(text)
        return str(response)

    def fetch_media(self, url: str, timeout: float, max_bytes: Optional[int] = None) -> FetchedMedia:
        """Download url within timeout seconds of wall-clock time.

        The transfer runs on a daemon thread that is abandoned once the deadline
        passes. Raises requests.Timeout past the deadline and MediaTooLargeError
        past max_bytes.
        """
        deadline = time.monotonic() + timeout
        outcome: Dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["media"] = self._download(url, timeout, deadline, max_bytes)
            except Exception as exc:
                outcome["error"] = exc

        thread = threading.Thread(target=worker, name="media-download", daemon=True)
        thread.start()
        thread.join(timeout)
        if thread.is_alive():
            logger.error("Media fetch exceeded %ss: %s", timeout, url)
            raise requests.Timeout(f"media download exceeded {timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["media"]

    def _download(self, url: str, timeout: float, deadline: float, max_bytes: Optional[int]) -> FetchedMedia:
        # Twilio serves media behind basic auth unless the account disables it
        auth = (self.account_sid, self.auth_token) if self.enabled else None
        if not self.enabled:
            logger.info("[dry-run] fetching media without credentials: %s", url)
        with requests.get(url, auth=auth, timeout=timeout, stream=True) as response:
            if not response.ok:
                logger.error("Media fetch failed - status=%s url=%s", response.status_code, url)
                response.raise_for_status()
            chunks: List[bytes] = []
            received = 0
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise requests.Timeout(f"media download exceeded {timeout}s")
                received += len(chunk)
                if max_bytes is not None and received > max_bytes:
                    raise MediaTooLargeError(f"media payload exceeds {max_bytes} bytes")
                chunks.append(chunk)
            return FetchedMedia(content=b"".join(chunks), content_type=response.headers.get("Content-Type", ""))
