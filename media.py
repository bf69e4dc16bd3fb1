# media.py
"""
Download the first image attached to an inbound message and encode it as a data URI.
"""
from __future__ import annotations

import base64
import logging
from typing import List, Sequence

import requests

from whatsapp_messaging import MediaAttachment, MediaTooLargeError, TwilioWhatsAppClient

logger = logging.getLogger("lostfound.media")

DEFAULT_TIMEOUT_SECONDS = 20.0
MAX_IMAGE_BYTES = 5 * 1024 * 1024
# DynamoDB items stop at 400 KB and base64 adds a third
DYNAMO_MAX_IMAGE_BYTES = 280 * 1024


def image_byte_limit(store_backend: str) -> int:
    if store_backend == "dynamodb":
        return DYNAMO_MAX_IMAGE_BYTES
    return MAX_IMAGE_BYTES


class MediaError(Exception):
    """Base class for media ingestion failures surfaced to the sender."""

    message_key = "image_error"


class NoImageAttachmentError(MediaError):
    message_key = "image_not_image"


class MediaTimeoutError(MediaError):
    message_key = "image_timeout"


class MediaNotFoundError(MediaError):
    message_key = "image_not_found"


class EmptyMediaError(MediaError):
    message_key = "image_empty"


class MediaProcessingError(MediaError):
    message_key = "image_error"


class ImageTooLargeError(MediaProcessingError):
    message_key = "image_too_large"


def first_image(attachments: Sequence[MediaAttachment]) -> MediaAttachment:
    for attachment in attachments:
        if (attachment.content_type or "").lower().startswith("image/"):
            return attachment
    raise NoImageAttachmentError("no image/* attachment in message")


def to_data_uri(content: bytes, content_type: str) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type};base64,{encoded}"


def _mime(content_type: str) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class MediaIngestor:
    def __init__(self, client: TwilioWhatsAppClient, timeout: float = DEFAULT_TIMEOUT_SECONDS, max_bytes: int = MAX_IMAGE_BYTES):
        self.client = client
        self.timeout = timeout
        self.max_bytes = max_bytes

    def ingest(self, attachments: List[MediaAttachment]) -> str:
        attachment = first_image(attachments)
        try:
            fetched = self.client.fetch_media(attachment.url, timeout=self.timeout, max_bytes=self.max_bytes)
        except requests.Timeout as exc:
            logger.warning("Media download timed out after %ss: %s", self.timeout, attachment.url)
            raise MediaTimeoutError(str(exc)) from exc
        except MediaTooLargeError as exc:
            logger.info("Media over %d bytes rejected: %s", self.max_bytes, attachment.url)
            raise ImageTooLargeError(str(exc)) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status == 404:
                raise MediaNotFoundError(str(exc)) from exc
            raise MediaProcessingError(str(exc)) from exc
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as exc:
            raise MediaNotFoundError(str(exc)) from exc
        except requests.RequestException as exc:
            logger.exception("Media download failed: %s", attachment.url)
            raise MediaProcessingError(str(exc)) from exc

        if not fetched.content:
            raise EmptyMediaError("media payload is empty")
        if len(fetched.content) > self.max_bytes:
            raise ImageTooLargeError(f"media payload exceeds {self.max_bytes} bytes")

        served_type = _mime(fetched.content_type)
        if served_type and not served_type.startswith("image/"):
            raise NoImageAttachmentError(f"media served as {served_type}")
        content_type = served_type or _mime(attachment.content_type)
        logger.info("Ingested %s image (%d bytes)", content_type, len(fetched.content))
        return to_data_uri(fetched.content, content_type)
