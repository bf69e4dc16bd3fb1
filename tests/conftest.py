import os

# chatbot.py reads its configuration at import time
os.environ["STORE_BACKEND"] = "memory"
os.environ["ENABLE_DEBUG_ENDPOINTS"] = "1"
os.environ.pop("TWILIO_ACCOUNT_SID", None)
os.environ.pop("TWILIO_AUTH_TOKEN", None)

from datetime import datetime, timezone

import pytest

from db_io import InMemoryDocumentStore, Report, ReportStore, SessionManager
from dialog import Conversation, DialogEngine
from media import MediaIngestor
from whatsapp_messaging import FetchedMedia

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
SENDER = "whatsapp:+2348011111111"
OTHER_SENDER = "whatsapp:+2348022222222"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-bytes"


class FakeMediaClient:
    def __init__(self, content=PNG_BYTES, error=None, content_type="image/png"):
        self.content = content
        self.error = error
        self.content_type = content_type
        self.calls = []

    def fetch_media(self, url, timeout, max_bytes=None):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return FetchedMedia(content=self.content, content_type=self.content_type)


def make_report(report_type="found", item="Keys", location="Cafeteria", reporter=OTHER_SENDER, **kwargs):
    defaults = {
        "description": "No description",
        "timestamp": FIXED_NOW.isoformat(),
        "verification_code": "QWE123",
    }
    if report_type == "found":
        defaults["contact_phone"] = "08012345678"
    defaults.update(kwargs)
    return Report(type=report_type, item=item, location=location, reporter=reporter, **defaults)


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def report_store(store):
    return ReportStore(store)


@pytest.fixture
def sessions(store):
    return SessionManager(store)


@pytest.fixture
def media_client():
    return FakeMediaClient()


@pytest.fixture
def engine_factory(report_store, media_client):
    def build(**overrides):
        options = {
            "clock": lambda: FIXED_NOW,
            "code_factory": lambda: "ABC123",
        }
        options.update(overrides)
        return DialogEngine(report_store, MediaIngestor(media_client, timeout=20), **options)

    return build


@pytest.fixture
def engine(engine_factory):
    return engine_factory()


@pytest.fixture
def conversation(sessions, engine):
    return Conversation(sessions, engine)
