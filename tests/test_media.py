import base64
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from conftest import PNG_BYTES, FakeMediaClient
from media import (
    DYNAMO_MAX_IMAGE_BYTES,
    MAX_IMAGE_BYTES,
    EmptyMediaError,
    ImageTooLargeError,
    MediaIngestor,
    MediaNotFoundError,
    MediaProcessingError,
    MediaTimeoutError,
    NoImageAttachmentError,
    image_byte_limit,
    to_data_uri,
)
from whatsapp_messaging import MediaAttachment, MediaTooLargeError, TwilioWhatsAppClient, extract_media

IMAGE = MediaAttachment(url="https://api.twilio.com/media/ME1", content_type="image/png")
DYNAMO_ITEM_LIMIT = 400 * 1024


def http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


def test_ingest_first_image_as_data_uri():
    client = FakeMediaClient()
    audio = MediaAttachment(url="https://api.twilio.com/media/ME0", content_type="audio/ogg")
    data_uri = MediaIngestor(client, timeout=20).ingest([audio, IMAGE])
    assert data_uri == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")
    assert client.calls == [(IMAGE.url, 20)]


@pytest.mark.parametrize(
    "error, expected",
    [
        (requests.Timeout("read timed out"), MediaTimeoutError),
        (requests.exceptions.ConnectTimeout("connect timed out"), MediaTimeoutError),
        (http_error(404), MediaNotFoundError),
        (requests.exceptions.MissingSchema("no schema"), MediaNotFoundError),
        (http_error(500), MediaProcessingError),
        (requests.ConnectionError("reset"), MediaProcessingError),
        (MediaTooLargeError("too big"), ImageTooLargeError),
    ],
)
def test_ingest_failure_classes(error, expected):
    with pytest.raises(expected):
        MediaIngestor(FakeMediaClient(error=error)).ingest([IMAGE])


def test_ingest_rejects_empty_and_oversized_payloads():
    with pytest.raises(EmptyMediaError):
        MediaIngestor(FakeMediaClient(content=b"")).ingest([IMAGE])
    with pytest.raises(ImageTooLargeError):
        MediaIngestor(FakeMediaClient(content=b"x" * 11), max_bytes=10).ingest([IMAGE])


def test_ingest_requires_an_image_attachment():
    client = FakeMediaClient()
    with pytest.raises(NoImageAttachmentError):
        MediaIngestor(client).ingest([MediaAttachment(url="https://x/doc", content_type="application/pdf")])
    assert client.calls == []


def test_ingest_trusts_the_served_content_type():
    with pytest.raises(NoImageAttachmentError):
        MediaIngestor(FakeMediaClient(content=b"<html>", content_type="text/html; charset=utf-8")).ingest([IMAGE])

    data_uri = MediaIngestor(FakeMediaClient(content_type="image/JPEG; charset=binary")).ingest([IMAGE])
    assert data_uri.startswith("data:image/jpeg;base64,")

    data_uri = MediaIngestor(FakeMediaClient(content_type="")).ingest([IMAGE])
    assert data_uri.startswith("data:image/png;base64,")


def test_image_limit_fits_a_dynamodb_item():
    assert image_byte_limit("dynamodb") == DYNAMO_MAX_IMAGE_BYTES
    assert image_byte_limit("memory") == MAX_IMAGE_BYTES
    data_uri = to_data_uri(b"\xff" * DYNAMO_MAX_IMAGE_BYTES, "image/jpeg")
    assert len(data_uri.encode("ascii")) < DYNAMO_ITEM_LIMIT


def test_extract_media_from_twilio_form():
    form = {
        "NumMedia": "2",
        "MediaUrl0": "https://api.twilio.com/media/ME0",
        "MediaContentType0": "image/jpeg",
        "MediaUrl1": "https://api.twilio.com/media/ME1",
        "MediaContentType1": "image/png",
    }
    assert extract_media(form) == [
        MediaAttachment("https://api.twilio.com/media/ME0", "image/jpeg"),
        MediaAttachment("https://api.twilio.com/media/ME1", "image/png"),
    ]
    assert extract_media({"NumMedia": "abc"}) == []
    assert extract_media({}) == []


def test_build_reply_wraps_messages():
    xml = TwilioWhatsAppClient(None, None).build_reply(["one", "two & three"])
    assert xml.count("<Message>") == 2
    assert "two &amp; three" in xml


class _FakeResponse:
    def __init__(self, status_code, content=b"", headers=None, chunks=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.text = ""
        self.chunks = chunks if chunks is not None else [content]
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.closed = True

    @property
    def ok(self):
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code}", response=self)

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if chunk:
                yield chunk


def test_fetch_media_uses_basic_auth(monkeypatch):
    seen = {}

    def fake_get(url, auth=None, timeout=None, stream=False):
        seen.update(url=url, auth=auth, timeout=timeout, stream=stream)
        return _FakeResponse(200, PNG_BYTES, {"Content-Type": "image/png"})

    monkeypatch.setattr(requests, "get", fake_get)
    fetched = TwilioWhatsAppClient("AC123", "secret").fetch_media(IMAGE.url, timeout=20)
    assert fetched.content == PNG_BYTES
    assert fetched.content_type == "image/png"
    assert seen == {"url": IMAGE.url, "auth": ("AC123", "secret"), "timeout": 20, "stream": True}


def test_fetch_media_raises_on_404(monkeypatch):
    monkeypatch.setattr(requests, "get", lambda url, auth=None, timeout=None, stream=False: _FakeResponse(404))
    with pytest.raises(MediaNotFoundError):
        MediaIngestor(TwilioWhatsAppClient("AC123", "secret")).ingest([IMAGE])


def test_fetch_media_stops_reading_past_max_bytes(monkeypatch):
    response = _FakeResponse(200, headers={"Content-Type": "image/png"}, chunks=[b"x" * 8, b"x" * 8, b"x" * 8])
    monkeypatch.setattr(requests, "get", lambda url, auth=None, timeout=None, stream=False: response)
    with pytest.raises(MediaTooLargeError):
        TwilioWhatsAppClient(None, None).fetch_media(IMAGE.url, timeout=5, max_bytes=10)
    assert response.closed

    with pytest.raises(ImageTooLargeError):
        MediaIngestor(TwilioWhatsAppClient(None, None), timeout=5, max_bytes=10).ingest([IMAGE])


class _TrickleHandler(BaseHTTPRequestHandler):
    """Serves a six byte image one byte at a time, slower than the client's deadline."""

    delay = 0.4

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "image/png")
        self.send_header("Content-Length", "6")
        self.end_headers()
        try:
            for _ in range(6):
                self.wfile.write(b"x")
                self.wfile.flush()
                time.sleep(self.delay)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickle_url():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TrickleHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/media/ME1"
    server.shutdown()
    server.server_close()


def test_slow_download_times_out_on_wall_clock(trickle_url):
    ingestor = MediaIngestor(TwilioWhatsAppClient(None, None), timeout=1.0)
    attachment = MediaAttachment(url=trickle_url, content_type="image/png")

    started = time.monotonic()
    with pytest.raises(MediaTimeoutError):
        ingestor.ingest([attachment])
    assert time.monotonic() - started < 1.8
