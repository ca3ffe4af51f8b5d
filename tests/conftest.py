import io
import struct
import zlib
from urllib.parse import urlsplit

import bcrypt
import mongomock
import pytest
from PIL import Image

from backend.app import create_app
from backend.image_crop import to_data_url

ADMIN_EMAIL = "ops@signatureday.in"
ADMIN_PASSWORD = "correct horse battery"


def make_png_bytes(width=40, height=40, color=(200, 30, 30)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, "PNG")
    return buffer.getvalue()


def png_chunk(kind, data):
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))


def make_oversized_png(width=14000, height=14000):
    """A 1-bit PNG header declaring a huge canvas, with an empty pixel stream."""
    header = struct.pack(">IIBBBBB", width, height, 1, 0, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + png_chunk(b"IHDR", header)
        + png_chunk(b"IDAT", zlib.compress(b""))
        + png_chunk(b"IEND", b"")
    )


def make_photo(width=40, height=40, color=(200, 30, 30)):
    return to_data_url(make_png_bytes(width, height, color), "image/png")


def make_members(count, photos=None):
    photos = count if photos is None else photos
    members = []
    for index in range(count):
        member = {"id": f"m{index + 1}", "name": f"Member {index + 1}"}
        if index < photos:
            member["photo"] = make_photo(color=(index * 20 % 255, 80, 120))
        members.append(member)
    return members


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON payload")
        return self._payload


class ClientSession:
    """Routes ``requests``-style GETs into a Flask test client."""

    def __init__(self, client):
        self.client = client
        self.calls = []

    def get(self, url, timeout=None, cookies=None, headers=None, stream=False):
        self.calls.append({"url": url, "timeout": timeout, "cookies": cookies})
        parts = urlsplit(url)
        path = f"{parts.path}?{parts.query}" if parts.query else parts.path
        response = self.client.get(path)
        return FakeResponse(
            response.status_code,
            response.get_json(silent=True),
            response.get_data(as_text=True),
        )


@pytest.fixture(autouse=True)
def no_cloudinary(monkeypatch):
    for key in ("CLOUDINARY_URL", "CLOUDINARY_CLOUD_NAME"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def database():
    return mongomock.MongoClient().signatureday_test


@pytest.fixture
def app(database):
    database.users.insert_one(
        {
            "email": ADMIN_EMAIL,
            "name": "Ops",
            "password": bcrypt.hashpw(ADMIN_PASSWORD.encode("utf-8"), bcrypt.gensalt()),
            "role": "admin",
        }
    )
    database.users.insert_one(
        {
            "email": "student@example.com",
            "name": "Student",
            "password": bcrypt.hashpw(b"student-pass", bcrypt.gensalt()),
            "role": "standard",
        }
    )
    application = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
            "RENDER_TOKEN": "render-secret",
            "RENDER_API_BASE": "",
            "LOG_DIR": "",
            "RESEND_API_KEY": "",
            "MSG91_AUTH_KEY": "",
            "RAZORPAY_KEY_ID": "",
            "RAZORPAY_KEY_SECRET": "",
            "DEFAULT_ADMIN_PASSWORD": "",
        },
        database=database,
    )
    return application


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email, password):
    response = client.post("/api/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return response.get_json()["access_token"]


@pytest.fixture
def admin_headers(client):
    return {"Authorization": f"Bearer {login(client, ADMIN_EMAIL, ADMIN_PASSWORD)}"}


@pytest.fixture
def student_headers(client):
    return {"Authorization": f"Bearer {login(client, 'student@example.com', 'student-pass')}"}


def make_order_body(count=4, photos=None, **overrides):
    body = {
        "gridTemplate": "square",
        "description": "Class of 2026",
        "members": make_members(count, photos),
        "shipping": {
            "name": "Asha Rao",
            "phone": "9812345670",
            "line1": "12 MG Road",
            "city": "Bengaluru",
            "state": "KA",
            "postalCode": "560001",
            "country": "IN",
        },
        "settings": {"widthPx": 2550, "heightPx": 3300, "keepAspect": True, "gapPx": 4},
    }
    body.update(overrides)
    return body


def create_order(client, **kwargs):
    response = client.post("/api/orders", json=make_order_body(**kwargs))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["order"]
