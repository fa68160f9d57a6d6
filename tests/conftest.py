import base64
import io
import struct
import zlib
from typing import Dict

import pytest
from PIL import Image

from app import create_app


def make_png_data_url(size=(40, 30), color=(0, 200, 100)) -> str:
  image = Image.new("RGB", size, color=color)
  buffer = io.BytesIO()
  image.save(buffer, format="PNG")
  return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def make_oversized_png(width=30000, height=30000) -> bytes:
  """A valid PNG header declaring far more pixels than Pillow will open."""
  def chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)

  header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
  return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"\x00")) + chunk(b"IEND", b"")


@pytest.fixture
def png_data_url():
  return make_png_data_url


@pytest.fixture
def oversized_png():
  return make_oversized_png()


@pytest.fixture
def app(tmp_path):
  flask_app = create_app(
    {
      "TESTING": True,
      "STORAGE_BACKEND": "sqlite",
      "SQLITE_DB_PATH": str(tmp_path / "test.db"),
      "UPLOADS_DIR": str(tmp_path / "uploads"),
      "JWT_SECRET_KEY": "test-secret",
      "GOOGLE_CLIENT_ID": "",
    }
  )
  return flask_app


@pytest.fixture
def client(app):
  return app.test_client()


@pytest.fixture
def signup(client):
  def _signup(email: str = "ada@example.com", password: str = "Sup3rSecret!", first: str = "Ada", last: str = "Lovelace") -> Dict:
    response = client.post(
      "/user/signup",
      json={
        "email": email,
        "password": password,
        "confirmPassword": password,
        "firstName": first,
        "lastName": last,
      },
    )
    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    return {
      "user": body["result"],
      "token": body["token"],
      "headers": {"Authorization": f"Bearer {body['token']}"},
    }

  return _signup


@pytest.fixture
def author(signup):
  return signup()
