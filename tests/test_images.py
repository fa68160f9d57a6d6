import io

import pytest
from PIL import Image

from socialmediaapi.blobs import LocalBlobStore, S3BlobStore
from socialmediaapi.images import InvalidImageError, decode_data_url, extension_for, inspect_image, is_data_url


def jpeg_bytes_with_exif() -> bytes:
  image = Image.new("RGB", (20, 10), color=(10, 20, 30))
  exif = Image.Exif()
  exif[0x0112] = 6  # Orientation: rotate 90
  exif[0x0132] = "2024:05:01 12:30:00"  # DateTime
  exif[0x010F] = "Acme"  # Make
  buffer = io.BytesIO()
  image.save(buffer, format="JPEG", exif=exif)
  return buffer.getvalue()


def test_decode_data_url(png_data_url):
  payload, mime = decode_data_url(png_data_url())
  assert mime == "image/png"
  assert payload[:4] == b"\x89PNG"


@pytest.mark.parametrize(
  "value",
  [
    "https://example.com/a.png",
    "data:image/png,not-base64-flagged",
    "data:image/png;base64,!!!",
    "data:image/png;base64,",
  ],
)
def test_decode_data_url_rejects_bad_input(value):
  with pytest.raises(InvalidImageError):
    decode_data_url(value)


def test_is_data_url():
  assert is_data_url("data:image/png;base64,AAAA")
  assert not is_data_url("https://example.com")
  assert not is_data_url(None)


def test_inspect_png(png_data_url):
  payload, _ = decode_data_url(png_data_url(size=(12, 7)))
  meta = inspect_image(payload)
  assert meta["format"] == "png"
  assert meta["mimeType"] == "image/png"
  assert (meta["width"], meta["height"]) == (12, 7)
  assert meta["sizeBytes"] == len(payload)
  assert extension_for(meta) == ".png"


def test_inspect_jpeg_reads_exif():
  meta = inspect_image(jpeg_bytes_with_exif())
  assert meta["format"] == "jpeg"
  assert extension_for(meta) == ".jpg"
  assert meta["rotationDegrees"] == 90
  assert meta["capturedAt"] == "2024:05:01 12:30:00"
  assert meta["cameraMake"] == "Acme"


def test_inspect_rejects_garbage():
  with pytest.raises(InvalidImageError):
    inspect_image(b"definitely not an image")


def test_inspect_rejects_decompression_bomb(oversized_png):
  with pytest.raises(InvalidImageError, match="too many pixels"):
    inspect_image(oversized_png)


def test_local_blob_store_round_trip(tmp_path):
  store = LocalBlobStore(tmp_path / "uploads")
  url = store.save(b"abc", "k1.png", "image/png", base_url="http://localhost:5000/")
  assert url == "http://localhost:5000/uploads/k1.png"
  assert (tmp_path / "uploads" / "k1.png").read_bytes() == b"abc"

  store.delete("k1.png")
  assert not (tmp_path / "uploads" / "k1.png").exists()


def test_s3_blob_store_without_acl():
  class Client:
    def __init__(self):
      self.calls = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
      self.calls.append((bucket, key, ExtraArgs))

  client = Client()
  store = S3BlobStore(client, "bucket", acl="")
  url = store.save(b"abc", "k.png", "image/png")
  assert url == "https://bucket.s3.amazonaws.com/k.png"
  assert client.calls == [("bucket", "k.png", {"ContentType": "image/png"})]
