"""
Blob storage for post images: Amazon S3 in production, a local directory in
development.
"""

from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import boto3

logger = logging.getLogger(__name__)


def build_s3_client(region: Optional[str] = None):
  """Create an S3 client using environment credentials."""
  region = region or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
  kwargs: Dict[str, Any] = {
    "service_name": "s3",
    "region_name": region,
  }
  if os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"):
    kwargs.update(
      aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
      aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
    )
  return boto3.client(**kwargs)


class S3BlobStore:
  """Uploads objects to a bucket and hands back their public URL."""

  def __init__(self, s3_client, bucket: str, acl: str = "public-read") -> None:
    self.s3_client = s3_client
    self.bucket = bucket
    self.acl = acl.strip()

  def url_for(self, key: str) -> str:
    return f"https://{self.bucket}.s3.amazonaws.com/{key}"

  def save(self, data: bytes, key: str, content_type: str, base_url: Optional[str] = None) -> str:
    """Upload the bytes to S3 and return the public URL."""
    extra_args = {"ContentType": content_type}
    if self.acl:
      extra_args["ACL"] = self.acl
    self.s3_client.upload_fileobj(io.BytesIO(data), self.bucket, key, ExtraArgs=extra_args)
    return self.url_for(key)

  def delete(self, key: str) -> None:
    self.s3_client.delete_object(Bucket=self.bucket, Key=key)


class LocalBlobStore:
  """Writes objects under ``uploads_dir``; the app serves them at ``/uploads/``."""

  def __init__(self, uploads_dir: Path, base_url: str = "/") -> None:
    self.uploads_dir = Path(uploads_dir)
    self.base_url = base_url

  def url_for(self, key: str, base_url: Optional[str] = None) -> str:
    return urljoin(base_url or self.base_url, f"uploads/{key}")

  def save(self, data: bytes, key: str, content_type: str, base_url: Optional[str] = None) -> str:
    """Persist uploaded bytes to the local uploads directory."""
    self.uploads_dir.mkdir(parents=True, exist_ok=True)
    with open(self.uploads_dir / key, "wb") as destination:
      destination.write(data)
    logger.debug("Stored %s (%s) locally", key, content_type)
    return self.url_for(key, base_url)

  def delete(self, key: str) -> None:
    (self.uploads_dir / key).unlink(missing_ok=True)


__all__ = ["LocalBlobStore", "S3BlobStore", "build_s3_client"]
