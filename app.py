"""
Flask backend for the social media app.

Users sign up and sign in with an email and password and receive a JWT. Posts
(title, message, tags and an optional image) can be listed page by page,
searched, liked and commented on. Data lives in DynamoDB and post images in
Amazon S3 in production; local development uses SQLite and an uploads
directory instead.
"""

from __future__ import annotations

import logging
import math
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from flask import Flask, abort, jsonify, request, send_from_directory
from flask_cors import CORS
from jwt import ExpiredSignatureError, InvalidTokenError

from socialmediaapi.auth import decode_jwt, generate_jwt, hash_password, public_user, verify_password
from socialmediaapi.blobs import LocalBlobStore, S3BlobStore, build_s3_client
from socialmediaapi.dynamo_store import DynamoStore, build_dynamo_table
from socialmediaapi.google_auth import GoogleAuthError, verify_google_token
from socialmediaapi.images import InvalidImageError, decode_data_url, extension_for, inspect_image, is_data_url
from socialmediaapi.sqlite_store import SqliteStore

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")

STORE_ERRORS = (BotoCoreError, ClientError, sqlite3.DatabaseError)
BLOB_ERRORS = (BotoCoreError, ClientError, OSError)


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def load_config() -> Dict[str, Any]:
  """Read settings from the environment (and ``.env``)."""
  return {
    "STORAGE_BACKEND": os.environ.get("STORAGE_BACKEND", "sqlite").strip().lower(),
    "SQLITE_DB_PATH": os.environ.get("SQLITE_DB_PATH", str(BASE_DIR / "socialmedia.db")),
    "UPLOADS_DIR": os.environ.get("UPLOADS_DIR", str(BASE_DIR / "uploads")),
    "AWS_REGION": os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
    "AWS_POSTS_TABLE": os.environ.get("AWS_POSTS_TABLE", "posts"),
    "AWS_USERS_TABLE": os.environ.get("AWS_USERS_TABLE", "users"),
    "AWS_BUCKET_NAME": os.environ.get("AWS_BUCKET_NAME"),
    "AWS_S3_ACL": os.environ.get("AWS_S3_ACL", "public-read"),
    "JWT_SECRET_KEY": os.environ.get("JWT_SECRET_KEY", "change-me"),
    "JWT_EXPIRATION_MINUTES": _safe_int(os.environ.get("JWT_EXPIRATION_MINUTES"), 60),
    "GOOGLE_CLIENT_ID": os.environ.get("GOOGLE_CLIENT_ID", "").strip(),
    "POSTS_PAGE_SIZE": _safe_int(os.environ.get("POSTS_PAGE_SIZE"), 8),
    "MAX_CONTENT_LENGTH": _safe_int(os.environ.get("MAX_CONTENT_LENGTH"), 30 * 1024 * 1024),
    "CORS_ORIGINS": os.environ.get("CORS_ORIGINS", "*"),
    "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
  }


def _now() -> str:
  return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _error(message: str, status: int, details: Optional[str] = None) -> Tuple[Dict[str, Any], int]:
  payload: Dict[str, Any] = {"message": message}
  if details:
    payload["details"] = details
  return payload, status


def _json_object() -> Dict[str, Any]:
  payload = request.get_json(silent=True)
  return payload if isinstance(payload, dict) else {}


def _parse_tags(raw: Any) -> List[str]:
  """Accept a list of strings or a comma separated string."""
  if raw is None:
    return []
  if isinstance(raw, str):
    raw = raw.split(",")
  if not isinstance(raw, list):
    raise ValueError("tags must be a list or a comma separated string.")

  tags: List[str] = []
  for tag in raw:
    if not isinstance(tag, str):
      raise ValueError("tags must contain only strings.")
    cleaned = tag.strip()
    if cleaned and cleaned not in tags:
      tags.append(cleaned)
  return tags


def _clean_post_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
  """Pick the client-editable post fields present in ``payload``."""
  fields: Dict[str, Any] = {}
  for key in ("title", "message", "name"):
    if key in payload and payload[key] is not None:
      if not isinstance(payload[key], str):
        raise ValueError(f"{key} must be a string.")
      fields[key] = payload[key].strip()
  if "tags" in payload:
    fields["tags"] = _parse_tags(payload["tags"])
  if "selectedFile" in payload:
    selected_file = payload["selectedFile"] or ""
    if not isinstance(selected_file, str):
      raise ValueError("selectedFile must be a string.")
    fields["selectedFile"] = selected_file
  return fields


def create_app(test_config: Optional[Dict[str, Any]] = None) -> Flask:
  """Instantiate the Flask application and register routes."""
  app = Flask(__name__)
  app.config.from_mapping(load_config())
  if test_config:
    app.config.update(test_config)

  app.logger.setLevel(app.config["LOG_LEVEL"])
  CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}})

  backend = app.config["STORAGE_BACKEND"]
  if backend == "aws":
    bucket = app.config["AWS_BUCKET_NAME"]
    if not bucket:
      raise RuntimeError("AWS_BUCKET_NAME must be set when STORAGE_BACKEND=aws.")
    region = app.config["AWS_REGION"]
    store = DynamoStore(
      build_dynamo_table(app.config["AWS_POSTS_TABLE"], region),
      build_dynamo_table(app.config["AWS_USERS_TABLE"], region),
    )
    blob_store = S3BlobStore(build_s3_client(region), bucket, app.config["AWS_S3_ACL"] or "")
  elif backend == "sqlite":
    store = SqliteStore(Path(app.config["SQLITE_DB_PATH"]))
    blob_store = LocalBlobStore(Path(app.config["UPLOADS_DIR"]))
  else:
    raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend!r}")

  app.logger.info("Using %s storage backend", backend)

  def _unauthorized(message: str) -> None:
    response = jsonify({"message": message})
    response.status_code = 401
    abort(response)

  def _google_claims(token: str) -> Dict[str, Any]:
    try:
      claims = verify_google_token(token, client_id=app.config["GOOGLE_CLIENT_ID"])
    except GoogleAuthError as exc:
      app.logger.info("Rejected Google token: %s", exc)
      _unauthorized("Token is invalid.")
    return {
      "sub": claims["sub"],
      "id": claims["sub"],
      "email": claims.get("email"),
      "name": claims.get("name"),
      "provider": "google",
    }

  def _get_request_user(optional: bool = True) -> Dict[str, Any] | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header or not auth_header.startswith("Bearer "):
      if optional:
        return None
      _unauthorized("Authorization header missing or invalid.")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
      if optional:
        return None
      _unauthorized("Authorization header missing or invalid.")

    try:
      claims = decode_jwt(token, secret=app.config["JWT_SECRET_KEY"])
    except ExpiredSignatureError:
      _unauthorized("Token has expired.")
    except InvalidTokenError:
      if not app.config["GOOGLE_CLIENT_ID"]:
        _unauthorized("Token is invalid.")
      claims = _google_claims(token)

    if not claims.get("sub"):
      _unauthorized("Token payload is malformed.")
    return claims

  def _issue_token(user: Dict[str, Any]) -> str:
    return generate_jwt(
      user["id"],
      user["email"],
      name=user.get("name"),
      secret=app.config["JWT_SECRET_KEY"],
      expires_minutes=app.config["JWT_EXPIRATION_MINUTES"],
    )

  def _store_selected_file(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Move an inline data-URL image into the blob store and keep its URL."""
    if "selectedFile" not in fields:
      return fields
    selected_file = fields["selectedFile"]
    if not is_data_url(selected_file):
      if selected_file and not selected_file.startswith(("http://", "https://")):
        raise InvalidImageError("selectedFile must be a data URL or an http(s) URL.")
      # Not an upload of ours: nothing to describe and nothing we may delete later.
      fields["imageMeta"] = None
      fields["blobKey"] = None
      return fields

    image_bytes, _ = decode_data_url(selected_file)
    image_meta = inspect_image(image_bytes)
    key = f"{uuid.uuid4().hex}{extension_for(image_meta)}"
    fields["selectedFile"] = blob_store.save(
      image_bytes, key, image_meta["mimeType"], base_url=request.host_url
    )
    fields["imageMeta"] = image_meta
    fields["blobKey"] = key
    return fields

  def _discard_blob(key: Optional[str]) -> None:
    """Delete a blob this service uploaded; ``key`` must come from a stored post."""
    if not key:
      return
    try:
      blob_store.delete(key)
    except BLOB_ERRORS as exc:
      app.logger.warning("Failed to delete stored image %s: %s", key, exc)

  def _owned_post(post_id: str, claims: Dict[str, Any], failure_status: int):
    """Return ``(post, None)`` for the caller's own post, else ``(None, error)``."""
    try:
      post = store.get_post(post_id)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to load post %s: %s", post_id, exc)
      return None, _error("Post lookup failed.", failure_status, str(exc))
    if post is None:
      return None, _error(f"No post with id: {post_id}", 404)
    if post.get("creator") != claims["sub"]:
      return None, _error("You can only change your own posts.", 403)
    return post, None

  # Service --------------------------------------------------------------------

  @app.route("/", methods=["GET"])
  def index():
    return jsonify("Hello world")

  @app.route("/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {"status": "ok", "timestamp": _now()}, 200

  # Users ----------------------------------------------------------------------

  @app.route("/user/signup", methods=["POST"])
  def signup() -> Tuple[Dict[str, Any], int]:
    """Register a new account and issue a JWT."""
    payload = _json_object()
    email = str(payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    first_name = str(payload.get("firstName") or "").strip()
    last_name = str(payload.get("lastName") or "").strip()
    confirm_password = payload.get("confirmPassword")

    if not email or not password or not first_name or not last_name:
      return _error("Email, password, first name and last name are required.", 400)
    if not isinstance(password, str):
      return _error("Password must be a string.", 400)
    if confirm_password is not None and confirm_password != password:
      return _error("Passwords don't match.", 400)

    try:
      if store.get_user(email):
        return _error("User already exists", 400)

      user = store.create_user(
        {
          "id": uuid.uuid4().hex,
          "email": email,
          "name": f"{first_name} {last_name}",
          "password_hash": hash_password(password),
          "createdAt": _now(),
        }
      )
    except STORE_ERRORS as exc:
      app.logger.exception("Signup failed: %s", exc)
      return _error("Something went wrong", 500, str(exc))

    if user is None:
      # Storage layer returned a conflict (duplicate email)
      return _error("User already exists", 400)

    app.logger.info("New user signed up: %s", user["id"])
    return {"result": public_user(user), "token": _issue_token(user)}, 201

  @app.route("/user/signin", methods=["POST"])
  def signin() -> Tuple[Dict[str, Any], int]:
    """Authenticate an existing user and return a JWT."""
    payload = _json_object()
    email = str(payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
      return _error("Email and password are required.", 400)

    try:
      user = store.get_user(email)
    except STORE_ERRORS as exc:
      app.logger.exception("Signin lookup failed: %s", exc)
      return _error("Something went wrong", 500, str(exc))

    if not user:
      return _error("User doesn't exist", 404)
    if not isinstance(password, str) or not verify_password(user.get("password_hash", ""), password):
      return _error("Invalid credentials", 400)

    return {"result": public_user(user), "token": _issue_token(user)}, 200

  @app.route("/user/me", methods=["GET"])
  def me() -> Tuple[Dict[str, Any], int]:
    """Return user information for the supplied token."""
    claims = _get_request_user(optional=False)
    if claims.get("provider") == "google":
      return {"result": {key: claims.get(key) for key in ("id", "email", "name")}}, 200

    email = claims.get("email")
    if not email:
      return _error("Token payload is malformed.", 401)

    try:
      user = store.get_user(email)
    except STORE_ERRORS as exc:
      app.logger.exception("Session lookup failed: %s", exc)
      return _error("Something went wrong", 500, str(exc))

    if not user or user["id"] != claims["sub"]:
      return _error("User not found.", 404)
    return {"result": public_user(user)}, 200

  # Posts: reads ---------------------------------------------------------------

  @app.route("/posts", methods=["GET"])
  def get_posts() -> Tuple[Dict[str, Any], int]:
    """Return one page of posts, newest first."""
    try:
      page = int(request.args.get("page") or 1)
    except ValueError:
      page = 0
    if page < 1:
      return _error("page must be a positive integer.", 400)

    limit = app.config["POSTS_PAGE_SIZE"]
    try:
      total = store.count_posts()
      items = store.list_posts((page - 1) * limit, limit)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to list posts: %s", exc)
      return _error("Could not fetch posts.", 404, str(exc))

    return {
      "data": items,
      "currentPage": page,
      "numberOfPages": math.ceil(total / limit),
    }, 200

  @app.route("/posts/search", methods=["GET"])
  def get_posts_by_search() -> Tuple[Dict[str, Any], int]:
    """Match posts whose title contains ``searchQuery`` or that carry any of ``tags``."""
    search_query = (request.args.get("searchQuery") or "").strip()
    if search_query.lower() == "none":
      search_query = ""
    tags = _parse_tags(request.args.get("tags") or "")

    try:
      items = store.search_posts(search_query or None, tags)
    except STORE_ERRORS as exc:
      app.logger.exception("Search failed: %s", exc)
      return _error("Search failed.", 404, str(exc))
    return {"data": items}, 200

  @app.route("/posts/creator", methods=["GET"])
  def get_posts_by_creator() -> Tuple[Dict[str, Any], int]:
    name = (request.args.get("name") or "").strip()
    if not name:
      return _error("name is required.", 400)

    try:
      items = store.posts_by_creator(name)
    except STORE_ERRORS as exc:
      app.logger.exception("Creator lookup failed: %s", exc)
      return _error("Could not fetch posts.", 404, str(exc))
    return {"data": items}, 200

  @app.route("/posts/<post_id>", methods=["GET"])
  def get_post(post_id: str) -> Tuple[Dict[str, Any], int]:
    try:
      post = store.get_post(post_id)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to load post %s: %s", post_id, exc)
      return _error("Could not fetch post.", 404, str(exc))
    if post is None:
      return _error(f"No post with id: {post_id}", 404)
    return post, 200

  # Posts: writes --------------------------------------------------------------

  @app.route("/posts", methods=["POST"])
  def create_post() -> Tuple[Dict[str, Any], int]:
    claims = _get_request_user(optional=False)
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
      return _error("Request body must be a JSON object.", 400)

    try:
      fields = _clean_post_fields(payload)
    except ValueError as exc:
      return _error(str(exc), 400)
    if not fields.get("title") and not fields.get("message"):
      return _error("A post needs a title or a message.", 400)

    try:
      fields = _store_selected_file(fields)
    except InvalidImageError as exc:
      return _error(str(exc), 400)
    except BLOB_ERRORS as exc:
      app.logger.exception("Image upload failed: %s", exc)
      return _error("Image upload failed.", 502, str(exc))

    fields = {key: value for key, value in fields.items() if value not in (None, "")}
    fields.setdefault("name", claims.get("name") or "")
    fields.setdefault("tags", [])

    post = {
      **fields,
      "id": uuid.uuid4().hex,
      "creator": claims["sub"],
      "likes": [],
      "comments": [],
      "createdAt": _now(),
    }
    try:
      created = store.create_post(post)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to persist post: %s", exc)
      _discard_blob(fields.get("blobKey"))
      return _error("Could not create post.", 409, str(exc))

    return created, 201

  @app.route("/posts/<post_id>", methods=["PATCH"])
  def update_post(post_id: str) -> Tuple[Dict[str, Any], int]:
    claims = _get_request_user(optional=False)
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
      return _error("Request body must be a JSON object.", 400)

    try:
      fields = _clean_post_fields(payload)
    except ValueError as exc:
      return _error(str(exc), 400)
    if not fields:
      return _error("Nothing to update.", 400)

    existing, failure = _owned_post(post_id, claims, 409)
    if failure:
      return failure

    try:
      fields = _store_selected_file(fields)
    except InvalidImageError as exc:
      return _error(str(exc), 400)
    except BLOB_ERRORS as exc:
      app.logger.exception("Image upload failed: %s", exc)
      return _error("Image upload failed.", 502, str(exc))

    fields["updatedAt"] = _now()
    try:
      updated = store.update_post(post_id, fields)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to update post %s: %s", post_id, exc)
      _discard_blob(fields.get("blobKey"))
      return _error("Could not update post.", 409, str(exc))
    if updated is None:
      _discard_blob(fields.get("blobKey"))
      return _error(f"No post with id: {post_id}", 404)

    if "selectedFile" in fields and existing.get("blobKey") != fields["blobKey"]:
      _discard_blob(existing.get("blobKey"))
    return updated, 200

  @app.route("/posts/<post_id>", methods=["DELETE"])
  def delete_post(post_id: str) -> Tuple[Dict[str, Any], int]:
    claims = _get_request_user(optional=False)
    _, failure = _owned_post(post_id, claims, 409)
    if failure:
      return failure

    try:
      deleted = store.delete_post(post_id)
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to delete post %s: %s", post_id, exc)
      return _error("Could not delete post.", 409, str(exc))
    if deleted is None:
      return _error(f"No post with id: {post_id}", 404)

    _discard_blob(deleted.get("blobKey"))
    return {"message": "Post deleted successfully."}, 200

  @app.route("/posts/<post_id>/likePost", methods=["PATCH", "DELETE"])
  def like_post(post_id: str) -> Tuple[Dict[str, Any], int]:
    """Add (PATCH) or remove (DELETE) the caller's like."""
    claims = _get_request_user(optional=False)
    try:
      if request.method == "DELETE":
        post = store.unlike_post(post_id, claims["sub"])
      else:
        post = store.like_post(post_id, claims["sub"])
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to update likes on %s: %s", post_id, exc)
      return _error("Could not update likes.", 500, str(exc))
    if post is None:
      return _error(f"No post with id: {post_id}", 404)
    return post, 200

  @app.route("/posts/<post_id>/commentPost", methods=["POST"])
  def comment_post(post_id: str) -> Tuple[Dict[str, Any], int]:
    _get_request_user(optional=False)
    payload = _json_object()
    value = payload.get("value")
    if not isinstance(value, str) or not value.strip():
      return _error("Comment value is required.", 400)

    try:
      post = store.comment_post(post_id, value.strip())
    except STORE_ERRORS as exc:
      app.logger.exception("Failed to comment on %s: %s", post_id, exc)
      return _error("Could not add comment.", 500, str(exc))
    if post is None:
      return _error(f"No post with id: {post_id}", 404)
    return post, 200

  # Errors ---------------------------------------------------------------------

  @app.errorhandler(404)
  def not_found(_exc):
    return _error("Not found", 404)

  @app.errorhandler(405)
  def method_not_allowed(_exc):
    return _error("Method not allowed", 405)

  @app.errorhandler(413)
  def too_large(_exc):
    return _error("Request body is too large.", 413)

  if backend == "sqlite":
    @app.route("/uploads/<path:filename>", methods=["GET"])
    def serve_upload(filename: str):
      """Serve locally stored uploads during development."""
      return send_from_directory(app.config["UPLOADS_DIR"], filename)

  return app


if __name__ == "__main__":
  logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=_safe_int(os.environ.get("PORT"), 5000), debug=True)
