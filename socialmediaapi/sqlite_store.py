"""
SQLite persistence used for local development.

Mirrors :class:`socialmediaapi.dynamo_store.DynamoStore` so the Flask routes do
not care which backend is active. List attributes are stored as JSON text and
filtered with SQLite's JSON1 functions.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

_POST_COLUMNS = (
  "id, title, message, name, creator, tags, selected_file, image_meta, blob_key, likes, comments, "
  "created_at, updated_at"
)

_FIELD_TO_COLUMN = {
  "title": "title",
  "message": "message",
  "name": "name",
  "tags": "tags",
  "selectedFile": "selected_file",
  "imageMeta": "image_meta",
  "blobKey": "blob_key",
  "updatedAt": "updated_at",
}

_JSON_COLUMNS = {"tags", "image_meta"}


def _row_to_post(row: sqlite3.Row) -> Dict[str, Any]:
  post = {
    "id": row["id"],
    "title": row["title"],
    "message": row["message"],
    "name": row["name"],
    "creator": row["creator"],
    "tags": json.loads(row["tags"] or "[]"),
    "selectedFile": row["selected_file"],
    "imageMeta": json.loads(row["image_meta"]) if row["image_meta"] else None,
    "blobKey": row["blob_key"],
    "likes": json.loads(row["likes"] or "[]"),
    "comments": json.loads(row["comments"] or "[]"),
    "createdAt": row["created_at"],
    "updatedAt": row["updated_at"],
  }
  return {key: value for key, value in post.items() if value is not None}


class SqliteStore:
  """Posts and users persisted in a local SQLite file."""

  def __init__(self, db_path: Path) -> None:
    self.db_path = Path(db_path)
    self.initialise()

  def _connect(self) -> sqlite3.Connection:
    """Return a SQLite connection with row access by name."""
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(self.db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn

  @contextmanager
  def _transaction(self) -> Iterator[sqlite3.Connection]:
    """Yield a connection holding the write lock until commit."""
    conn = self._connect()
    try:
      conn.execute("BEGIN IMMEDIATE")
      try:
        yield conn
      except BaseException:
        conn.execute("ROLLBACK")
        raise
      conn.execute("COMMIT")
    finally:
      conn.close()

  def initialise(self) -> None:
    """Ensure the SQLite tables exist with the expected schema."""
    with self._transaction() as conn:
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS posts (
          id TEXT PRIMARY KEY,
          title TEXT,
          message TEXT,
          name TEXT,
          creator TEXT,
          tags TEXT NOT NULL DEFAULT '[]',
          selected_file TEXT,
          image_meta TEXT,
          blob_key TEXT,
          likes TEXT NOT NULL DEFAULT '[]',
          comments TEXT NOT NULL DEFAULT '[]',
          created_at TEXT NOT NULL,
          updated_at TEXT
        )
        """
      )
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          email TEXT PRIMARY KEY,
          id TEXT UNIQUE NOT NULL,
          name TEXT,
          password_hash TEXT NOT NULL,
          created_at TEXT NOT NULL
        )
        """
      )

  def _select_posts(self, where: str = "", params: tuple = ()) -> List[Dict[str, Any]]:
    conn = self._connect()
    try:
      rows = conn.execute(
        f"SELECT {_POST_COLUMNS} FROM posts {where} ORDER BY created_at DESC",
        params,
      ).fetchall()
    finally:
      conn.close()
    return [_row_to_post(row) for row in rows]

  # Posts -------------------------------------------------------------------

  def count_posts(self) -> int:
    conn = self._connect()
    try:
      return conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0]
    finally:
      conn.close()

  def list_posts(self, offset: int, limit: int) -> List[Dict[str, Any]]:
    conn = self._connect()
    try:
      rows = conn.execute(
        f"SELECT {_POST_COLUMNS} FROM posts ORDER BY created_at DESC LIMIT ? OFFSET ?",
        (limit, offset),
      ).fetchall()
    finally:
      conn.close()
    return [_row_to_post(row) for row in rows]

  def search_posts(self, query: Optional[str], tags: List[str]) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if query:
      # instr() is case-sensitive, matching DynamoDB's contains().
      clauses.append("instr(title, ?) > 0")
      params.append(query)
    if tags:
      placeholders = ", ".join("?" for _ in tags)
      clauses.append(
        f"EXISTS (SELECT 1 FROM json_each(posts.tags) WHERE json_each.value IN ({placeholders}))"
      )
      params.extend(tags)
    if not clauses:
      return []
    return self._select_posts("WHERE " + " OR ".join(clauses), tuple(params))

  def posts_by_creator(self, name: str) -> List[Dict[str, Any]]:
    return self._select_posts("WHERE name = ?", (name,))

  def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
    conn = self._connect()
    try:
      row = conn.execute(f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?", (post_id,)).fetchone()
    finally:
      conn.close()
    return _row_to_post(row) if row else None

  def create_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
    with self._transaction() as conn:
      conn.execute(
        f"""
        INSERT INTO posts ({_POST_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
          post["id"],
          post.get("title"),
          post.get("message"),
          post.get("name"),
          post.get("creator"),
          json.dumps(post.get("tags") or []),
          post.get("selectedFile"),
          json.dumps(post["imageMeta"]) if post.get("imageMeta") else None,
          post.get("blobKey"),
          json.dumps(post.get("likes") or []),
          json.dumps(post.get("comments") or []),
          post["createdAt"],
          post.get("updatedAt"),
        ),
      )
    return self.get_post(post["id"]) or post

  def update_post(self, post_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    assignments: List[str] = []
    params: List[Any] = []
    for key, value in fields.items():
      column = _FIELD_TO_COLUMN[key]
      assignments.append(f"{column} = ?")
      params.append(json.dumps(value) if column in _JSON_COLUMNS and value is not None else value)
    if assignments:
      with self._transaction() as conn:
        cursor = conn.execute(
          f"UPDATE posts SET {', '.join(assignments)} WHERE id = ?",
          (*params, post_id),
        )
        if cursor.rowcount == 0:
          return None
    return self.get_post(post_id)

  def delete_post(self, post_id: str) -> Optional[Dict[str, Any]]:
    with self._transaction() as conn:
      row = conn.execute(f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?", (post_id,)).fetchone()
      if row is None:
        return None
      conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
    return _row_to_post(row)

  def _rewrite_list(self, post_id: str, column: str, mutate) -> Optional[Dict[str, Any]]:
    with self._transaction() as conn:
      row = conn.execute(f"SELECT {column} FROM posts WHERE id = ?", (post_id,)).fetchone()
      if row is None:
        return None
      values = mutate(json.loads(row[column] or "[]"))
      conn.execute(f"UPDATE posts SET {column} = ? WHERE id = ?", (json.dumps(values), post_id))
    return self.get_post(post_id)

  def like_post(self, post_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    return self._rewrite_list(post_id, "likes", lambda likes: sorted(set(likes) | {user_id}))

  def unlike_post(self, post_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    return self._rewrite_list(post_id, "likes", lambda likes: sorted(set(likes) - {user_id}))

  def comment_post(self, post_id: str, value: str) -> Optional[Dict[str, Any]]:
    return self._rewrite_list(post_id, "comments", lambda comments: comments + [value])

  # Users -------------------------------------------------------------------

  def get_user(self, email: str) -> Optional[Dict[str, Any]]:
    """Return a user record by email."""
    conn = self._connect()
    try:
      row = conn.execute(
        """
        SELECT id, email, name, password_hash, created_at
        FROM users
        WHERE email = lower(?)
        """,
        (email,),
      ).fetchone()
    finally:
      conn.close()

    if row is None:
      return None

    return {
      "id": row["id"],
      "email": row["email"],
      "name": row["name"],
      "password_hash": row["password_hash"],
      "createdAt": row["created_at"],
    }

  def create_user(self, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
      with self._transaction() as conn:
        conn.execute(
          """
          INSERT INTO users (email, id, name, password_hash, created_at)
          VALUES (?, ?, ?, ?, ?)
          """,
          (user["email"].lower(), user["id"], user.get("name"), user["password_hash"], user["createdAt"]),
        )
    except sqlite3.IntegrityError:
      return None
    return dict(user, email=user["email"].lower())


__all__ = ["SqliteStore"]
