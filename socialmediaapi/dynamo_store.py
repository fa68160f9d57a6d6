"""
DynamoDB persistence for posts and users.

Posts live in a table keyed by ``id`` and users in a table keyed by the
lower-cased ``email``. Every operation maps onto one or two table calls; the
interesting behaviour (filtering, atomic set/list updates, conditional writes)
is expressed as DynamoDB expressions so the store engine does the work.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


def build_dynamo_table(table_name: str, region: Optional[str] = None):
  """Return a DynamoDB Table resource bound to the configured region."""
  region = region or os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
  resource_kwargs: Dict[str, Any] = {}
  if region:
    resource_kwargs["region_name"] = region
  dynamo = boto3.resource("dynamodb", **resource_kwargs)
  return dynamo.Table(table_name)


def to_dynamo_compatible(value: Any) -> Any:
  """Convert native Python types into structures acceptable by DynamoDB."""
  if isinstance(value, float):
    return Decimal(str(value))
  if isinstance(value, Decimal):
    return value
  if isinstance(value, dict):
    return {
      str(key): to_dynamo_compatible(val)
      for key, val in value.items()
      if val is not None
    }
  if isinstance(value, list):
    return [to_dynamo_compatible(item) for item in value if item is not None]
  return value


def from_dynamo(value: Any) -> Any:
  """Recursively convert DynamoDB Decimals and sets into JSON friendly primitives."""
  if isinstance(value, Decimal):
    if value % 1 == 0:
      return int(value)
    return float(value)
  if isinstance(value, (set, frozenset)):
    return sorted(from_dynamo(item) for item in value)
  if isinstance(value, dict):
    return {key: from_dynamo(val) for key, val in value.items()}
  if isinstance(value, list):
    return [from_dynamo(item) for item in value]
  return value


def _normalise_post(item: Dict[str, Any]) -> Dict[str, Any]:
  post = from_dynamo(item)
  # Empty string sets cannot be stored, so a post nobody liked has no attribute.
  post.setdefault("likes", [])
  post.setdefault("comments", [])
  post.setdefault("tags", [])
  return post


def _is_conditional_failure(exc: ClientError) -> bool:
  return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoStore:
  """Posts and users backed by two DynamoDB tables."""

  def __init__(self, posts_table, users_table) -> None:
    self.posts_table = posts_table
    self.users_table = users_table

  def _scan(self, **scan_kwargs: Any) -> Iterator[Dict[str, Any]]:
    while True:
      response = self.posts_table.scan(**scan_kwargs)
      yield from response.get("Items", [])
      last_key = response.get("LastEvaluatedKey")
      if not last_key:
        return
      scan_kwargs["ExclusiveStartKey"] = last_key

  # Posts -------------------------------------------------------------------

  def count_posts(self) -> int:
    total = 0
    scan_kwargs: Dict[str, Any] = {"Select": "COUNT"}
    while True:
      response = self.posts_table.scan(**scan_kwargs)
      total += int(response.get("Count", 0))
      last_key = response.get("LastEvaluatedKey")
      if not last_key:
        return total
      scan_kwargs["ExclusiveStartKey"] = last_key

  def list_posts(self, offset: int, limit: int) -> List[Dict[str, Any]]:
    """
    Return one page of posts, newest first.

    Scans carry no ordering, so the whole table is read and sorted on
    ``createdAt`` before the page is sliced out.
    """
    posts = [_normalise_post(item) for item in self._scan()]
    posts.sort(key=lambda post: post.get("createdAt") or "", reverse=True)
    return posts[offset:offset + limit]

  def search_posts(self, query: Optional[str], tags: List[str]) -> List[Dict[str, Any]]:
    condition = None
    if query:
      condition = Attr("title").contains(query)
    for tag in tags:
      tag_condition = Attr("tags").contains(tag)
      condition = tag_condition if condition is None else condition | tag_condition
    if condition is None:
      return []
    return [_normalise_post(item) for item in self._scan(FilterExpression=condition)]

  def posts_by_creator(self, name: str) -> List[Dict[str, Any]]:
    return [_normalise_post(item) for item in self._scan(FilterExpression=Attr("name").eq(name))]

  def get_post(self, post_id: str) -> Optional[Dict[str, Any]]:
    item = self.posts_table.get_item(Key={"id": post_id}).get("Item")
    if not item:
      return None
    return _normalise_post(item)

  def create_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
    item = to_dynamo_compatible({key: val for key, val in post.items() if key != "likes"})
    self.posts_table.put_item(Item=item, ConditionExpression=Attr("id").not_exists())
    return _normalise_post(item)

  def update_post(self, post_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Apply ``fields`` to an existing post; ``None`` when the post is gone.

    Fields whose value is ``None`` are removed from the item.
    """
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    assignments: List[str] = []
    removals: List[str] = []
    for index, (key, value) in enumerate(fields.items()):
      names[f"#f{index}"] = key
      if value is None:
        removals.append(f"#f{index}")
        continue
      values[f":v{index}"] = to_dynamo_compatible(value)
      assignments.append(f"#f{index} = :v{index}")
    if not names:
      return self.get_post(post_id)

    clauses: List[str] = []
    if assignments:
      clauses.append("SET " + ", ".join(assignments))
    if removals:
      clauses.append("REMOVE " + ", ".join(removals))
    update_kwargs: Dict[str, Any] = {
      "Key": {"id": post_id},
      "UpdateExpression": " ".join(clauses),
      "ConditionExpression": Attr("id").exists(),
      "ExpressionAttributeNames": names,
      "ReturnValues": "ALL_NEW",
    }
    if values:
      update_kwargs["ExpressionAttributeValues"] = values

    try:
      response = self.posts_table.update_item(**update_kwargs)
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return _normalise_post(response["Attributes"])

  def delete_post(self, post_id: str) -> Optional[Dict[str, Any]]:
    """Remove a post and return the deleted item, or ``None`` if it did not exist."""
    response = self.posts_table.delete_item(Key={"id": post_id}, ReturnValues="ALL_OLD")
    item = response.get("Attributes")
    if not item:
      return None
    return _normalise_post(item)

  def _update_likes(self, post_id: str, action: str, user_id: str) -> Optional[Dict[str, Any]]:
    try:
      response = self.posts_table.update_item(
        Key={"id": post_id},
        UpdateExpression=f"{action} #likes :user",
        ConditionExpression=Attr("id").exists(),
        ExpressionAttributeNames={"#likes": "likes"},
        ExpressionAttributeValues={":user": {user_id}},
        ReturnValues="ALL_NEW",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return _normalise_post(response["Attributes"])

  def like_post(self, post_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    return self._update_likes(post_id, "ADD", user_id)

  def unlike_post(self, post_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    return self._update_likes(post_id, "DELETE", user_id)

  def comment_post(self, post_id: str, value: str) -> Optional[Dict[str, Any]]:
    try:
      response = self.posts_table.update_item(
        Key={"id": post_id},
        UpdateExpression="SET #comments = list_append(if_not_exists(#comments, :empty), :comment)",
        ConditionExpression=Attr("id").exists(),
        ExpressionAttributeNames={"#comments": "comments"},
        ExpressionAttributeValues={":comment": [value], ":empty": []},
        ReturnValues="ALL_NEW",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    return _normalise_post(response["Attributes"])

  # Users -------------------------------------------------------------------

  def get_user(self, email: str) -> Optional[Dict[str, Any]]:
    item = self.users_table.get_item(Key={"email": email.lower()}).get("Item")
    if not item:
      return None
    return from_dynamo(item)

  def create_user(self, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Persist ``user`` unless the email is taken, in which case return ``None``."""
    item = to_dynamo_compatible(user)
    try:
      self.users_table.put_item(
        Item=item,
        ConditionExpression="attribute_not_exists(email)",
      )
    except ClientError as exc:
      if _is_conditional_failure(exc):
        return None
      raise
    logger.info("Created user %s", item.get("id"))
    return from_dynamo(item)


__all__ = [
  "DynamoStore",
  "build_dynamo_table",
  "from_dynamo",
  "to_dynamo_compatible",
]
