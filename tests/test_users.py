"""Tests for signup, signin and session endpoints."""

from datetime import datetime, timedelta, timezone

import jwt

from socialmediaapi.auth import decode_jwt


def test_signup_returns_user_and_token(client):
  response = client.post(
    "/user/signup",
    json={
      "email": "Grace@Example.com ",
      "password": "hopper123",
      "confirmPassword": "hopper123",
      "firstName": "Grace",
      "lastName": "Hopper",
    },
  )
  assert response.status_code == 201
  body = response.get_json()
  assert body["result"]["email"] == "grace@example.com"
  assert body["result"]["name"] == "Grace Hopper"
  assert "password_hash" not in body["result"]
  assert "password" not in body["result"]

  claims = decode_jwt(body["token"], secret="test-secret")
  assert claims["sub"] == body["result"]["id"]
  assert claims["email"] == "grace@example.com"
  assert claims["name"] == "Grace Hopper"
  assert claims["exp"] - claims["iat"] == 3600


def test_signup_rejects_existing_user(client, signup):
  signup(email="ada@example.com")
  response = client.post(
    "/user/signup",
    json={"email": "ADA@example.com", "password": "other", "firstName": "A", "lastName": "L"},
  )
  assert response.status_code == 400
  assert response.get_json()["message"] == "User already exists"


def test_signup_rejects_password_mismatch(client):
  response = client.post(
    "/user/signup",
    json={
      "email": "x@example.com",
      "password": "one",
      "confirmPassword": "two",
      "firstName": "X",
      "lastName": "Y",
    },
  )
  assert response.status_code == 400
  assert response.get_json()["message"] == "Passwords don't match."


def test_signup_requires_fields(client):
  response = client.post("/user/signup", json={"email": "x@example.com"})
  assert response.status_code == 400


def test_signin_succeeds_with_correct_password(client, signup):
  created = signup(email="ada@example.com", password="analytical")
  response = client.post("/user/signin", json={"email": "ada@example.com", "password": "analytical"})
  assert response.status_code == 200
  body = response.get_json()
  assert body["result"]["id"] == created["user"]["id"]
  assert "password_hash" not in body["result"]
  assert decode_jwt(body["token"], secret="test-secret")["sub"] == created["user"]["id"]


def test_signin_wrong_password(client, signup):
  signup(email="ada@example.com", password="analytical")
  response = client.post("/user/signin", json={"email": "ada@example.com", "password": "nope"})
  assert response.status_code == 400
  assert response.get_json()["message"] == "Invalid credentials"


def test_signin_unknown_user(client):
  response = client.post("/user/signin", json={"email": "ghost@example.com", "password": "boo"})
  assert response.status_code == 404
  assert response.get_json()["message"] == "User doesn't exist"


def test_me_returns_current_user(client, author):
  response = client.get("/user/me", headers=author["headers"])
  assert response.status_code == 200
  assert response.get_json()["result"]["id"] == author["user"]["id"]


def test_me_requires_token(client):
  response = client.get("/user/me")
  assert response.status_code == 401
  assert response.get_json()["message"] == "Authorization header missing or invalid."


def test_expired_token_is_rejected(client, author):
  now = datetime.now(timezone.utc)
  token = jwt.encode(
    {
      "sub": author["user"]["id"],
      "email": author["user"]["email"],
      "iat": now - timedelta(hours=2),
      "exp": now - timedelta(hours=1),
    },
    "test-secret",
    algorithm="HS256",
  )
  response = client.get("/user/me", headers={"Authorization": f"Bearer {token}"})
  assert response.status_code == 401
  assert response.get_json()["message"] == "Token has expired."


def test_token_signed_with_other_secret_is_rejected(client, author):
  token = jwt.encode({"sub": author["user"]["id"]}, "someone-else", algorithm="HS256")
  response = client.get("/user/me", headers={"Authorization": f"Bearer {token}"})
  assert response.status_code == 401
  assert response.get_json()["message"] == "Token is invalid."
