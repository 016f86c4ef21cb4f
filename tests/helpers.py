"""Shared test doubles and API helpers."""

import json
import time


class FakeChannel:
    """Push channel that records every envelope it is sent."""

    def __init__(self):
        self.sent = []
        self.close_codes = []

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)


class FailingChannel:
    """Push channel whose peer has vanished."""

    def __init__(self):
        self.attempts = 0
        self.close_codes = []

    async def send_text(self, data: str) -> None:
        self.attempts += 1
        raise RuntimeError("peer vanished")

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)


class UnclosableChannel(FailingChannel):
    """Broken channel that also fails to close."""

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)
        raise RuntimeError("already closed")


class ReversingCrypto:
    """Stand-in transform that makes stored bodies differ from plaintext."""

    def encrypt(self, conversation_id: int, plaintext: str) -> str:
        return plaintext[::-1]

    def decrypt(self, conversation_id: int, ciphertext: str) -> str:
        return ciphertext[::-1]


def auth(user_id: int) -> dict:
    """Headers carrying the authenticated principal."""
    return {"X-User-Id": str(user_id)}


def create_user(client, username: str) -> int:
    """Helper to create a user via the API."""
    response = client.post("/api/v1/users", json={"username": username})
    assert response.status_code == 201
    return response.json()["id"]


def create_direct(client, user_a: int, user_b: int) -> int:
    response = client.post(
        "/api/v1/conversations",
        json={"type": "DIRECT", "participantIds": [user_a, user_b]},
        headers=auth(user_a),
    )
    assert response.status_code == 201
    return response.json()["id"]


def send(client, conversation_id: int, sender: int, body: str, key: str = None):
    payload = {"body": body}
    if key is not None:
        payload["idempotencyKey"] = key
    return client.post(
        f"/api/v1/conversations/{conversation_id}/messages",
        json=payload,
        headers=auth(sender),
    )


def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true; used for work on the app's event loop thread."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)
