"""
Tests for the message store and the message routes.

Tests cover:
- Sending and idempotent re-sending
- Idempotency races resolved by the storage constraint
- Authorization (NotFound before Forbidden)
- Body validation
- Cursor pagination, including the exact-limit boundary
- Pluggable body transform
"""

import math
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from messenger import messages
from messenger.conversations import create_direct as store_direct
from messenger.errors import NotFoundError
from messenger.main import app
from messenger.models import Message
from messenger.storage import SessionLocal, create_user as store_user

from helpers import ReversingCrypto, auth, create_direct, create_user, send


@pytest.fixture
def pair(client):
    """Two users sharing a DIRECT conversation."""
    alice = create_user(client, "alice")
    bob = create_user(client, "bob")
    conv_id = create_direct(client, alice, bob)
    return alice, bob, conv_id


@pytest.fixture
def stored_pair(db):
    alice = store_user(db, "alice").id
    bob = store_user(db, "bob").id
    conv_id = store_direct(db, alice, bob).id
    return alice, bob, conv_id


def message_rows(conv_id):
    with SessionLocal() as s:
        return s.query(Message).filter(Message.conversation_id == conv_id).count()


class TestSendMessage:

    def test_send_success(self, client, pair):
        alice, _, conv_id = pair
        response = send(client, conv_id, alice, "hello")

        assert response.status_code == 201
        data = response.json()
        assert data["body"] == "hello"
        assert data["senderId"] == alice
        assert data["senderUsername"] == "alice"
        assert data["senderDisplayName"] == "alice"
        assert data["status"] == "created"
        assert data["createdAt"].endswith("Z")

    def test_ids_strictly_increase(self, client, pair):
        alice, bob, conv_id = pair
        ids = [send(client, conv_id, sender, f"m{i}").json()["id"] for i, sender in enumerate([alice, bob, alice])]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3

    def test_duplicate_key_returns_original(self, client, pair):
        alice, _, conv_id = pair
        first = send(client, conv_id, alice, "hello", key="k1")
        second = send(client, conv_id, alice, "hello", key="k1")

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["body"] == first.json()["body"]
        assert second.json()["status"] == "duplicate"
        assert message_rows(conv_id) == 1

    def test_duplicate_key_ignores_new_body(self, client, pair):
        alice, _, conv_id = pair
        first = send(client, conv_id, alice, "original", key="k1")
        second = send(client, conv_id, alice, "edited", key="k1")

        assert second.json()["id"] == first.json()["id"]
        assert second.json()["body"] == "original"

    def test_same_key_in_other_conversation_is_independent(self, client, pair):
        alice, _, conv_id = pair
        carol = create_user(client, "carol")
        other_id = create_direct(client, alice, carol)

        first = send(client, conv_id, alice, "hi", key="k1")
        second = send(client, other_id, alice, "hi", key="k1")

        assert first.json()["id"] != second.json()["id"]

    def test_blank_key_does_not_deduplicate(self, client, pair):
        alice, _, conv_id = pair
        first = send(client, conv_id, alice, "hi", key="   ")
        second = send(client, conv_id, alice, "hi", key="   ")

        assert first.json()["id"] != second.json()["id"]
        assert message_rows(conv_id) == 2

    def test_keys_differing_in_whitespace_are_distinct(self, client, pair):
        alice, _, conv_id = pair
        first = send(client, conv_id, alice, "one", key="k1")
        second = send(client, conv_id, alice, "two", key=" k1")

        assert second.json()["status"] == "created"
        assert second.json()["id"] != first.json()["id"]
        assert second.json()["body"] == "two"
        assert message_rows(conv_id) == 2

    def test_snake_case_request_fields(self, client, pair):
        alice, _, conv_id = pair
        payload = {"body": "hi", "idempotency_key": "snake"}
        first = client.post(f"/api/v1/conversations/{conv_id}/messages", json=payload, headers=auth(alice))
        second = client.post(f"/api/v1/conversations/{conv_id}/messages", json=payload, headers=auth(alice))

        assert first.json()["id"] == second.json()["id"]


class TestIdempotencyRace:

    def test_lookup_miss_resolved_by_constraint(self, db, stored_pair, monkeypatch):
        """A writer that missed the lookup falls back to the row the constraint protects."""
        alice, _, conv_id = stored_pair
        first, created = messages.append_message(db, conv_id, alice, "hello", "k1")
        first_id = first.id
        assert created is True

        real_lookup = messages.find_by_idempotency_key
        calls = {"n": 0}

        def lookup_misses_once(session, conversation_id, key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_lookup(session, conversation_id, key)

        monkeypatch.setattr(messages, "find_by_idempotency_key", lookup_misses_once)
        second, created = messages.append_message(db, conv_id, alice, "hello", "k1")

        assert created is False
        assert second.id == first_id
        assert message_rows(conv_id) == 1

    def test_concurrent_sends_with_fresh_key(self, stored_pair):
        alice, bob, conv_id = stored_pair
        barrier = threading.Barrier(2)

        def worker(sender):
            with SessionLocal() as s:
                barrier.wait()
                message, _ = messages.append_message(s, conv_id, sender, "hello", "fresh")
                return message.id

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(worker, sender) for sender in (alice, bob)]
            ids = [f.result() for f in futures]

        assert ids[0] == ids[1]
        assert message_rows(conv_id) == 1


class TestMessageStore:

    def test_unknown_conversation(self, db, stored_pair):
        alice, _, _ = stored_pair
        with pytest.raises(NotFoundError):
            messages.append_message(db, 999, alice, "hi")

    def test_unknown_sender(self, db, stored_pair):
        _, _, conv_id = stored_pair
        with pytest.raises(NotFoundError):
            messages.append_message(db, conv_id, 999, "hi")

    def test_list_all_oldest_first(self, db, stored_pair):
        alice, bob, conv_id = stored_pair
        for i, sender in enumerate([alice, bob, alice]):
            messages.append_message(db, conv_id, sender, f"m{i}")

        rows = messages.list_all(db, conv_id)
        assert [r.body for r in rows] == ["m0", "m1", "m2"]

    def test_list_all_unknown_conversation(self, db):
        with pytest.raises(NotFoundError):
            messages.list_all(db, 999)


class TestAuthorization:

    def test_non_participant_cannot_send(self, client, pair):
        _, _, conv_id = pair
        mallory = create_user(client, "mallory")

        response = send(client, conv_id, mallory, "hi")

        assert response.status_code == 403
        assert response.json()["kind"] == "forbidden"
        assert message_rows(conv_id) == 0

    def test_non_participant_cannot_list(self, client, pair):
        alice, _, conv_id = pair
        send(client, conv_id, alice, "secret")
        mallory = create_user(client, "mallory")

        response = client.get(f"/api/v1/conversations/{conv_id}/messages", headers=auth(mallory))

        assert response.status_code == 403
        assert "secret" not in response.text

    def test_unknown_conversation_is_not_found_for_send(self, client, pair):
        mallory = create_user(client, "mallory")
        response = send(client, 9999, mallory, "hi")

        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_unknown_conversation_is_not_found_for_list(self, client, pair):
        alice, _, _ = pair
        response = client.get("/api/v1/conversations/9999/messages", headers=auth(alice))
        assert response.status_code == 404

    def test_missing_principal(self, client, pair):
        _, _, conv_id = pair
        response = client.post(f"/api/v1/conversations/{conv_id}/messages", json={"body": "hi"})
        assert response.status_code == 401

    def test_unknown_principal(self, client, pair):
        _, _, conv_id = pair
        response = send(client, conv_id, 424242, "hi")
        assert response.status_code == 401


class TestValidation:

    def test_missing_body(self, client, pair):
        alice, _, conv_id = pair
        response = client.post(f"/api/v1/conversations/{conv_id}/messages", json={}, headers=auth(alice))
        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    def test_empty_body(self, client, pair):
        alice, _, conv_id = pair
        assert send(client, conv_id, alice, "").status_code == 400

    def test_blank_body(self, client, pair):
        alice, _, conv_id = pair
        assert send(client, conv_id, alice, "   ").status_code == 400

    def test_body_at_limit(self, client, pair):
        alice, _, conv_id = pair
        assert send(client, conv_id, alice, "x" * 4096).status_code == 201

    def test_body_too_long(self, client, pair):
        alice, _, conv_id = pair
        assert send(client, conv_id, alice, "x" * 4097).status_code == 400


class TestPagination:

    def fetch_all_pages(self, client, conv_id, user_id, limit):
        pages = []
        cursor = None
        while True:
            params = {"limit": limit}
            if cursor is not None:
                params["cursor"] = cursor
            response = client.get(f"/api/v1/conversations/{conv_id}/messages", params=params, headers=auth(user_id))
            assert response.status_code == 200
            page = response.json()
            pages.append(page)
            cursor = page["nextCursor"]
            if cursor is None:
                return pages

    @pytest.mark.parametrize("total,limit", [(7, 3), (5, 10), (3, 2), (10, 4)])
    def test_pages_cover_every_message(self, client, pair, total, limit):
        alice, bob, conv_id = pair
        sent = [send(client, conv_id, alice, f"m{i}").json()["id"] for i in range(total)]

        pages = self.fetch_all_pages(client, conv_id, bob, limit)
        items = [item["id"] for page in pages for item in page["items"]]

        assert items == sent
        assert len(pages) == math.ceil(total / limit)
        assert all(page["nextCursor"] is not None for page in pages[:-1])
        assert pages[-1]["nextCursor"] is None

    def test_exact_limit_boundary_costs_one_empty_page(self, client, pair):
        """A full last page still carries a cursor; the follow-up page is empty."""
        alice, bob, conv_id = pair
        for i in range(6):
            send(client, conv_id, alice, f"m{i}")

        pages = self.fetch_all_pages(client, conv_id, bob, 3)

        assert [len(p["items"]) for p in pages] == [3, 3, 0]
        assert pages[1]["nextCursor"] == pages[1]["items"][-1]["id"]
        assert pages[2] == {"items": [], "nextCursor": None}

    def test_default_and_capped_limit(self, client, pair):
        alice, _, conv_id = pair
        for i in range(3):
            send(client, conv_id, alice, f"m{i}")

        default = client.get(f"/api/v1/conversations/{conv_id}/messages", headers=auth(alice)).json()
        capped = client.get(
            f"/api/v1/conversations/{conv_id}/messages", params={"limit": 1000}, headers=auth(alice)
        ).json()

        assert len(default["items"]) == 3
        assert default["nextCursor"] is None
        assert len(capped["items"]) == 3

    def test_cursor_is_exclusive(self, client, pair):
        alice, _, conv_id = pair
        ids = [send(client, conv_id, alice, f"m{i}").json()["id"] for i in range(3)]

        response = client.get(
            f"/api/v1/conversations/{conv_id}/messages", params={"cursor": ids[0]}, headers=auth(alice)
        )

        assert [item["id"] for item in response.json()["items"]] == ids[1:]

    def test_empty_conversation(self, client, pair):
        alice, _, conv_id = pair
        response = client.get(f"/api/v1/conversations/{conv_id}/messages", headers=auth(alice))
        assert response.json() == {"items": [], "nextCursor": None}


class TestBodyTransform:

    def test_bodies_stored_encrypted_and_read_decrypted(self, client, pair, monkeypatch):
        alice, bob, conv_id = pair
        monkeypatch.setattr(app.state, "crypto", ReversingCrypto())

        sent = send(client, conv_id, alice, "hello")
        listed = client.get(f"/api/v1/conversations/{conv_id}/messages", headers=auth(bob)).json()

        assert sent.json()["body"] == "hello"
        assert listed["items"][0]["body"] == "hello"
        with SessionLocal() as s:
            assert s.query(Message).one().body == "olleh"
