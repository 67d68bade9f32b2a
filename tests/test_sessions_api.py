"""
Tests for session endpoints: creation, detail, join and moderator transitions.
"""

import uuid

import pytest

from models import EventLog, Participant, TastingSession, SessionStatus
from services.naming_service import INVITE_CODE_ALPHABET
from tests.conftest import (
    create_session,
    join_session,
    make_user,
    participant_headers,
    session_payload,
    user_headers,
)


class TestCreateSession:

    def test_create_returns_code_and_moderator_seat(self, client, db_session, moderator, moderator_headers):
        body = create_session(client, moderator_headers)

        assert len(body["inviteCode"]) == 6
        assert set(body["inviteCode"]) <= set(INVITE_CODE_ALPHABET)
        assert body["participantToken"]

        session = db_session.query(TastingSession).filter(TastingSession.id == uuid.UUID(body["id"])).one()
        assert session.status == SessionStatus.WAITING
        assert session.moderator_id == moderator.id
        assert [w.display_number for w in session.whiskeys] == [1, 2, 3]

        host = db_session.query(Participant).filter(Participant.id == uuid.UUID(body["participantId"])).one()
        assert host.user_id == moderator.id
        assert host.is_ready is True

        assert db_session.query(EventLog).filter(EventLog.event_type == "SESSION_CREATED").count() == 1

    def test_create_as_draft(self, client, moderator_headers):
        body = create_session(client, moderator_headers, draft=True)
        detail = client.get(f"/api/sessions/{body['id']}", headers=moderator_headers).json()
        assert detail["status"] == "draft"

    def test_requires_user_token(self, client):
        response = client.post("/api/sessions", json=session_payload())
        assert response.status_code == 401

    def test_rejects_invalid_token(self, client):
        response = client.post(
            "/api/sessions",
            json=session_payload(),
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401

    @pytest.mark.parametrize("overrides,message", [
        ({"whiskeys": []}, "At least one whiskey is required"),
        ({"count": 7}, "Maximum 6 whiskeys allowed"),
        ({"theme": "custom"}, "Custom theme name is required"),
        ({"proofMin": 120, "proofMax": 90}, "proofMin cannot be greater than proofMax"),
    ])
    def test_validation(self, client, moderator_headers, overrides, message):
        count = overrides.pop("count", 3)
        response = client.post("/api/sessions", json=session_payload(count, **overrides), headers=moderator_headers)

        assert response.status_code == 422
        assert response.json()["detail"] == message

    def test_custom_theme_accepted_with_name(self, client, moderator_headers):
        body = create_session(client, moderator_headers, theme="custom", customTheme="Cask strength")
        detail = client.get(f"/api/sessions/{body['id']}", headers=moderator_headers).json()
        assert detail["theme"] == "custom"
        assert detail["customTheme"] == "Cask strength"


class TestSessionDetail:

    def test_identities_hidden_from_participants(self, client, tasting):
        response = client.get(
            f"/api/sessions/{tasting['session_id']}",
            headers=participant_headers(tasting["guest_token"]),
        )
        body = response.json()

        assert response.status_code == 200
        assert body["isModerator"] is False
        assert body["currentParticipantId"] == tasting["guest_participant_id"]
        for whiskey in body["whiskeys"]:
            assert whiskey["name"] is None
            assert whiskey["distillery"] is None
            assert whiskey["displayNumber"] in (1, 2, 3)

    def test_identities_visible_to_moderator(self, client, tasting, moderator_headers):
        body = client.get(f"/api/sessions/{tasting['session_id']}", headers=moderator_headers).json()

        assert body["isModerator"] is True
        assert [w["name"] for w in body["whiskeys"]] == ["Whiskey 1", "Whiskey 2", "Whiskey 3"]
        assert [p["displayName"] for p in body["participants"]] == ["Host", "Alice"]

    def test_moderator_recognised_through_participant_token(self, client, tasting):
        body = client.get(
            f"/api/sessions/{tasting['session_id']}",
            headers=participant_headers(tasting["moderator_token"]),
        ).json()
        assert body["isModerator"] is True

    def test_unknown_session(self, client):
        response = client.get(f"/api/sessions/{uuid.uuid4()}")
        assert response.status_code == 404

    def test_reads_are_idempotent(self, client, tasting):
        headers = participant_headers(tasting["guest_token"])
        first = client.get(f"/api/sessions/{tasting['session_id']}", headers=headers).json()
        second = client.get(f"/api/sessions/{tasting['session_id']}", headers=headers).json()
        assert first == second

    def test_list_my_sessions(self, client, db_session, moderator_headers):
        create_session(client, moderator_headers, name="First")
        create_session(client, moderator_headers, name="Second")
        other = make_user(db_session, "Other")
        create_session(client, user_headers(other), name="Not mine")

        body = client.get("/api/sessions", headers=moderator_headers).json()
        assert sorted(s["name"] for s in body) == ["First", "Second"]


class TestJoin:

    def test_join_normalizes_code(self, client, tasting, recorder):
        code = tasting["invite_code"].lower()
        response = join_session(client, f"{code[:3]}-{code[3:]}", "Bob")

        assert response.status_code == 201
        body = response.json()
        assert body["sessionId"] == tasting["session_id"]
        assert body["isModerator"] is False
        assert body["session"]["status"] == "waiting"

        joined = recorder.messages("participant:joined")
        assert joined[-1]["displayName"] == "Bob"
        assert joined[-1]["isReady"] is False

    def test_unknown_code(self, client):
        response = join_session(client, "ZZZZZZ", "Bob")
        assert response.status_code == 404

    def test_blank_display_name(self, client, tasting):
        response = join_session(client, tasting["invite_code"], "   ")
        assert response.status_code == 422

    def test_capacity_counts_every_seat(self, client, moderator_headers):
        # The host's own seat is the first of two
        created = create_session(client, moderator_headers, maxParticipants=2)

        assert join_session(client, created["inviteCode"], "First").status_code == 201
        response = join_session(client, created["inviteCode"], "Second")

        assert response.status_code == 409
        assert response.json()["detail"] == "Session is full"

    def test_host_seat_fills_single_seat_session(self, client, moderator_headers):
        created = create_session(client, moderator_headers, maxParticipants=1)

        assert join_session(client, created["inviteCode"], "First").status_code == 409
        rejoin = join_session(client, created["inviteCode"], "Host", headers=moderator_headers)
        assert rejoin.status_code == 200

    def test_moderator_rejoin_returns_same_seat(self, client, tasting, moderator_headers, recorder):
        joined_before = len(recorder.messages("participant:joined"))
        response = join_session(client, tasting["invite_code"], "Host again", headers=moderator_headers)

        assert response.status_code == 200
        assert response.json()["participantId"] == tasting["moderator_participant_id"]
        assert response.json()["isModerator"] is True
        assert len(recorder.messages("participant:joined")) == joined_before

    def test_registered_user_gets_one_seat(self, client, db_session, tasting):
        user = make_user(db_session, "Carol")
        first = join_session(client, tasting["invite_code"], "Carol", headers=user_headers(user))
        second = join_session(client, tasting["invite_code"], "Carol", headers=user_headers(user))

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["participantId"] == second.json()["participantId"]
        assert db_session.query(Participant).filter(Participant.user_id == user.id).count() == 1

    def test_completed_session_rejects_joins(self, client, active_tasting, moderator_headers):
        client.post(f"/api/sessions/{active_tasting['session_id']}/end", headers=moderator_headers)

        response = join_session(client, active_tasting["invite_code"], "Late")
        assert response.status_code == 409

    def test_join_sets_cookie(self, client, tasting):
        response = client.post(
            "/api/sessions/join",
            json={"inviteCode": tasting["invite_code"], "displayName": "Dave"},
        )
        assert response.cookies.get("participantToken") == response.json()["participantToken"]
        client.cookies.clear()


class TestModeratorTransitions:

    def test_start_broadcasts(self, client, tasting, moderator_headers, recorder):
        response = client.post(f"/api/sessions/{tasting['session_id']}/start", headers=moderator_headers)

        assert response.status_code == 200
        room = f"session:{tasting['session_id']}"
        assert recorder.events(room)[-1] == "session:started"

    @pytest.mark.parametrize("action", ["start", "pause", "resume", "reveal", "end", "advance"])
    def test_participants_cannot_drive_the_session(self, client, tasting, action, recorder):
        before = list(recorder.published)
        response = client.post(
            f"/api/sessions/{tasting['session_id']}/{action}",
            headers=participant_headers(tasting["guest_token"]),
        )

        assert response.status_code == 403
        assert response.json()["detail"].startswith("Only the moderator can")
        assert recorder.published == before

    def test_anonymous_caller_gets_401(self, client, tasting):
        response = client.post(f"/api/sessions/{tasting['session_id']}/start")
        assert response.status_code == 401

    def test_other_user_is_not_moderator(self, client, db_session, tasting):
        other = make_user(db_session, "Other")
        response = client.post(f"/api/sessions/{tasting['session_id']}/start", headers=user_headers(other))
        assert response.status_code == 403

    def test_moderator_participant_token_can_start(self, client, tasting):
        response = client.post(
            f"/api/sessions/{tasting['session_id']}/start",
            headers=participant_headers(tasting["moderator_token"]),
        )
        assert response.status_code == 200

    def test_pause_and_resume(self, client, active_tasting, moderator_headers, recorder):
        sid = active_tasting["session_id"]

        assert client.post(f"/api/sessions/{sid}/pause", headers=moderator_headers).status_code == 200
        assert client.post(f"/api/sessions/{sid}/pause", headers=moderator_headers).status_code == 409
        assert client.post(f"/api/sessions/{sid}/advance", headers=moderator_headers).status_code == 409
        assert client.post(f"/api/sessions/{sid}/resume", headers=moderator_headers).status_code == 200

        assert recorder.events(f"session:{sid}")[-2:] == ["session:paused", "session:resumed"]

    def test_start_twice_conflicts(self, client, active_tasting, moderator_headers):
        response = client.post(f"/api/sessions/{active_tasting['session_id']}/start", headers=moderator_headers)
        assert response.status_code == 409

    def test_reveal_before_start_conflicts(self, client, tasting, moderator_headers):
        response = client.post(f"/api/sessions/{tasting['session_id']}/reveal", headers=moderator_headers)
        assert response.status_code == 409

    def test_unknown_session(self, client, moderator_headers):
        response = client.post(f"/api/sessions/{uuid.uuid4()}/start", headers=moderator_headers)
        assert response.status_code == 404

    @pytest.mark.parametrize("action", ["start", "pause", "resume", "reveal", "end", "advance"])
    def test_completed_is_terminal(self, client, active_tasting, moderator_headers, action, recorder):
        sid = active_tasting["session_id"]
        client.post(f"/api/sessions/{sid}/end", headers=moderator_headers)
        before = list(recorder.published)

        response = client.post(f"/api/sessions/{sid}/{action}", headers=moderator_headers)

        assert response.status_code == 409
        assert response.json()["detail"] == "Session has ended"
        assert recorder.published == before
        assert client.get(f"/api/sessions/{sid}").json()["status"] == "completed"


class TestAdvance:

    def test_bare_advance(self, client, active_tasting, moderator_headers, recorder):
        sid = active_tasting["session_id"]
        response = client.post(f"/api/sessions/{sid}/advance", headers=moderator_headers)

        assert response.status_code == 200
        assert response.json() == {"phase": "nosing", "whiskeyIndex": 0}
        assert recorder.messages("session:advanced")[-1] == {
            "sessionId": sid,
            "phase": "nosing",
            "whiskeyIndex": 0,
        }

    def test_jump(self, client, active_tasting, moderator_headers):
        sid = active_tasting["session_id"]
        response = client.post(
            f"/api/sessions/{sid}/advance",
            json={"phase": "scoring", "whiskeyIndex": 2},
            headers=moderator_headers,
        )
        assert response.json() == {"phase": "scoring", "whiskeyIndex": 2}

    def test_index_jump_keeps_phase(self, client, active_tasting, moderator_headers):
        sid = active_tasting["session_id"]
        client.post(f"/api/sessions/{sid}/advance", json={"phase": "scoring"}, headers=moderator_headers)
        response = client.post(f"/api/sessions/{sid}/advance", json={"whiskeyIndex": 1}, headers=moderator_headers)

        assert response.status_code == 200
        assert response.json() == {"phase": "scoring", "whiskeyIndex": 1}

    def test_index_out_of_range(self, client, active_tasting, moderator_headers):
        response = client.post(
            f"/api/sessions/{active_tasting['session_id']}/advance",
            json={"whiskeyIndex": 3},
            headers=moderator_headers,
        )
        assert response.status_code == 422

    def test_unknown_phase(self, client, active_tasting, moderator_headers):
        response = client.post(
            f"/api/sessions/{active_tasting['session_id']}/advance",
            json={"phase": "gargling"},
            headers=moderator_headers,
        )
        assert response.status_code == 422

    def test_walks_whole_flight_then_stops(self, client, active_tasting, moderator_headers):
        sid = active_tasting["session_id"]
        for _ in range(3 * 6):
            assert client.post(f"/api/sessions/{sid}/advance", headers=moderator_headers).status_code == 200

        detail = client.get(f"/api/sessions/{sid}").json()
        assert detail["currentWhiskeyIndex"] == 3

        response = client.post(f"/api/sessions/{sid}/advance", headers=moderator_headers)
        assert response.status_code == 409
        assert response.json()["detail"] == "All whiskeys have been tasted"


class TestUpdateWhiskey:

    def test_moderator_edits_before_start(self, client, tasting, moderator_headers):
        sid, wid = tasting["session_id"], tasting["whiskey_ids"][0]
        response = client.put(
            f"/api/sessions/{sid}/whiskeys/{wid}",
            json={"name": "Renamed", "proof": 101.5},
            headers=moderator_headers,
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["proof"] == 101.5
        assert response.json()["distillery"] == "Distillery 1"

    @pytest.mark.parametrize("field", ["name", "distillery", "proof", "pourSize"])
    def test_required_fields_cannot_be_nulled(self, client, tasting, moderator_headers, field):
        sid, wid = tasting["session_id"], tasting["whiskey_ids"][0]
        response = client.put(f"/api/sessions/{sid}/whiskeys/{wid}", json={field: None}, headers=moderator_headers)

        assert response.status_code == 422
        assert response.json()["detail"] == f"{field} cannot be null"

    def test_optional_fields_can_be_cleared(self, client, tasting, moderator_headers):
        sid, wid = tasting["session_id"], tasting["whiskey_ids"][0]
        response = client.put(f"/api/sessions/{sid}/whiskeys/{wid}", json={"age": None}, headers=moderator_headers)

        assert response.status_code == 200
        assert response.json()["age"] is None

    def test_locked_after_start(self, client, active_tasting, moderator_headers):
        sid, wid = active_tasting["session_id"], active_tasting["whiskey_ids"][0]
        response = client.put(f"/api/sessions/{sid}/whiskeys/{wid}", json={"name": "Too late"}, headers=moderator_headers)
        assert response.status_code == 409

    def test_participant_cannot_edit(self, client, tasting):
        sid, wid = tasting["session_id"], tasting["whiskey_ids"][0]
        response = client.put(
            f"/api/sessions/{sid}/whiskeys/{wid}",
            json={"name": "Sneaky"},
            headers=participant_headers(tasting["guest_token"]),
        )
        assert response.status_code == 403

    def test_whiskey_from_another_session(self, client, tasting, moderator_headers):
        other = create_session(client, moderator_headers)
        response = client.put(
            f"/api/sessions/{other['id']}/whiskeys/{tasting['whiskey_ids'][0]}",
            json={"name": "Wrong"},
            headers=moderator_headers,
        )
        assert response.status_code == 404
