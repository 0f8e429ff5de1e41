"""Tests for the Strava client: OAuth helpers, activity mapping and import."""

import time
from unittest.mock import MagicMock, patch

import pytest

from models import RunningEvent, StravaToken
from strava_client import StravaClient, StravaError


def make_response(ok=True, payload=None, text=""):
    response = MagicMock()
    response.ok = ok
    response.json.return_value = payload
    response.text = text
    return response


def make_activity(activity_id=101, **overrides):
    activity = {
        "id": activity_id,
        "name": "Morning Run",
        "type": "Run",
        "start_date": "2026-04-02T05:30:00Z",
        "start_date_local": "2026-04-02T07:30:00Z",
        "distance": 10234.5,
        "moving_time": 3030,
        "average_speed": 3.3775,
        "average_heartrate": 148.6,
    }
    activity.update(overrides)
    return activity


def make_token(db_session, expires_in=3600):
    token = StravaToken(
        athlete_id="42",
        access_token="access-old",
        refresh_token="refresh-old",
        expires_at=int(time.time()) + expires_in,
        athlete_name="Ana Runner",
    )
    db_session.add(token)
    db_session.commit()
    return token


class TestOAuth:
    def test_authorization_url(self):
        url = StravaClient.get_authorization_url("http://localhost:8001/api/strava/callback", state="xyz")
        assert url.startswith("https://www.strava.com/oauth/authorize?")
        assert "response_type=code" in url
        assert "scope=read%2Cactivity%3Aread_all" in url
        assert "redirect_uri=http%3A%2F%2Flocalhost%3A8001%2Fapi%2Fstrava%2Fcallback" in url
        assert "state=xyz" in url

    @patch("strava_client.requests.post")
    def test_exchange_code(self, mock_post):
        mock_post.return_value = make_response(payload={"access_token": "a", "athlete": {"id": 1}})
        data = StravaClient.exchange_code_for_tokens("the-code")

        assert data["access_token"] == "a"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["code"] == "the-code"
        assert sent["grant_type"] == "authorization_code"

    @patch("strava_client.requests.post")
    def test_failed_exchange_raises(self, mock_post):
        mock_post.return_value = make_response(ok=False, text="Bad Request")
        with pytest.raises(StravaError, match="Bad Request"):
            StravaClient.exchange_code_for_tokens("expired")

    def test_save_athlete_tokens_upserts(self, db_session):
        payload = {
            "access_token": "a1",
            "refresh_token": "r1",
            "expires_at": 1_900_000_000,
            "athlete": {"id": 42, "firstname": "Ana", "lastname": "Runner", "profile": "https://img/ana.jpg"},
        }
        StravaClient.save_athlete_tokens(payload, db_session)
        StravaClient.save_athlete_tokens({**payload, "access_token": "a2"}, db_session)

        tokens = db_session.query(StravaToken).all()
        assert len(tokens) == 1
        assert tokens[0].athlete_id == "42"
        assert tokens[0].access_token == "a2"
        assert tokens[0].athlete_name == "Ana Runner"


class TestTokenRefresh:
    def test_fresh_token_is_reused(self, db_session):
        token = make_token(db_session)
        with patch.object(StravaClient, "refresh_access_token") as mock_refresh:
            assert StravaClient.ensure_fresh_token(token, db_session) == "access-old"
        mock_refresh.assert_not_called()

    def test_token_near_expiry_is_refreshed(self, db_session):
        token = make_token(db_session, expires_in=60)
        new_expiry = int(time.time()) + 21600
        with patch.object(StravaClient, "refresh_access_token", return_value={
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_at": new_expiry,
        }) as mock_refresh:
            assert StravaClient.ensure_fresh_token(token, db_session) == "access-new"

        mock_refresh.assert_called_once_with("refresh-old")
        db_session.expire_all()
        stored = db_session.query(StravaToken).one()
        assert stored.refresh_token == "refresh-new"
        assert stored.expires_at == new_expiry


class TestActivityMapping:
    @pytest.mark.parametrize("overrides,expected", [
        ({"type": "Ride"}, "cycling"),
        ({"type": "Hike"}, "walk"),
        ({"type": "Swim"}, "swim"),
        ({"type": "WeightTraining"}, "strength"),
        ({"type": "Yoga"}, "recovery"),
        ({"type": "Kitesurf"}, "other"),
        ({"workout_type": 1}, "race"),
        ({"workout_type": 2}, "long"),
        ({"workout_type": 3, "distance": 8000, "moving_time": 2160}, "intervals"),
        ({"workout_type": 3, "distance": 8000, "moving_time": 2640}, "tempo"),
        ({"distance": 21100, "moving_time": 6600}, "long"),
        ({"distance": 5000, "moving_time": 1950}, "recovery"),
        ({"distance": 10000, "moving_time": 3300}, "easy"),
    ])
    def test_map_activity_type(self, overrides, expected):
        assert StravaClient.map_activity_type(make_activity(**overrides)) == expected

    def test_sport_type_used_when_type_missing(self):
        assert StravaClient.map_activity_type(make_activity(type=None, sport_type="GravelRide")) == "cycling"

    @pytest.mark.parametrize("speed,expected", [
        (3.3333, "5:00"),
        (2.7778, "6:00"),
        (4.0, "4:10"),
        (0, "-"),
        (None, "-"),
    ])
    def test_format_pace(self, speed, expected):
        assert StravaClient.format_pace(speed) == expected

    def test_activity_to_event(self):
        event = StravaClient.activity_to_event(make_activity())
        assert event.date.isoformat() == "2026-04-02"
        assert event.type == "easy"
        assert event.title == "Morning Run"
        assert event.distance == 10.23
        assert event.duration == 50
        assert event.pace == "4:56"
        assert event.heart_rate == 149
        assert event.completed is True
        assert event.strava_id == "101"


class TestImport:
    def test_import_skips_duplicates(self, db_session):
        assert StravaClient.import_activity(make_activity(), db_session) is True
        db_session.commit()
        assert StravaClient.import_activity(make_activity(), db_session) is False
        assert db_session.query(RunningEvent).count() == 1

    @patch("strava_client.requests.get")
    def test_sync_recent_activities(self, mock_get, db_session):
        token = make_token(db_session)
        StravaClient.import_activity(make_activity(1), db_session)
        db_session.commit()
        mock_get.return_value = make_response(payload=[make_activity(1), make_activity(2), make_activity(3, type="Ride")])

        counts = StravaClient.sync_recent_activities(token, db_session, days=7)

        assert counts == {"imported": 2, "skipped": 1, "total": 3}
        params = mock_get.call_args.kwargs["params"]
        assert params["per_page"] == 50
        assert params["after"] <= int(time.time()) - 7 * 86400 + 5
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer access-old"
        types = sorted(e.type for e in db_session.query(RunningEvent).all())
        assert types == ["cycling", "easy", "easy"]


class TestWebhookSubscriptions:
    @patch("strava_client.requests.post")
    def test_subscribe(self, mock_post):
        mock_post.return_value = make_response(payload={"id": 7})
        assert StravaClient.subscribe_to_webhooks("https://coach.example/api/strava/webhook") == {"id": 7}
        sent = mock_post.call_args.kwargs["data"]
        assert sent["callback_url"] == "https://coach.example/api/strava/webhook"
        assert "verify_token" in sent

    @patch("strava_client.requests.delete")
    def test_delete_failure_raises(self, mock_delete):
        mock_delete.return_value = make_response(ok=False, text="Not Found")
        with pytest.raises(StravaError):
            StravaClient.delete_webhook_subscription(7)
