"""
Strava integration for the coach
OAuth tokens, activity import into the running calendar, and push subscriptions.
"""

import os
import logging
import requests
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any
from urllib.parse import urlencode
from sqlalchemy.orm import Session
from models import RunningEvent, StravaToken

logger = logging.getLogger(__name__)

STRAVA_CLIENT_ID = os.getenv("STRAVA_CLIENT_ID")
STRAVA_CLIENT_SECRET = os.getenv("STRAVA_CLIENT_SECRET")
STRAVA_VERIFY_TOKEN = os.getenv("STRAVA_VERIFY_TOKEN", "RUNNING_COACH_STRAVA")

STRAVA_OAUTH_BASE = "https://www.strava.com/oauth"
STRAVA_API_BASE = "https://www.strava.com/api/v3"
STRAVA_TIMEOUT = 30
OAUTH_SCOPE = "read,activity:read_all"
SYNC_PAGE_SIZE = 50

# Refresh tokens that expire within this many seconds
TOKEN_REFRESH_MARGIN = 300

RIDE_TYPES = {"Ride", "VirtualRide", "EBikeRide", "MountainBikeRide", "GravelRide"}
WALK_TYPES = {"Walk", "Hike"}
STRENGTH_TYPES = {"WeightTraining", "Workout", "Crossfit"}
MOBILITY_TYPES = {"Yoga", "Stretching"}
RUN_TYPES = {"Run", "VirtualRun", "TrailRun"}


class StravaError(Exception):
    """A Strava API call failed"""


class StravaClient:
    """Static helpers around the Strava REST API"""

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _app_credentials() -> Dict[str, Any]:
        return {"client_id": STRAVA_CLIENT_ID, "client_secret": STRAVA_CLIENT_SECRET}

    @staticmethod
    def _raise_for_status(response: requests.Response, action: str):
        if not response.ok:
            raise StravaError(f"Failed to {action}: {response.text}")

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @staticmethod
    def _token_request(grant: Dict[str, Any], action: str) -> Dict[str, Any]:
        response = requests.post(
            f"{STRAVA_OAUTH_BASE}/token",
            json={**StravaClient._app_credentials(), **grant},
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, action)
        return response.json()

    @staticmethod
    def _api_get(path: str, access_token: str, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = requests.get(
            f"{STRAVA_API_BASE}{path}",
            headers=StravaClient._bearer(access_token),
            params=params,
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, action)
        return response.json()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @staticmethod
    def get_authorization_url(redirect_uri: str, state: str = "") -> str:
        """URL of Strava's consent page; Strava redirects back to redirect_uri with ?code="""
        params = {
            "client_id": STRAVA_CLIENT_ID,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": OAUTH_SCOPE,
        }
        if state:
            params["state"] = state
        return f"{STRAVA_OAUTH_BASE}/authorize?{urlencode(params)}"

    @staticmethod
    def exchange_code_for_tokens(code: str) -> Dict[str, Any]:
        """Trade the callback code for tokens; the response includes the athlete"""
        return StravaClient._token_request(
            {"code": code, "grant_type": "authorization_code"}, "exchange token"
        )

    @staticmethod
    def refresh_access_token(refresh_token: str) -> Dict[str, Any]:
        return StravaClient._token_request(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}, "refresh token"
        )

    @staticmethod
    def deauthorize(access_token: str) -> None:
        response = requests.post(
            f"{STRAVA_OAUTH_BASE}/deauthorize",
            headers=StravaClient._bearer(access_token),
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, "deauthorize")

    # ------------------------------------------------------------------
    # Stored tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _store_grant(token: StravaToken, token_data: Dict[str, Any]):
        token.access_token = token_data["access_token"]
        token.refresh_token = token_data["refresh_token"]
        token.expires_at = token_data["expires_at"]

    @staticmethod
    def save_athlete_tokens(token_data: Dict[str, Any], db: Session) -> StravaToken:
        """
        Create or update the token row for the athlete in an OAuth response
        """
        athlete = token_data["athlete"]
        athlete_id = str(athlete["id"])

        token = db.query(StravaToken).filter(StravaToken.athlete_id == athlete_id).first()
        if not token:
            token = StravaToken(athlete_id=athlete_id)
            db.add(token)

        StravaClient._store_grant(token, token_data)
        token.athlete_name = f"{athlete.get('firstname', '')} {athlete.get('lastname', '')}".strip()
        token.athlete_profile = athlete.get("profile")
        db.commit()
        db.refresh(token)
        return token

    @staticmethod
    def ensure_fresh_token(token: StravaToken, db: Session) -> str:
        """Access token that stays valid for at least TOKEN_REFRESH_MARGIN seconds"""
        now = int(datetime.now(timezone.utc).timestamp())
        if token.expires_at < now + TOKEN_REFRESH_MARGIN:
            StravaClient._store_grant(token, StravaClient.refresh_access_token(token.refresh_token))
            db.commit()
            logger.info(f"🔄 Refreshed access token for athlete {token.athlete_id}")

        return token.access_token

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    @staticmethod
    def get_athlete_activities(
        access_token: str,
        after: Optional[int] = None,
        per_page: int = 30,
        page: int = 1
    ) -> List[Dict[str, Any]]:
        """
        One page of the athlete's activity summaries, newest first

        Args:
            after: only activities starting after this Unix timestamp
            per_page: page size, Strava caps it at 200
        """
        params = {"per_page": per_page, "page": page}
        if after:
            params["after"] = after
        return StravaClient._api_get("/athlete/activities", access_token, "get activities", params)

    @staticmethod
    def get_activity_details(access_token: str, activity_id: int) -> Dict[str, Any]:
        return StravaClient._api_get(f"/activities/{activity_id}", access_token, "get activity")

    @staticmethod
    def map_activity_type(activity: Dict[str, Any]) -> str:
        """
        Map a Strava activity to a calendar event type

        Runs are classified by Strava's workout_type flag when present
        (1 race, 2 long run, 3 workout), then by distance and pace.
        """
        activity_type = activity.get("type") or activity.get("sport_type")

        if activity_type in RIDE_TYPES:
            return "cycling"
        if activity_type in WALK_TYPES:
            return "walk"
        if activity_type == "Swim":
            return "swim"
        if activity_type in STRENGTH_TYPES:
            return "strength"
        if activity_type in MOBILITY_TYPES:
            return "recovery"

        if activity_type in RUN_TYPES:
            distance_km = (activity.get("distance") or 0) / 1000
            moving_min = (activity.get("moving_time") or 0) / 60
            pace_min_km = moving_min / distance_km if distance_km > 0 else float("inf")

            workout_type = activity.get("workout_type")
            if workout_type == 1:
                return "race"
            if workout_type == 2:
                return "long"
            if workout_type == 3:
                return "intervals" if pace_min_km < 5 else "tempo"

            if distance_km >= 18:
                return "long"
            if distance_km <= 6 and pace_min_km > 6:
                return "recovery"
            return "easy"

        return "other"

    @staticmethod
    def format_pace(speed_ms: Optional[float]) -> str:
        """Convert m/s to a M:SS per km string"""
        if not speed_ms or speed_ms <= 0:
            return "-"
        total_seconds = int(round(1000 / speed_ms))
        minutes, seconds = divmod(total_seconds, 60)
        return f"{minutes}:{seconds:02d}"

    @staticmethod
    def activity_to_event(activity: Dict[str, Any]) -> RunningEvent:
        """
        Convert Strava activity data to a completed calendar event
        """
        local_start = activity.get("start_date_local") or activity["start_date"]
        heart_rate = activity.get("average_heartrate")

        return RunningEvent(
            date=datetime.fromisoformat(local_start[:10]).date(),
            category="running",
            type=StravaClient.map_activity_type(activity),
            title=activity.get("name"),
            distance=round((activity.get("distance") or 0) / 1000, 2),
            duration=int(round((activity.get("moving_time") or 0) / 60)),
            pace=StravaClient.format_pace(activity.get("average_speed")),
            heart_rate=int(round(heart_rate)) if heart_rate else None,
            completed=True,
            strava_id=str(activity["id"]),
        )

    @staticmethod
    def import_activity(activity: Dict[str, Any], db: Session) -> bool:
        """
        Add the activity unless it was imported before

        Returns:
            True if a new event was created
        """
        existing = db.query(RunningEvent).filter(
            RunningEvent.strava_id == str(activity["id"])
        ).first()
        if existing:
            return False

        db.add(StravaClient.activity_to_event(activity))
        # Visible to the next duplicate check in the same batch
        db.flush()
        return True

    @staticmethod
    def sync_recent_activities(token: StravaToken, db: Session, days: int = 30) -> Dict[str, int]:
        """
        Pull the last `days` of activities into the calendar

        Activities already imported (matched on strava_id) are counted as
        skipped, so repeated syncs are harmless.
        """
        access_token = StravaClient.ensure_fresh_token(token, db)
        since = datetime.now(timezone.utc) - timedelta(days=days)
        activities = StravaClient.get_athlete_activities(
            access_token,
            after=int(since.timestamp()),
            per_page=SYNC_PAGE_SIZE
        )

        imported = sum(1 for activity in activities if StravaClient.import_activity(activity, db))
        skipped = len(activities) - imported
        db.commit()

        logger.info(f"✅ Strava sync: {imported} imported, {skipped} already in calendar")
        return {"imported": imported, "skipped": skipped, "total": len(activities)}

    # ------------------------------------------------------------------
    # Push subscriptions (one per Strava application)
    # ------------------------------------------------------------------

    @staticmethod
    def subscribe_to_webhooks(callback_url: str) -> Dict[str, Any]:
        """Register callback_url for activity events; Strava verifies it with a GET first"""
        response = requests.post(
            f"{STRAVA_API_BASE}/push_subscriptions",
            data={
                **StravaClient._app_credentials(),
                "callback_url": callback_url,
                "verify_token": STRAVA_VERIFY_TOKEN
            },
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, "create subscription")
        return response.json()

    @staticmethod
    def list_webhook_subscriptions() -> List[Dict[str, Any]]:
        response = requests.get(
            f"{STRAVA_API_BASE}/push_subscriptions",
            params=StravaClient._app_credentials(),
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, "list subscriptions")
        return response.json()

    @staticmethod
    def delete_webhook_subscription(subscription_id: int):
        response = requests.delete(
            f"{STRAVA_API_BASE}/push_subscriptions/{subscription_id}",
            params=StravaClient._app_credentials(),
            timeout=STRAVA_TIMEOUT
        )
        StravaClient._raise_for_status(response, "delete subscription")
        logger.info(f"✅ Deleted webhook subscription {subscription_id}")
