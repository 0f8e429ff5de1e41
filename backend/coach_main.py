"""
Running Coach - Backend
Coach chat with tool calling into the app's own data, conversation history,
and Strava activity import.
"""

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import date as date_type, datetime
import os
import time
import logging
from dotenv import load_dotenv, find_dotenv
from sqlalchemy.orm import Session
import httpx

load_dotenv(find_dotenv())

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Local imports read their settings from the environment loaded above
from database import init_db, get_db_session
from models import Conversation, Message, RunnerProfile, RunningEvent, StravaToken
from strava_client import StravaClient, STRAVA_VERIFY_TOKEN
from coach_tools import PROFILE_FIELDS, ToolRegistry, build_default_registry
from chat_relay import (
    ChatRelay,
    UpstreamError,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
    REQUEST_TIMEOUT,
)

APP_URL = os.getenv("APP_URL", "http://localhost:8001")
MODELS_CACHE_MAX_AGE = int(os.getenv("MODELS_CACHE_MAX_AGE_SECONDS", "3600"))  # 1 hour default


# ============================================================================
# PYDANTIC MODELS
# ============================================================================

class ChatMessage(BaseModel):
    """One conversation turn, passed through to the upstream API"""
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None


class ChatRequest(BaseModel):
    """Request for a streamed coach reply"""
    messages: List[ChatMessage] = Field(min_length=1)
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE


class ConversationCreate(BaseModel):
    title: Optional[str] = None
    model: str = DEFAULT_MODEL


class MessageCreate(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class RunningEventCreate(BaseModel):
    date: date_type
    type: str = Field(min_length=1)
    category: Literal["running", "personal"] = "running"
    title: Optional[str] = None
    time: Optional[str] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    pace: Optional[str] = None
    heart_rate: Optional[int] = None
    notes: Optional[str] = None
    completed: bool = False


class RunningEventUpdate(BaseModel):
    """Partial update; only the fields sent are applied"""
    date: Optional[date_type] = None
    type: Optional[str] = Field(default=None, min_length=1)
    category: Optional[Literal["running", "personal"]] = None
    title: Optional[str] = None
    time: Optional[str] = None
    distance: Optional[float] = None
    duration: Optional[int] = None
    pace: Optional[str] = None
    heart_rate: Optional[int] = None
    notes: Optional[str] = None
    completed: Optional[bool] = None


# ============================================================================
# APP SETUP
# ============================================================================

app = FastAPI(title="Running Coach API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

tool_registry = build_default_registry()

# In-process cache for the upstream model list
_models_cache: Dict[str, Any] = {}


@app.on_event("startup")
async def startup_event():
    """Initialize database and the upstream HTTP client"""
    logger.info("🚀 Initializing database...")
    init_db()
    app.state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))
    if not OPENROUTER_API_KEY:
        logger.warning("⚠️  OPENROUTER_API_KEY is not set - coach chat will fail")
    logger.info("✅ Running Coach ready")


@app.on_event("shutdown")
async def shutdown_event():
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_tool_registry() -> ToolRegistry:
    return tool_registry


def get_chat_relay(
    client: httpx.AsyncClient = Depends(get_http_client),
    registry: ToolRegistry = Depends(get_tool_registry),
) -> ChatRelay:
    return ChatRelay(client, registry)


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "running-coach"}


@app.post("/api/cache/clear")
def clear_cache():
    """Clear the model list cache"""
    cache_size = len(_models_cache)
    _models_cache.clear()
    return {
        "status": "success",
        "message": f"Cleared {cache_size} cached entries",
    }


# ============================================================================
# COACH CHAT
# ============================================================================

@app.post("/api/chat")
async def chat(req: ChatRequest, relay: ChatRelay = Depends(get_chat_relay)):
    """
    Stream a coach reply as Server-Sent Events

    Upstream rejection is returned as a plain HTTP error before streaming
    starts; once streaming, every path ends with `data: [DONE]`.
    """
    messages = [m.model_dump(exclude_none=True) for m in req.messages]

    try:
        upstream = await relay.open(messages, req.model, req.temperature)
    except UpstreamError as e:
        logger.error(f"❌ Chat upstream error: {e}")
        return JSONResponse(status_code=e.status_code, content={"error": e.body})

    return StreamingResponse(
        relay.stream(upstream, messages, req.model, req.temperature),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/models")
async def list_models(client: httpx.AsyncClient = Depends(get_http_client)):
    """Available upstream models, cached for an hour"""
    cached = _models_cache.get("models")
    if cached and time.time() - cached["fetched_at"] < MODELS_CACHE_MAX_AGE:
        return cached["data"]

    try:
        response = await client.get(
            f"{OPENROUTER_BASE_URL}/models",
            headers={"Authorization": f"Bearer {OPENROUTER_API_KEY}"},
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"❌ Error fetching models: {e}")
        raise HTTPException(status_code=500, detail="Error fetching models")

    _models_cache["models"] = {"data": data, "fetched_at": time.time()}
    return data


# ============================================================================
# CONVERSATIONS
# ============================================================================

@app.get("/api/conversations")
def list_conversations(db: Session = Depends(get_db_session)):
    rows = db.query(Conversation).order_by(Conversation.updated_at.desc(), Conversation.id.desc()).all()
    return [c.to_dict() for c in rows]


@app.post("/api/conversations")
def create_conversation(req: ConversationCreate, db: Session = Depends(get_db_session)):
    try:
        conversation = Conversation(title=req.title or "New conversation", model=req.model)
        db.add(conversation)
        db.commit()
        db.refresh(conversation)
        return conversation.to_dict()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error creating conversation: {e}")
        raise HTTPException(status_code=500, detail="Error creating conversation")


@app.delete("/api/conversations")
def delete_conversation(id: Optional[int] = Query(default=None), db: Session = Depends(get_db_session)):
    if id is None:
        raise HTTPException(status_code=400, detail="ID required")
    conversation = db.query(Conversation).filter(Conversation.id == id).first()
    if conversation:
        db.delete(conversation)
        db.commit()
    return {"success": True}


@app.get("/api/conversations/{conversation_id}")
def get_conversation(conversation_id: int, db: Session = Depends(get_db_session)):
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Not found")
    return {
        **conversation.to_dict(),
        "messages": [m.to_dict() for m in conversation.messages],
    }


@app.post("/api/conversations/{conversation_id}/messages")
def add_message(conversation_id: int, req: MessageCreate, db: Session = Depends(get_db_session)):
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail="Not found")
    try:
        message = Message(conversation_id=conversation_id, role=req.role, content=req.content)
        db.add(message)
        conversation.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(message)
        return message.to_dict()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error saving message: {e}")
        raise HTTPException(status_code=500, detail="Error saving message")


# ============================================================================
# RUNNING EVENTS & RUNNER PROFILE
# ============================================================================

# Columns an update may not set to null
EVENT_REQUIRED_COLUMNS = {"date", "type", "category", "completed"}


@app.get("/api/running-events")
def list_running_events(
    start: Optional[date_type] = None,
    end: Optional[date_type] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db_session)
):
    """Calendar events in an optional date range, oldest first"""
    query = db.query(RunningEvent)
    if start:
        query = query.filter(RunningEvent.date >= start)
    if end:
        query = query.filter(RunningEvent.date <= end)
    if category and category != "all":
        query = query.filter(RunningEvent.category == category)
    return [e.to_dict() for e in query.order_by(RunningEvent.date, RunningEvent.id).all()]


@app.post("/api/running-events")
def create_running_event(req: RunningEventCreate, db: Session = Depends(get_db_session)):
    try:
        event = RunningEvent(**req.model_dump())
        db.add(event)
        db.commit()
        db.refresh(event)
        return event.to_dict()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error creating event: {e}")
        raise HTTPException(status_code=500, detail="Error creating event")


@app.put("/api/running-events/{event_id}")
def update_running_event(event_id: int, req: RunningEventUpdate, db: Session = Depends(get_db_session)):
    event = db.query(RunningEvent).filter(RunningEvent.id == event_id).first()
    if not event:
        raise HTTPException(status_code=404, detail="Not found")

    changes = req.model_dump(exclude_unset=True)
    cleared = sorted(k for k, v in changes.items() if v is None and k in EVENT_REQUIRED_COLUMNS)
    if cleared:
        raise HTTPException(status_code=400, detail=f"Cannot clear required fields: {', '.join(cleared)}")

    try:
        for column, value in changes.items():
            setattr(event, column, value)
        db.commit()
        db.refresh(event)
        return event.to_dict()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error updating event: {e}")
        raise HTTPException(status_code=500, detail="Error updating event")


@app.delete("/api/running-events")
def delete_running_event(id: Optional[int] = Query(default=None), db: Session = Depends(get_db_session)):
    if id is None:
        raise HTTPException(status_code=400, detail="ID required")
    event = db.query(RunningEvent).filter(RunningEvent.id == id).first()
    if event:
        db.delete(event)
        db.commit()
    return {"success": True}


def _profile_changes(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a profile body onto columns

    Accepts the camelCase names the coach tool uses as well as the column
    names returned by GET. Unknown keys are ignored; null clears a field.
    """
    casts = {column: cast for column, cast in PROFILE_FIELDS.values()}
    changes = {}
    for key, value in data.items():
        column = PROFILE_FIELDS[key][0] if key in PROFILE_FIELDS else key
        if column not in casts:
            continue
        cast = casts[column]
        if value is None or value == "":
            changes[column] = None
        elif cast:
            changes[column] = cast(float(value))
        else:
            changes[column] = str(value)
    return changes


@app.get("/api/runner-profile")
def get_runner_profile(db: Session = Depends(get_db_session)):
    """The single runner profile, or null before one is saved"""
    profile = db.query(RunnerProfile).first()
    return profile.to_dict() if profile else None


@app.put("/api/runner-profile")
def update_runner_profile(data: Dict[str, Any], db: Session = Depends(get_db_session)):
    """Create the profile on first save, update it afterwards"""
    try:
        changes = _profile_changes(data)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid profile value")

    try:
        profile = db.query(RunnerProfile).first()
        if not profile:
            profile = RunnerProfile()
            db.add(profile)
        for column, value in changes.items():
            setattr(profile, column, value)
        profile.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(profile)
        return profile.to_dict()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error updating profile: {e}")
        raise HTTPException(status_code=500, detail="Error updating profile")


# ============================================================================
# STRAVA OAUTH & INTEGRATION ENDPOINTS
# ============================================================================

def _get_token(db: Session) -> Optional[StravaToken]:
    return db.query(StravaToken).first()


@app.get("/api/strava/auth")
def strava_auth():
    """Redirect user to Strava OAuth authorization page"""
    redirect_uri = f"{APP_URL}/api/strava/callback"
    return RedirectResponse(url=StravaClient.get_authorization_url(redirect_uri))


@app.get("/api/strava/callback")
def strava_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db_session)
):
    """
    Handle Strava OAuth callback
    Exchange code for tokens and save them for the athlete
    """
    settings_url = f"{APP_URL}/settings"
    if error:
        return RedirectResponse(url=f"{settings_url}?strava=error&message={error}")
    if not code:
        return RedirectResponse(url=f"{settings_url}?strava=error&message=no_code")

    try:
        token_data = StravaClient.exchange_code_for_tokens(code)
        if not token_data.get("athlete"):
            return RedirectResponse(url=f"{settings_url}?strava=error&message=no_athlete")
        StravaClient.save_athlete_tokens(token_data, db)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error in Strava callback: {e}")
        return RedirectResponse(url=f"{settings_url}?strava=error&message=token_exchange_failed")

    return RedirectResponse(url=f"{settings_url}?strava=success")


@app.get("/api/strava/status")
def strava_status(db: Session = Depends(get_db_session)):
    """Check if an athlete is connected, refreshing an expired token"""
    token = _get_token(db)
    if not token:
        return {"connected": False}

    try:
        StravaClient.ensure_fresh_token(token, db)
    except Exception as e:
        db.rollback()
        logger.warning(f"⚠️  Strava token refresh failed: {e}")
        return {"connected": False, "error": "token_expired"}

    return {
        "connected": True,
        "athlete": {
            "id": token.athlete_id,
            "name": token.athlete_name,
            "profile": token.athlete_profile,
        },
    }


@app.delete("/api/strava/status")
def strava_disconnect(db: Session = Depends(get_db_session)):
    """Disconnect Strava account"""
    token = _get_token(db)
    if token:
        try:
            StravaClient.deauthorize(token.access_token)
        except Exception as e:
            logger.warning(f"⚠️  Strava deauthorize failed, removing token anyway: {e}")
        try:
            db.delete(token)
            db.commit()
        except Exception as e:
            db.rollback()
            raise HTTPException(status_code=500, detail=f"Error disconnecting Strava: {str(e)}")

    return {"success": True}


@app.post("/api/strava/sync")
def strava_sync_now(days: int = Query(default=30, ge=1), db: Session = Depends(get_db_session)):
    """Manually import recent Strava activities"""
    token = _get_token(db)
    if not token:
        raise HTTPException(status_code=401, detail="Not connected to Strava")

    try:
        StravaClient.ensure_fresh_token(token, db)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Strava token refresh failed: {e}")
        raise HTTPException(status_code=401, detail="Token refresh failed")

    try:
        counts = StravaClient.sync_recent_activities(token, db, days=days)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error syncing Strava activities: {e}")
        raise HTTPException(status_code=500, detail="Sync failed")

    return {"success": True, **counts}


# ============================================================================
# STRAVA WEBHOOK ENDPOINTS
# ============================================================================

@app.get("/api/strava/webhook")
def strava_webhook_verify(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge")
):
    """Verify Strava webhook subscription"""
    if hub_mode == "subscribe" and hub_verify_token == STRAVA_VERIFY_TOKEN:
        logger.info("✅ Strava webhook verified")
        return {"hub.challenge": hub_challenge}
    return JSONResponse(status_code=403, content={"error": "Verification failed"})


@app.post("/api/strava/webhook")
def strava_webhook_event(event: Dict[str, Any], db: Session = Depends(get_db_session)):
    """
    Handle Strava webhook events

    Only newly created runs are imported. Always answers 200 so Strava
    does not retry.
    """
    try:
        if event.get("object_type") != "activity" or event.get("aspect_type") != "create":
            return {"received": True}

        athlete_id = event.get("owner_id")
        activity_id = event.get("object_id")
        if not athlete_id or not activity_id:
            return {"received": True}

        token = db.query(StravaToken).filter(StravaToken.athlete_id == str(athlete_id)).first()
        if not token:
            logger.info(f"No token found for athlete {athlete_id}")
            return {"received": True}

        try:
            access_token = StravaClient.ensure_fresh_token(token, db)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Failed to refresh token: {e}")
            return {"received": True}

        activity = StravaClient.get_activity_details(access_token, activity_id)
        if activity.get("type") != "Run" and activity.get("sport_type") != "Run":
            return {"received": True}

        if not StravaClient.import_activity(activity, db):
            return {"received": True, "skipped": True}
        db.commit()

        logger.info(f"✅ Activity imported: {activity.get('name')}")
        return {"received": True, "imported": True}

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error processing webhook event: {e}")
        return {"received": True, "error": "Processing failed"}


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")))


if __name__ == "__main__":
    main()
