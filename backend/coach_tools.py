"""
Coach tools
Function-calling catalog exposed to the LLM and the handlers that run it
against the app's own tables.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import desc
from fastapi.concurrency import run_in_threadpool

from database import get_db
from models import NutritionEntry, NutritionGoals, RunnerProfile, RunningEvent, WeightEntry

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Dict[str, Any]]

MEAL_TYPES = ["breakfast", "lunch", "dinner", "snack"]
EVENT_CATEGORIES = ["running", "personal"]


# ============================================================================
# TOOL SCHEMAS
# ============================================================================

def _function(name: str, description: str, properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required or [],
            },
        },
    }


SAVE_PROFILE_SCHEMA = _function(
    "save_runner_profile",
    "Save or update the runner's profile information.",
    {
        "name": {"type": "string", "description": "Runner's name"},
        "age": {"type": "number", "description": "Age in years"},
        "weight": {"type": "number", "description": "Weight in kg"},
        "height": {"type": "number", "description": "Height in cm"},
        "yearsRunning": {"type": "number", "description": "Years of running experience"},
        "weeklyKm": {"type": "number", "description": "Usual weekly kilometers"},
        "pb5k": {"type": "string", "description": "5K personal best (MM:SS)"},
        "pb10k": {"type": "string", "description": "10K personal best"},
        "pbHalfMarathon": {"type": "string", "description": "Half marathon personal best"},
        "pbMarathon": {"type": "string", "description": "Marathon personal best"},
        "currentGoal": {"type": "string", "description": "Current training goal"},
        "targetRace": {"type": "string", "description": "Target race"},
        "targetTime": {"type": "string", "description": "Target time for the race"},
        "injuries": {"type": "string", "description": "Past or current injuries"},
        "healthNotes": {"type": "string", "description": "Relevant health notes"},
        "preferredTerrain": {"type": "string", "description": "Preferred terrain"},
        "availableDays": {"type": "string", "description": "Days available for training"},
        "maxTimePerSession": {"type": "number", "description": "Maximum minutes per session"},
        "coachNotes": {"type": "string", "description": "Coach notes about the runner"},
    },
)

GET_EVENTS_SCHEMA = _function(
    "get_running_events",
    "Get events and workouts from the calendar.",
    {
        "startDate": {"type": "string", "description": "Start date YYYY-MM-DD"},
        "endDate": {"type": "string", "description": "End date YYYY-MM-DD"},
        "category": {"type": "string", "enum": ["running", "personal", "all"], "description": "Event category"},
        "limit": {"type": "number", "description": "Maximum number of events"},
    },
)

CREATE_EVENT_SCHEMA = _function(
    "create_running_event",
    "Create a new event or workout in the calendar.",
    {
        "date": {"type": "string", "description": "Event date YYYY-MM-DD"},
        "category": {"type": "string", "enum": EVENT_CATEGORIES, "description": "Category"},
        "type": {"type": "string", "description": "Event type: easy, tempo, interval, long, recovery, race, strength, rest"},
        "title": {"type": "string", "description": "Event title"},
        "time": {"type": "string", "description": "Time HH:MM"},
        "distance": {"type": "number", "description": "Distance in km"},
        "duration": {"type": "number", "description": "Duration in minutes"},
        "pace": {"type": "string", "description": "Pace M:SS per km"},
        "notes": {"type": "string", "description": "Additional notes"},
    },
    required=["date", "type"],
)

LOG_WEIGHT_SCHEMA = _function(
    "log_weight",
    "Log the user's body weight.",
    {
        "date": {"type": "string", "description": "Date YYYY-MM-DD (defaults to today)"},
        "weight": {"type": "number", "description": "Weight in kg"},
        "bodyFat": {"type": "number", "description": "Body fat percentage"},
        "muscleMass": {"type": "number", "description": "Muscle mass in kg"},
        "notes": {"type": "string", "description": "Notes"},
    },
    required=["weight"],
)

GET_WEIGHT_HISTORY_SCHEMA = _function(
    "get_weight_history",
    "Get the weight history.",
    {
        "limit": {"type": "number", "description": "Number of entries to fetch (default 30)"},
    },
)

LOG_MEAL_SCHEMA = _function(
    "log_meal",
    "Log a meal.",
    {
        "date": {"type": "string", "description": "Date YYYY-MM-DD (defaults to today)"},
        "mealType": {"type": "string", "enum": MEAL_TYPES, "description": "Meal type"},
        "description": {"type": "string", "description": "What was eaten"},
        "calories": {"type": "number", "description": "Calories"},
        "protein": {"type": "number", "description": "Protein in grams"},
        "carbs": {"type": "number", "description": "Carbohydrates in grams"},
        "fats": {"type": "number", "description": "Fats in grams"},
        "notes": {"type": "string", "description": "Notes"},
    },
    required=["mealType", "description"],
)

GET_NUTRITION_SUMMARY_SCHEMA = _function(
    "get_nutrition_summary",
    "Get the nutrition summary for a day.",
    {
        "date": {"type": "string", "description": "Date YYYY-MM-DD (defaults to today)"},
    },
)

SET_NUTRITION_GOALS_SCHEMA = _function(
    "set_nutrition_goals",
    "Set the daily nutrition goals.",
    {
        "calories": {"type": "number", "description": "Target calories"},
        "protein": {"type": "number", "description": "Target protein in grams"},
        "carbs": {"type": "number", "description": "Target carbohydrates in grams"},
        "fats": {"type": "number", "description": "Target fats in grams"},
    },
)


# ============================================================================
# ARGUMENT HELPERS
# ============================================================================

def _optional_number(value: Any, cast=float) -> Optional[float]:
    if value is None or value == "":
        return None
    return cast(float(value))


def _parse_date(value: Any, default: Optional[date] = None) -> date:
    if not value:
        return default or date.today()
    return date.fromisoformat(str(value)[:10])


def _optional_text(value: Any) -> Optional[str]:
    return str(value) if value else None


# ============================================================================
# TOOL HANDLERS
# ============================================================================

# tool argument -> (column, cast)
PROFILE_FIELDS = {
    "name": ("name", None),
    "age": ("age", int),
    "weight": ("weight", float),
    "height": ("height", int),
    "yearsRunning": ("years_running", int),
    "weeklyKm": ("weekly_km", float),
    "pb5k": ("pb_5k", None),
    "pb10k": ("pb_10k", None),
    "pbHalfMarathon": ("pb_half_marathon", None),
    "pbMarathon": ("pb_marathon", None),
    "currentGoal": ("current_goal", None),
    "targetRace": ("target_race", None),
    "targetTime": ("target_time", None),
    "injuries": ("injuries", None),
    "healthNotes": ("health_notes", None),
    "preferredTerrain": ("preferred_terrain", None),
    "availableDays": ("available_days", None),
    "maxTimePerSession": ("max_time_per_session", int),
    "coachNotes": ("coach_notes", None),
}


def save_runner_profile(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        update_data = {}
        for arg_name, (column, cast) in PROFILE_FIELDS.items():
            if args.get(arg_name) is None:
                continue
            value = args[arg_name]
            update_data[column] = _optional_number(value, cast) if cast else str(value)

        if not update_data:
            return {"success": True, "message": "No profile data to update"}

        with get_db() as db:
            profile = db.query(RunnerProfile).first()
            if not profile:
                profile = RunnerProfile()
                db.add(profile)
            for column, value in update_data.items():
                setattr(profile, column, value)
            profile.updated_at = datetime.utcnow()

        return {"success": True, "message": "Profile updated", "updated": sorted(update_data)}
    except Exception as e:
        logger.error(f"❌ Error saving profile: {e}")
        return {"success": False, "message": "Error saving profile"}


def get_running_events(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        today = date.today()
        start = _parse_date(args.get("startDate"), today - timedelta(days=30))
        end = _parse_date(args.get("endDate"), today + timedelta(days=30))
        category = args.get("category") or "all"
        limit = int(args.get("limit") or 20)

        with get_db() as db:
            query = db.query(RunningEvent).filter(
                RunningEvent.date >= start,
                RunningEvent.date <= end
            )
            if category != "all":
                query = query.filter(RunningEvent.category == category)
            events = [e.to_dict() for e in query.order_by(RunningEvent.date).limit(limit).all()]

        return {"success": True, "events": events, "count": len(events)}
    except Exception as e:
        logger.error(f"❌ Error getting events: {e}")
        return {"success": False, "message": "Error getting events", "events": []}


def create_running_event(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        category = args.get("category") or "running"
        event = RunningEvent(
            date=_parse_date(args["date"]),
            category=category,
            type=str(args["type"]),
            title=_optional_text(args.get("title")),
            time=_optional_text(args.get("time")),
            distance=_optional_number(args.get("distance")),
            duration=_optional_number(args.get("duration"), int),
            # Pace only means something for running workouts
            pace=_optional_text(args.get("pace")) if category == "running" else None,
            notes=_optional_text(args.get("notes")),
            completed=False,
        )
        with get_db() as db:
            db.add(event)
            db.flush()
            created = event.to_dict()

        return {"success": True, "message": "Event created", "event": created}
    except Exception as e:
        logger.error(f"❌ Error creating event: {e}")
        return {"success": False, "message": "Error creating event"}


def log_weight(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        entry = WeightEntry(
            date=_parse_date(args.get("date")),
            weight=float(args["weight"]),
            body_fat=_optional_number(args.get("bodyFat")),
            muscle_mass=_optional_number(args.get("muscleMass")),
            notes=_optional_text(args.get("notes")),
        )
        with get_db() as db:
            db.add(entry)
            db.flush()
            created = entry.to_dict()

        return {"success": True, "message": "Weight logged", "entry": created}
    except Exception as e:
        logger.error(f"❌ Error logging weight: {e}")
        return {"success": False, "message": "Error logging weight"}


def get_weight_history(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        limit = int(args.get("limit") or 30)
        with get_db() as db:
            entries = [
                e.to_dict() for e in
                db.query(WeightEntry).order_by(desc(WeightEntry.date)).limit(limit).all()
            ]
        return {"success": True, "entries": entries, "count": len(entries)}
    except Exception as e:
        logger.error(f"❌ Error getting weight history: {e}")
        return {"success": False, "message": "Error getting weight history", "entries": []}


def log_meal(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        meal_type = args.get("mealType")
        if meal_type not in MEAL_TYPES:
            return {"success": False, "message": f"mealType must be one of {', '.join(MEAL_TYPES)}"}

        entry = NutritionEntry(
            date=_parse_date(args.get("date")),
            meal_type=meal_type,
            description=str(args["description"]),
            calories=_optional_number(args.get("calories"), int),
            protein=_optional_number(args.get("protein")),
            carbs=_optional_number(args.get("carbs")),
            fats=_optional_number(args.get("fats")),
            notes=_optional_text(args.get("notes")),
        )
        with get_db() as db:
            db.add(entry)
            db.flush()
            created = entry.to_dict()

        return {"success": True, "message": "Meal logged", "entry": created}
    except Exception as e:
        logger.error(f"❌ Error logging meal: {e}")
        return {"success": False, "message": "Error logging meal"}


def get_nutrition_summary(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        day = _parse_date(args.get("date"))
        with get_db() as db:
            meals = db.query(NutritionEntry).filter(
                NutritionEntry.date == day
            ).order_by(NutritionEntry.created_at, NutritionEntry.id).all()
            goals = db.query(NutritionGoals).first()

            totals = {
                "calories": sum(m.calories or 0 for m in meals),
                "protein": sum(m.protein or 0 for m in meals),
                "carbs": sum(m.carbs or 0 for m in meals),
                "fats": sum(m.fats or 0 for m in meals),
            }
            return {
                "success": True,
                "date": day.isoformat(),
                "meals": [m.to_dict() for m in meals],
                "totals": totals,
                "goals": goals.to_dict() if goals else None,
            }
    except Exception as e:
        logger.error(f"❌ Error getting nutrition summary: {e}")
        return {"success": False, "message": "Error getting nutrition summary"}


def set_nutrition_goals(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        data = {
            "calories": _optional_number(args.get("calories"), int),
            "protein": _optional_number(args.get("protein")),
            "carbs": _optional_number(args.get("carbs")),
            "fats": _optional_number(args.get("fats")),
        }
        with get_db() as db:
            goals = db.query(NutritionGoals).first()
            if not goals:
                goals = NutritionGoals()
                db.add(goals)
            for column, value in data.items():
                setattr(goals, column, value)
            goals.updated_at = datetime.utcnow()

        return {"success": True, "message": "Nutrition goals updated", "goals": data}
    except Exception as e:
        logger.error(f"❌ Error setting nutrition goals: {e}")
        return {"success": False, "message": "Error setting nutrition goals"}


# ============================================================================
# REGISTRY
# ============================================================================

class ToolRegistry:
    """Maps tool names to handlers, schemas, and client notification flags."""

    def __init__(self):
        self.handlers: Dict[str, ToolHandler] = {}
        self.schemas: List[Dict[str, Any]] = []
        self.notify_flags: Dict[str, str] = {}

    def register(
        self,
        schema: Dict[str, Any],
        handler: ToolHandler,
        notify_flag: Optional[str] = None,
    ) -> None:
        """
        Register a handler under the function name declared in its schema.

        Args:
            schema: OpenAI-style function descriptor
            handler: Callable taking the parsed argument dict
            notify_flag: Optional flag set on the toolExecuted notification
        """
        name = schema["function"]["name"]
        self.handlers[name] = handler
        self.schemas.append(schema)
        if notify_flag:
            self.notify_flags[name] = notify_flag

    def get_schemas(self) -> List[Dict[str, Any]]:
        return self.schemas

    def get_tool_names(self) -> List[str]:
        return list(self.handlers.keys())

    def has_tool(self, name: str) -> bool:
        return name in self.handlers

    def notification(self, name: str) -> Dict[str, Any]:
        """Side-channel payload telling the client which cached views to refresh"""
        payload: Dict[str, Any] = {"toolExecuted": name}
        flag = self.notify_flags.get(name)
        if flag:
            payload[flag] = True
        return payload

    async def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a tool by name. Handlers do blocking database work, so they run
        in the threadpool. Unknown names produce a failure result.
        """
        handler = self.handlers.get(name)
        if handler is None:
            logger.warning(f"⚠️  Unknown tool requested: {name}")
            return unknown_tool_result(name)
        return await run_in_threadpool(handler, args)

    def __len__(self) -> int:
        return len(self.handlers)


def unknown_tool_result(name: str) -> Dict[str, Any]:
    return {"success": False, "error": "unknown_tool", "message": f"Unknown tool: {name}"}


def build_default_registry() -> ToolRegistry:
    """The fixed eight-tool coach catalog"""
    registry = ToolRegistry()
    registry.register(SAVE_PROFILE_SCHEMA, save_runner_profile, "profileSaved")
    registry.register(GET_EVENTS_SCHEMA, get_running_events)
    registry.register(CREATE_EVENT_SCHEMA, create_running_event, "eventCreated")
    registry.register(LOG_WEIGHT_SCHEMA, log_weight, "weightLogged")
    registry.register(GET_WEIGHT_HISTORY_SCHEMA, get_weight_history)
    registry.register(LOG_MEAL_SCHEMA, log_meal, "mealLogged")
    registry.register(GET_NUTRITION_SUMMARY_SCHEMA, get_nutrition_summary)
    registry.register(SET_NUTRITION_GOALS_SCHEMA, set_nutrition_goals)
    return registry
