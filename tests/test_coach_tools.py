"""Tests for the coach tool handlers and registry."""

import threading
from datetime import date, timedelta

import fastapi.concurrency
import pytest

import coach_tools
from coach_tools import (
    ToolRegistry,
    build_default_registry,
    create_running_event,
    get_nutrition_summary,
    get_running_events,
    get_weight_history,
    log_meal,
    log_weight,
    save_runner_profile,
    set_nutrition_goals,
)
from models import NutritionGoals, RunnerProfile, RunningEvent

EXPECTED_TOOLS = [
    "save_runner_profile",
    "get_running_events",
    "create_running_event",
    "log_weight",
    "get_weight_history",
    "log_meal",
    "get_nutrition_summary",
    "set_nutrition_goals",
]


class TestRegistry:
    def test_default_catalog(self):
        registry = build_default_registry()
        assert registry.get_tool_names() == EXPECTED_TOOLS
        assert len(registry) == 8
        assert [s["function"]["name"] for s in registry.get_schemas()] == EXPECTED_TOOLS

    def test_schemas_are_function_descriptors(self):
        for schema in build_default_registry().get_schemas():
            assert schema["type"] == "function"
            assert schema["function"]["parameters"]["type"] == "object"

    def test_required_arguments(self):
        assert coach_tools.CREATE_EVENT_SCHEMA["function"]["parameters"]["required"] == ["date", "type"]
        assert coach_tools.LOG_WEIGHT_SCHEMA["function"]["parameters"]["required"] == ["weight"]
        assert coach_tools.LOG_MEAL_SCHEMA["function"]["parameters"]["required"] == ["mealType", "description"]

    @pytest.mark.parametrize("name,flag", [
        ("save_runner_profile", "profileSaved"),
        ("create_running_event", "eventCreated"),
        ("log_weight", "weightLogged"),
        ("log_meal", "mealLogged"),
    ])
    def test_write_tools_set_refresh_flag(self, name, flag):
        assert build_default_registry().notification(name) == {"toolExecuted": name, flag: True}

    def test_read_tools_only_name_the_tool(self):
        registry = build_default_registry()
        assert registry.notification("get_weight_history") == {"toolExecuted": "get_weight_history"}
        assert registry.notification("set_nutrition_goals") == {"toolExecuted": "set_nutrition_goals"}

    async def test_execute_runs_handler(self, recording_handler):
        registry = ToolRegistry()
        registry.register(coach_tools.SAVE_PROFILE_SCHEMA, recording_handler)
        result = await registry.execute("save_runner_profile", {"name": "Ana"})
        assert result["success"] is True
        assert recording_handler.calls == [{"name": "Ana"}]

    async def test_execute_runs_handler_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        seen = []

        def handler(args):
            seen.append(threading.get_ident())
            return {"success": True}

        registry = ToolRegistry()
        registry.register(coach_tools.LOG_WEIGHT_SCHEMA, handler)
        await registry.execute("log_weight", {"weight": 70})

        assert coach_tools.run_in_threadpool is fastapi.concurrency.run_in_threadpool
        assert seen and seen[0] != loop_thread

    async def test_execute_unknown_tool(self):
        result = await ToolRegistry().execute("drop_tables", {})
        assert result == {"success": False, "error": "unknown_tool", "message": "Unknown tool: drop_tables"}


class TestRunnerProfile:
    def test_creates_profile_with_mapped_columns(self, db_session):
        result = save_runner_profile({"name": "Ana", "age": "34", "weeklyKm": 42.5, "pb5k": "21:30"})

        assert result["success"] is True
        assert result["updated"] == ["age", "name", "pb_5k", "weekly_km"]
        profile = db_session.query(RunnerProfile).one()
        assert profile.name == "Ana"
        assert profile.age == 34
        assert profile.weekly_km == 42.5
        assert profile.pb_5k == "21:30"

    def test_updates_existing_profile(self, db_session):
        save_runner_profile({"name": "Ana", "injuries": "shin splints"})
        save_runner_profile({"targetRace": "Valencia Marathon", "maxTimePerSession": 90})

        profiles = db_session.query(RunnerProfile).all()
        assert len(profiles) == 1
        assert profiles[0].name == "Ana"
        assert profiles[0].injuries == "shin splints"
        assert profiles[0].target_race == "Valencia Marathon"
        assert profiles[0].max_time_per_session == 90

    def test_nothing_to_update(self, db_session):
        result = save_runner_profile({"unknownField": "x"})
        assert result == {"success": True, "message": "No profile data to update"}
        assert db_session.query(RunnerProfile).count() == 0

    def test_bad_number_is_reported(self):
        result = save_runner_profile({"age": "thirty"})
        assert result["success"] is False


class TestRunningEvents:
    def test_create_event(self, db_session):
        result = create_running_event({
            "date": "2026-03-14",
            "type": "tempo",
            "title": "Tempo Tuesday",
            "distance": 10,
            "duration": "50",
            "pace": "5:00",
        })

        assert result["success"] is True
        assert result["event"]["date"] == "2026-03-14"
        assert result["event"]["completed"] is False
        event = db_session.query(RunningEvent).one()
        assert event.category == "running"
        assert event.duration == 50
        assert event.pace == "5:00"

    def test_personal_event_drops_pace(self, db_session):
        create_running_event({"date": "2026-03-15", "category": "personal", "type": "dentist", "pace": "5:00"})
        assert db_session.query(RunningEvent).one().pace is None

    def test_missing_date_fails(self, db_session):
        result = create_running_event({"type": "easy"})
        assert result["success"] is False
        assert db_session.query(RunningEvent).count() == 0

    def test_get_events_filters_range_and_category(self):
        today = date.today()
        for offset, category, event_type in [
            (-40, "running", "long"),
            (-2, "running", "easy"),
            (1, "personal", "birthday"),
            (3, "running", "intervals"),
        ]:
            create_running_event({
                "date": (today + timedelta(days=offset)).isoformat(),
                "category": category,
                "type": event_type,
            })

        result = get_running_events({})
        assert [e["type"] for e in result["events"]] == ["easy", "birthday", "intervals"]
        assert result["count"] == 3

        running = get_running_events({"category": "running"})
        assert [e["type"] for e in running["events"]] == ["easy", "intervals"]

        limited = get_running_events({"limit": 1})
        assert [e["type"] for e in limited["events"]] == ["easy"]

        window = get_running_events({
            "startDate": (today - timedelta(days=50)).isoformat(),
            "endDate": (today - timedelta(days=30)).isoformat(),
        })
        assert [e["type"] for e in window["events"]] == ["long"]


class TestWeight:
    def test_log_weight_defaults_to_today(self):
        result = log_weight({"weight": "71.4", "bodyFat": 14})
        assert result["success"] is True
        assert result["entry"]["date"] == date.today().isoformat()
        assert result["entry"]["weight"] == 71.4
        assert result["entry"]["body_fat"] == 14.0

    def test_missing_weight_fails(self):
        assert log_weight({"date": "2026-01-01"})["success"] is False

    def test_history_newest_first_with_limit(self):
        log_weight({"date": "2026-01-01", "weight": 72})
        log_weight({"date": "2026-01-15", "weight": 71.5})
        log_weight({"date": "2026-02-01", "weight": 71})

        result = get_weight_history({"limit": 2})
        assert [e["date"] for e in result["entries"]] == ["2026-02-01", "2026-01-15"]
        assert result["count"] == 2


class TestNutrition:
    def test_invalid_meal_type(self):
        result = log_meal({"mealType": "brunch", "description": "eggs"})
        assert result["success"] is False
        assert "breakfast" in result["message"]

    def test_summary_totals_and_goals(self):
        log_meal({"date": "2026-05-01", "mealType": "breakfast", "description": "oats", "calories": 450, "protein": 15, "carbs": 70})
        log_meal({"date": "2026-05-01", "mealType": "lunch", "description": "rice bowl", "calories": 700, "protein": 35, "fats": 20})
        log_meal({"date": "2026-05-02", "mealType": "dinner", "description": "pasta", "calories": 800})
        set_nutrition_goals({"calories": 2600, "protein": 130})

        summary = get_nutrition_summary({"date": "2026-05-01"})

        assert summary["success"] is True
        assert [m["description"] for m in summary["meals"]] == ["oats", "rice bowl"]
        assert summary["totals"] == {"calories": 1150, "protein": 50.0, "carbs": 70.0, "fats": 20.0}
        assert summary["goals"]["calories"] == 2600

    def test_summary_without_goals(self):
        summary = get_nutrition_summary({"date": "2026-05-01"})
        assert summary["meals"] == []
        assert summary["goals"] is None

    def test_goals_are_a_single_row(self, db_session):
        set_nutrition_goals({"calories": 2400})
        result = set_nutrition_goals({"calories": "2500", "carbs": 320})

        assert result["goals"] == {"calories": 2500, "protein": None, "carbs": 320.0, "fats": None}
        rows = db_session.query(NutritionGoals).all()
        assert len(rows) == 1
        assert rows[0].calories == 2500
