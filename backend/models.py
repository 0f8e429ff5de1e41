"""
Database models for the Running Coach
SQLAlchemy ORM models for chat history, runner data, nutrition and Strava auth
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Date, ForeignKey, Text, Boolean
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, date

Base = declarative_base()


def _serialize(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class SerializableMixin:
    """Plain-dict view of a row for JSON responses and tool results"""

    def to_dict(self) -> dict:
        return {c.name: _serialize(getattr(self, c.name)) for c in self.__table__.columns}


class Conversation(SerializableMixin, Base):
    """Coach chat conversation"""
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False, default="New conversation")
    model = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    def __repr__(self):
        return f"<Conversation(id={self.id}, title={self.title!r})>"


class Message(SerializableMixin, Base):
    """Single persisted chat message"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # 'user' | 'assistant'
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, role={self.role})>"


class RunnerProfile(SerializableMixin, Base):
    """Persistent runner profile the coach reads and updates"""
    __tablename__ = "runner_profile"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=True)
    age = Column(Integer, nullable=True)
    weight = Column(Float, nullable=True)  # kg
    height = Column(Integer, nullable=True)  # cm
    years_running = Column(Integer, nullable=True)
    weekly_km = Column(Float, nullable=True)
    pb_5k = Column(String(20), nullable=True)  # "20:30"
    pb_10k = Column(String(20), nullable=True)
    pb_half_marathon = Column(String(20), nullable=True)
    pb_marathon = Column(String(20), nullable=True)
    current_goal = Column(Text, nullable=True)
    target_race = Column(String(255), nullable=True)
    target_time = Column(String(20), nullable=True)
    injuries = Column(Text, nullable=True)
    health_notes = Column(Text, nullable=True)
    preferred_terrain = Column(String(100), nullable=True)
    available_days = Column(String(100), nullable=True)
    max_time_per_session = Column(Integer, nullable=True)  # minutes
    coach_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<RunnerProfile(id={self.id}, name={self.name!r})>"


class RunningEvent(SerializableMixin, Base):
    """Calendar entry: planned or completed workout, race, or personal event"""
    __tablename__ = "running_events"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    category = Column(String(20), nullable=False, default="running")  # 'running' | 'personal'
    type = Column(String(50), nullable=False)  # easy, tempo, intervals, long, race, strength, rest...
    title = Column(String(255), nullable=True)
    time = Column(String(5), nullable=True)  # "14:30"
    distance = Column(Float, nullable=True)  # km
    duration = Column(Integer, nullable=True)  # minutes
    pace = Column(String(10), nullable=True)  # "5:30" min/km
    heart_rate = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    strava_id = Column(String(50), unique=True, nullable=True, index=True)  # Unique constraint for deduplication
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<RunningEvent(id={self.id}, date={self.date}, type={self.type}, strava_id={self.strava_id})>"


class WeightEntry(SerializableMixin, Base):
    """Body weight log"""
    __tablename__ = "weight_entries"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    weight = Column(Float, nullable=False)  # kg
    body_fat = Column(Float, nullable=True)  # percent
    muscle_mass = Column(Float, nullable=True)  # kg
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<WeightEntry(id={self.id}, date={self.date}, weight={self.weight})>"


class NutritionEntry(SerializableMixin, Base):
    """Meal log"""
    __tablename__ = "nutrition_entries"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False, index=True)
    meal_type = Column(String(20), nullable=False)  # 'breakfast' | 'lunch' | 'dinner' | 'snack'
    description = Column(Text, nullable=False)
    calories = Column(Integer, nullable=True)
    protein = Column(Float, nullable=True)  # grams
    carbs = Column(Float, nullable=True)
    fats = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<NutritionEntry(id={self.id}, date={self.date}, meal_type={self.meal_type}, calories={self.calories})>"


class NutritionGoals(SerializableMixin, Base):
    """Daily nutrition targets (single row)"""
    __tablename__ = "nutrition_goals"

    id = Column(Integer, primary_key=True, index=True)
    calories = Column(Integer, nullable=True)
    protein = Column(Float, nullable=True)
    carbs = Column(Float, nullable=True)
    fats = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StravaToken(SerializableMixin, Base):
    """Strava OAuth tokens for a connected athlete"""
    __tablename__ = "strava_tokens"

    id = Column(Integer, primary_key=True, index=True)
    athlete_id = Column(String(50), unique=True, nullable=False, index=True)
    access_token = Column(String(255), nullable=False)
    refresh_token = Column(String(255), nullable=False)
    expires_at = Column(Integer, nullable=False)  # Unix timestamp
    athlete_name = Column(String(255), nullable=True)
    athlete_profile = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<StravaToken(id={self.id}, athlete_id={self.athlete_id})>"
