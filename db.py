# db.py
import os
from datetime import datetime
from sqlalchemy import create_engine, Column, Integer, String, Boolean, DateTime, Float, Text
from sqlalchemy.orm import sessionmaker, declarative_base, scoped_session

# --- DB URL normalizer (Render/Heroku compatibility) -------------------------
def _normalize_db_url(url: str) -> str:
    # Heroku-style URLs use postgres://; SQLAlchemy expects postgresql://
    return url.replace("postgres://", "postgresql://", 1) if url.startswith("postgres://") else url

DATABASE_URL = _normalize_db_url(os.getenv("DATABASE_URL", "")) or "sqlite:///./aicourse.db"

# SQLite needs this flag for multi-threaded FastAPI usage
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
SessionLocal = scoped_session(session_factory)
Base = declarative_base()

# --- Models -------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    hashed_password = Column(String(255), nullable=True)
    plan_tier = Column(String(32), default="free", nullable=False)  # free | monthly | yearly | forever
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class Admin(Base):
    # keyed by email, no FK to users: a stale admin row may outlive its user
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    type = Column(String(16), nullable=False)  # "main" | "no"
    created_at = Column(DateTime, default=datetime.utcnow)

class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    provider = Column(String(32), nullable=False)
    provider_subscription_id = Column(String(255), nullable=False)
    plan = Column(String(32), nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    next_billing_date = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    user_email = Column(String(255), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), default="USD", nullable=False)
    status = Column(String(16), default="pending", nullable=False)  # pending/success/failed/refunded
    payment_method = Column(String(32), nullable=False)
    gateway = Column(String(32), nullable=False)
    transaction_id = Column(String(255), unique=True, nullable=False)
    plan = Column(String(32), nullable=True)
    description = Column(String(255), nullable=True)
    date = Column(DateTime, default=datetime.utcnow, index=True)

class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    user_email = Column(String(255), nullable=False)
    payment_id = Column(Integer, nullable=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), default="USD", nullable=False)
    reason = Column(String(500), nullable=False)
    status = Column(String(16), default="pending", nullable=False)  # pending/approved/rejected/processed
    processed_by = Column(String(255), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    notes = Column(Text, default="")
    date = Column(DateTime, default=datetime.utcnow, index=True)
    # snapshot of the originating payment
    original_transaction_id = Column(String(255), nullable=True)
    original_amount = Column(Float, nullable=True)
    original_gateway = Column(String(32), nullable=True)

class BillingOperation(Base):
    __tablename__ = "billing_operations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    user_email = Column(String(255), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), default="USD", nullable=False)
    type = Column(String(16), nullable=False)  # manual/recurring/adjustment
    status = Column(String(16), default="pending", nullable=False)  # pending/completed/failed
    description = Column(String(500), nullable=True)
    payment_method = Column(String(32), default="manual")
    processed_by = Column(String(255), nullable=True)
    date = Column(DateTime, default=datetime.utcnow, index=True)

class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    main_topic = Column(String(255), nullable=True)
    type = Column(String(64), nullable=True)
    date = Column(DateTime, default=datetime.utcnow)

# --- Helpers ------------------------------------------------------------------
def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def row_to_dict(row) -> dict:
    """Plain dict of a model's columns; datetimes as ISO strings."""
    out = {}
    for col in row.__table__.columns:
        val = getattr(row, col.name)
        out[col.name] = val.isoformat() if isinstance(val, datetime) else val
    return out
