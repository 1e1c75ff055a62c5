# db.py
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tokens.db")

# Read-only deployments (e.g. a serverless filesystem): every write goes to the overlay
STORE_READ_ONLY = os.getenv("PROMO_STORE_READ_ONLY", "").strip().lower() in ("1", "true", "yes")


def make_engine(url: str):
    if url.startswith("sqlite"):
        # FastAPI runs sync routes in a threadpool
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
