import os
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

from logging_config import get_logger

load_dotenv()

logger = get_logger("db")

URL_DATABASE = os.getenv("DATABASE_URL")

if not URL_DATABASE:
    raise ValueError("DATABASE_URL environment variable not set!")

ECHO = os.getenv("DATABASE_ECHO", "false").lower() in ("1", "true", "yes")

logger.info("Connecting to: %s", URL_DATABASE.split("@")[-1])

engine_kwargs = {"echo": ECHO}
if URL_DATABASE.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    # in-memory sqlite lives in a single connection
    if URL_DATABASE in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(URL_DATABASE, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()
