"""Initialize the database by creating all tables defined in the models"""
from database import Base, engine
from logging_config import get_logger, setup_logging
import models  # noqa: F401  registers the tables on Base

setup_logging()
logger = get_logger("db")

logger.info("Creating tables on the database...")

Base.metadata.create_all(bind=engine)

logger.info("Tables created successfully!")
