"""Create the reserved admin account, which cannot be registered through login"""
from database import SessionLocal
import models
from logging_config import get_logger, setup_logging
from main import ADMIN_USERNAME

logger = get_logger("admin")


def create_admin(username: str = ADMIN_USERNAME, nickname: str = "Admin"):
    """Insert the admin user if it does not exist yet and return it"""
    db = SessionLocal()
    try:
        existing = db.query(models.User).filter(models.User.username == username).first()
        if existing:
            logger.info("Admin '%s' already exists", username)
            return existing

        admin = models.User(
            username=username,
            nickname=nickname,
            role=models.RoleEnum.admin
        )
        db.add(admin)
        db.commit()
        db.refresh(admin)
        logger.info("Admin created successfully: %s", admin.username)
        return admin
    finally:
        db.close()

if __name__ == "__main__":
    setup_logging()
    create_admin()
