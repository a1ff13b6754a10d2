"""
Database Session Manager for Celery Tasks

Each task run gets its own session, closed when the task finishes so worker
processes do not leak connections.
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from leadengine.db.database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def get_celery_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions in Celery tasks.

    Usage:
        @celery_app.task
        def my_task():
            with get_celery_db_session() as db:
                pipeline = get_moderation_pipeline(db)

    Services commit their own writes; anything left pending when the task
    raises is rolled back.
    """
    db = SessionLocal()
    try:
        logger.debug("Created database session for Celery task")
        yield db
    except Exception as e:
        logger.error(f"Database error in Celery task, rolling back: {e}")
        db.rollback()
        raise
    finally:
        db.close()
        logger.debug("Closed database session for Celery task")
