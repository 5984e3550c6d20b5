import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from errors import StorageError

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """Owns the engine and session factory for one process."""

    def __init__(self, url: str):
        self.url = url
        # check_same_thread is needed only for SQLite; the timeout lets worker
        # threads wait for the write lock instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 30} if "sqlite" in url else {}
        self.engine = create_engine(url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self):
        import models  # noqa: F401  registers the tables on Base

        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialise database: {e}") from e

    @contextmanager
    def session(self):
        """Transactional scope: commit on success, rollback on any error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error: {e}")
            raise StorageError("Job database unavailable") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def dispose(self):
        self.engine.dispose()
