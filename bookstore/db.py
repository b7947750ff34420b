import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bookstore import settings
from bookstore.errors import TransientInfraError

logger = logging.getLogger(__name__)

engine = create_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Run a multi-step mutation as one transaction.

    Commits when the block exits cleanly. Any exception rolls the whole
    transaction back before it propagates; driver errors surface as
    TransientInfraError so callers know a retry is safe.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity violation, transaction rolled back: {e.orig}")
        raise TransientInfraError("Concurrent update conflict, please retry") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error, transaction rolled back: {e}")
        raise TransientInfraError("Database transaction failed, please retry") from e
    except Exception:
        db.rollback()
        raise
