from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
import os
import time
import logging

logger = logging.getLogger(__name__)

# Query timing logger
query_logger = logging.getLogger("sqlalchemy.query_timing")
query_logger.setLevel(logging.DEBUG if os.getenv("DEBUG_QUERIES") else logging.WARNING)

# Slow query threshold in milliseconds
SLOW_QUERY_THRESHOLD_MS = int(os.getenv("SLOW_QUERY_THRESHOLD_MS", "100"))
MAX_LOGGED_STATEMENT = 500
MAX_LOGGED_PARAMS = 200


def normalize_database_url(url: str) -> str:
    """Hosted Postgres URLs use postgres:// but SQLAlchemy requires postgresql://"""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def build_engine(url: str) -> Engine:
    """
    SQLite for local development and tests, pooled Postgres otherwise.

    The aggregation job opens one session per user next to the API's
    request sessions, so the Postgres pool leaves headroom for both.
    """
    if "sqlite" in url:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,      # Detect stale connections
            pool_recycle=1800,       # Recycle connections after 30 minutes
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
        )
    install_query_timing(engine)
    return engine


def _truncate(value: str, limit: int) -> str:
    return value[:limit] + "..." if len(value) > limit else value


def install_query_timing(engine: Engine) -> None:
    """Log statements slower than SLOW_QUERY_THRESHOLD_MS on sqlalchemy.query_timing."""

    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get("query_start_time", [])
        if not start_times:
            return

        total_time_ms = (time.perf_counter() - start_times.pop()) * 1000
        if total_time_ms > SLOW_QUERY_THRESHOLD_MS:
            query_logger.warning(
                f"SLOW QUERY ({total_time_ms:.2f}ms): {_truncate(statement, MAX_LOGGED_STATEMENT)} "
                f"| params={_truncate(str(parameters), MAX_LOGGED_PARAMS)}"
            )


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL", "sqlite:///./readiness.db"))

engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI routes"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_database() -> bool:
    """True when the analytics store answers a trivial query."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False
