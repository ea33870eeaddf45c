# rental_market/database.py
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from flask import g

from rental_market.config import Config

IS_SQLITE = Config.DATABASE_URL.startswith("sqlite")

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

if IS_SQLITE:
    # Writers queue on the database lock instead of failing immediately
    engine_kwargs["connect_args"] = {
        "timeout": Config.SQLITE_BUSY_TIMEOUT_SECONDS,
        "check_same_thread": False,
    }
else:
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # Order, invoice and reservation rows reference each other by key
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_db():
    """Request-scoped session, closed by the app teardown."""
    if 'db' not in g:
        g.db = SessionLocal()
    return g.db


def close_db(e=None):
    try:
        db = g.pop('db', None)
        if db is not None:
            if e is not None:
                db.rollback()
            db.close()
    except RuntimeError:
        # Outside of application context (test teardown)
        pass
