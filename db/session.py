from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def make_engine(db_url: str) -> Engine:
    is_sqlite = db_url.startswith("sqlite")
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
    )
    if is_sqlite:
        # SQLite leaves FK enforcement (and ON DELETE CASCADE) off per connection
        @event.listens_for(engine, "connect")
        def _fk_pragma(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    # store methods hand ORM rows back after the session is closed
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
