from sqlalchemy.engine import Engine

from common.logging_setup import get_logger
from db.models import Base

log = get_logger("db")


def init_db(engine: Engine) -> None:
    """Create the sessions/chats/messages/files tables if they are missing."""
    Base.metadata.create_all(bind=engine)
    log.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
