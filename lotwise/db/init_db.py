from __future__ import annotations

from lotwise.core.config import get_or_create_harvest_config
from lotwise.db.models import Base
from lotwise.db.session import get_engine, get_session


def init_db() -> None:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    # Seed the default settings row so read-only commands never need to write.
    with get_session() as session:
        get_or_create_harvest_config(session)
        session.commit()
