from __future__ import annotations

import os
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

DATABASE_URL = os.getenv("AGREEMENTS_DB_URL", "sqlite:///./agreements.db")
engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all agreement tables on *bind* (defaults to the module engine)."""
    from . import models  # noqa: F401  register tables on the metadata

    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Session:
    return Session(engine)


def session_scope() -> Iterator[Session]:
    """FastAPI dependency yielding a session that is closed after the request."""
    with Session(engine) as session:
        yield session
