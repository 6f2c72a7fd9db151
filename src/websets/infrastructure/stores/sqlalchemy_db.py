from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DB_URL = "sqlite:///data/websets.db"


def get_db_url() -> str:
    return os.getenv("WEBSETS_DB_URL", DEFAULT_DB_URL)


class SessionProvider:
    """Owns one engine and hands out sessions bound to it."""

    def __init__(self, db_url: Optional[str] = None):
        self.db_url = db_url or get_db_url()
        url = make_url(self.db_url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(
            self.db_url, future=True, pool_pre_ping=True, connect_args=connect_args
        )
        self._factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def session(self) -> Session:
        return self._factory()
