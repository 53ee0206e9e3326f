from __future__ import annotations

from collections.abc import Generator
from typing import Any

import psycopg
from fastapi import Request

from story_heat.db import DB
from story_heat.settings import get_settings


def get_db(request: Request) -> Generator[psycopg.Connection[Any], None, None]:
    db = getattr(request.app.state, "db", None)
    if not isinstance(db, DB):
        db = DB.from_settings(get_settings())
    with db.connection() as conn:
        yield conn
