from __future__ import annotations

from typing import Generator

from fastapi import Request

from backend.app.db.session import SessionLocal
from backend.services.container import ServiceContainer


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
