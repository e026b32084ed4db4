from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import Base, Branch, Client, Employee  # noqa: E402
from materializer import AssignmentMaterializer  # noqa: E402
from stop_editor import StopEditor  # noqa: E402
from template_store import TemplateStore  # noqa: E402


@pytest.fixture()
def session_factory(monkeypatch):
    """Single in-memory engine standing in for routes.db."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", factory)
    yield factory
    engine.dispose()


@pytest.fixture()
def directory(session_factory):
    with session_factory() as session:
        dana = Employee(full_name="Dana Reyes", phone_number="555-0101", status="active")
        omar = Employee(full_name="Omar Haddad", phone_number="555-0102", status="active")
        lee = Employee(full_name="Lee Park", phone_number="555-0103", status="inactive")
        acme = Client(full_name="Acme Foods")
        globex = Client(full_name="Globex")
        session.add_all([dana, omar, lee, acme, globex])
        session.flush()
        main_st = Branch(client_id=acme.id, name="Main St", address="1 Main Street")
        harbor = Branch(client_id=acme.id, name="Harbor", address="9 Harbor Way")
        plaza = Branch(client_id=globex.id, name="Plaza", address="300 Plaza Blvd")
        session.add_all([main_st, harbor, plaza])
        session.commit()
        return SimpleNamespace(
            dana=dana.id,
            omar=omar.id,
            lee=lee.id,
            acme=acme.id,
            globex=globex.id,
            main_st=main_st.id,
            harbor=harbor.id,
            plaza=plaza.id,
        )


@pytest.fixture()
def store(session_factory):
    template_store = TemplateStore(session_factory)
    template_store.load()
    return template_store


@pytest.fixture()
def editor(store, session_factory):
    return StopEditor(store, session_factory)


@pytest.fixture()
def materializer(store, session_factory):
    assignment_materializer = AssignmentMaterializer(store, session_factory)
    assignment_materializer.load()
    return assignment_materializer


class MemoryReceiptStore:
    """Object store double keeping uploads in a dict."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.removed: List[str] = []

    def store(self, name: str, data: bytes, content_type: str) -> str:
        self.objects[name] = data
        return f"memory://{name}"

    def remove(self, reference: str) -> None:
        self.removed.append(reference)
        self.objects.pop(reference.replace("memory://", "", 1), None)


class FailingReceiptStore:
    def store(self, name: str, data: bytes, content_type: str) -> str:
        raise OSError("object store unavailable")

    def remove(self, reference: str) -> None:
        raise OSError("object store unavailable")


@pytest.fixture()
def memory_receipts():
    return MemoryReceiptStore()


@pytest.fixture()
def failing_receipts():
    return FailingReceiptStore()
