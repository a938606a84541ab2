import os
from datetime import datetime

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("LLM_PROVIDER", "none")
os.environ.setdefault("PROFILE_REFRESH_INTERVAL_SECONDS", "0")

import pytest
from sqlalchemy.orm import sessionmaker

from deskmem.db import DB, build_engine
from deskmem.errors import ExternalServiceError
from deskmem.models import Base, Customer, Tenant


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now


class FakeTextGenerator:
    """Deterministic TextGenerator; set `fail_*` to simulate an outage."""

    def __init__(self):
        self.summarize_calls = []
        self.profile_calls = []
        self.response_calls = []
        self.classify_calls = []
        self.fail_summarize_for = set()
        self.fail_profile = False
        self.fail_response = False
        self.classify_reply = None

    def summarize(self, messages, customer_meta, tenant_meta):
        self.summarize_calls.append((list(messages), customer_meta, tenant_meta))
        if customer_meta["id"] in self.fail_summarize_for:
            raise ExternalServiceError("summarizer timed out")
        return f"{customer_meta['id']} sent {len(messages)} messages"

    def generate_profile(self, customer_meta, summaries, tenant_meta):
        self.profile_calls.append((customer_meta, list(summaries), tenant_meta))
        if self.fail_profile:
            raise ExternalServiceError("profile generation timed out")
        return {
            "profile": {"communication_style": "direct", "topics": ["delivery"]},
            "summary": f"Customer with {len(summaries)} summarized periods",
            "tags": ["loyal"],
            "insights": ["prefers whatsapp"],
            "recommendations": ["follow up on deliveries"],
        }

    def generate_response(self, message, context):
        self.response_calls.append((message, context))
        if self.fail_response:
            raise ExternalServiceError("response generation timed out")
        return f"Reply to: {message}"

    def classify(self, text, context=None):
        self.classify_calls.append((text, context))
        if self.classify_reply is None:
            raise ExternalServiceError("classifier unavailable")
        return self.classify_reply


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "deskmem.sqlite"
    engine = build_engine(f"sqlite:///{db_path}", "sqlite")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 15, 12, 0, 0))


@pytest.fixture
def text_generator():
    return FakeTextGenerator()


def seed_tenant(session_factory, tenant_id="acme", **fields):
    session = session_factory()
    try:
        fields.setdefault("name", tenant_id.title())
        fields.setdefault("settings", {})
        session.add(Tenant(id=tenant_id, **fields))
        session.commit()
    finally:
        session.close()
    return tenant_id


def seed_customer(session_factory, tenant_id="acme", customer_id="cust-1", **fields):
    session = session_factory()
    try:
        fields.setdefault("name", customer_id)
        session.add(Customer(id=customer_id, tenant_id=tenant_id, **fields))
        session.commit()
    finally:
        session.close()
    return customer_id


@pytest.fixture
def tenant(session_factory):
    return seed_tenant(session_factory)


@pytest.fixture
def customer(session_factory, tenant):
    return seed_customer(session_factory, tenant)
