"""Shared test fixtures."""

import itertools
import tempfile
from pathlib import Path

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bulknotify.batch import BatchProcessor
from bulknotify.channels import EmailChannel, PushChannel, SmsChannel
from bulknotify.config import DispatchConfig
from bulknotify.db import create_session_factory, init_db, session_scope
from bulknotify.models import Channel, DeviceToken, Listing, User, UserCategory
from bulknotify.providers import MockEmailProvider, MockPushProvider, MockSmsProvider
from bulknotify.queue import InMemoryQueue
from bulknotify.recipients import RecipientResolver, SqlUserDirectory
from bulknotify.service import BulkNotificationService
from bulknotify.store import TaskRepository
from bulknotify.template import TemplateLoader


@pytest.fixture
def engine():
    """In-memory SQLite database shared by every session in a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def add_user(session_factory):
    """Insert a marketplace user; returns its id.

    Extra keywords: ``device_tokens`` (list of tokens), ``listings`` (count)
    and ``categories`` (list of category ids).
    """
    ids = itertools.count(1)

    def _add(**fields):
        user_id = fields.pop("id", None) or next(ids)
        tokens = fields.pop("device_tokens", [])
        listings = fields.pop("listings", 0)
        categories = fields.pop("categories", [])
        fields.setdefault("email", f"user{user_id}@example.com")
        fields.setdefault("name", f"User {user_id}")
        fields.setdefault("is_verified", True)

        with session_scope(session_factory) as session:
            session.add(User(id=user_id, **fields))
            session.flush()
            session.add_all([DeviceToken(user_id=user_id, token=token) for token in tokens])
            session.add_all([Listing(user_id=user_id, title=f"Listing {n}") for n in range(listings)])
            session.add_all([UserCategory(user_id=user_id, category_id=c) for c in categories])
        return user_id

    return _add


@pytest.fixture
def temp_template_dir():
    """Create a temporary template directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def sample_template(temp_template_dir):
    """A ``welcome`` template with a subject line and a body."""
    template_dir = Path(temp_template_dir)

    with open(template_dir / "welcome.yaml", "w") as f:
        yaml.dump({"name": "Welcome", "subject": "Welcome {{ name }}", "description": "Onboarding"}, f)

    with open(template_dir / "welcome.jinja2", "w") as f:
        f.write("Hi {{ name }}, your code is {{ code }}.")

    return template_dir


@pytest.fixture
def email_provider():
    return MockEmailProvider("sender@example.com")


@pytest.fixture
def sms_provider():
    return MockSmsProvider()


@pytest.fixture
def push_provider():
    return MockPushProvider()


@pytest.fixture
def channels(session_factory, email_provider, sms_provider, push_provider):
    return {
        Channel.EMAIL: EmailChannel(email_provider),
        Channel.SMS: SmsChannel(sms_provider),
        Channel.PUSH: PushChannel(push_provider, SqlUserDirectory(session_factory).get_device_tokens),
    }


@pytest.fixture
def memory_queue():
    return InMemoryQueue(sleep=lambda seconds: None)


@pytest.fixture
def store(session_factory):
    return TaskRepository(session_factory)


@pytest.fixture
def sleeps():
    """Records the pauses the worker asks for instead of sleeping."""
    return []


@pytest.fixture
def make_service(session_factory, store, memory_queue, channels, sample_template, sleeps):
    """Build a service wired to the in-memory database and mock providers."""

    def _make(**overrides):
        options = {
            "store": store,
            "queue": memory_queue,
            "resolver": RecipientResolver(SqlUserDirectory(session_factory)),
            "processor": BatchProcessor(channels, TemplateLoader(str(sample_template))),
            "config": DispatchConfig(),
            "sleep": sleeps.append,
        }
        options.update(overrides)
        return BulkNotificationService(**options)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
