import pytest
from contextlib import asynccontextmanager
from fastapi.testclient import TestClient
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from formtester.core.config import Settings
from formtester.core.exceptions import ExternalServiceError
from formtester.main import app
from formtester.dependencies import get_db, get_field_discovery, get_runner, get_screenshots, get_timer
from formtester.services.discovery import FieldDiscoveryService
from formtester.services.runner import FormTestRunner
from formtester.services.schedule import ScheduleService
from formtester.services.screenshots import ScreenshotStore
from formtester.services.timer_rules import TimerRuleAdapter


class FakeTimer(TimerRuleAdapter):
    """In-memory timer rules; ``fail_on`` names the operations that raise."""

    def __init__(self):
        self.rules = {}
        self.calls = []
        self.fail_on = set()

    def _maybe_fail(self, operation):
        if operation in self.fail_on:
            raise ExternalServiceError(f"{operation} failed")

    def put_rule(self, name, cron_expression, description, payload, enabled=True):
        self.calls.append(("put_rule", name))
        self._maybe_fail("put_rule")
        self.rules[name] = {"cron": cron_expression, "payload": payload, "enabled": enabled}
        return f"arn:aws:events:us-east-1:000000000000:rule/{name}"

    def enable_rule(self, name):
        self.calls.append(("enable_rule", name))
        self._maybe_fail("enable_rule")
        self.rules[name]["enabled"] = True

    def disable_rule(self, name):
        self.calls.append(("disable_rule", name))
        self._maybe_fail("disable_rule")
        self.rules[name]["enabled"] = False

    def delete_rule(self, name):
        self.calls.append(("delete_rule", name))
        self._maybe_fail("delete_rule")
        self.rules.pop(name, None)


class FakeScreenshots(ScreenshotStore):
    def __init__(self):
        self.saved = {}

    def save(self, test_id, stage, data):
        key = f"{test_id}/{stage}.png"
        self.saved[key] = data
        return key

    def signed_url(self, key, expires=3600):
        return f"https://blobs.test/{key}?expires={expires}"


class FakePage:
    """Records the Playwright calls a run makes.

    ``fail`` maps a method name to the exception it should raise.
    """

    def __init__(self):
        self.actions = []
        self.handlers = {}
        self.fail = {}
        self.closed = False
        self.evaluate_result = []

    def on(self, event, handler):
        self.handlers[event] = handler

    async def _record(self, name, *args):
        self.actions.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    async def goto(self, url, wait_until=None, timeout=None):
        await self._record("goto", url)

    async def screenshot(self):
        await self._record("screenshot")
        return b"\x89PNG"

    async def fill(self, selector, value):
        await self._record("fill", selector, value)

    async def select_option(self, selector, value):
        await self._record("select_option", selector, value)

    async def check(self, selector):
        await self._record("check", selector)

    async def uncheck(self, selector):
        await self._record("uncheck", selector)

    async def click(self, selector):
        await self._record("click", selector)

    async def wait_for_selector(self, selector, timeout=None):
        await self._record("wait_for_selector", selector)

    async def wait_for_load_state(self, state=None, timeout=None):
        await self._record("wait_for_load_state", state)

    async def evaluate(self, script):
        await self._record("evaluate")
        return self.evaluate_result


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite://", SCREENSHOT_BACKEND="local")

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from formtester.models import Schedule, TestRun  # noqa: F401
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session

@pytest.fixture
def timer():
    return FakeTimer()

@pytest.fixture
def screenshots():
    return FakeScreenshots()

@pytest.fixture
def page():
    return FakePage()

@pytest.fixture
def page_factory(page):
    @asynccontextmanager
    async def factory():
        try:
            yield page
        finally:
            page.closed = True
    return factory

@pytest.fixture
def schedule_service(session, timer, settings):
    return ScheduleService(session, timer, settings)

@pytest.fixture
def runner(session, screenshots, settings, page_factory):
    return FormTestRunner(session, screenshots, settings, page_factory=page_factory)

@pytest.fixture
def client(engine, timer, screenshots, settings, page_factory):
    def override_db():
        with Session(engine) as session:
            yield session

    def override_runner():
        with Session(engine) as session:
            yield FormTestRunner(session, screenshots, settings, page_factory=page_factory)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_timer] = lambda: timer
    app.dependency_overrides[get_screenshots] = lambda: screenshots
    app.dependency_overrides[get_runner] = override_runner
    app.dependency_overrides[get_field_discovery] = lambda: FieldDiscoveryService(settings, page_factory=page_factory)
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def timeout_error():
    return PlaywrightTimeoutError("Timeout 10000ms exceeded.")

@pytest.fixture
def login_form():
    return {
        "fields": [{"name": "email", "type": "email", "selector": "#email", "required": True}],
        "submitButtonSelector": "#go",
    }

@pytest.fixture
def schedule_payload(login_form):
    return {
        "name": "Login form",
        "url": "https://x.test/login",
        "formConfig": login_form,
        "userData": {"email": "a@b.com"},
        "frequency": "daily",
        "specificTime": "08:00",
    }
