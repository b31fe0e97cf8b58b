"""
Pytest configuration and shared fixtures.

Settings are read when the chatbot package is first imported, so the test
environment (temporary databases, .env path, fake credentials) is put in
place here before any chatbot import.
"""

import os
import subprocess
import tempfile
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

_TEST_DIR = Path(tempfile.mkdtemp(prefix="chatbot-tests-"))

os.environ["HISTORY_DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'history.db'}"
os.environ["WORD_BLOCKS_DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'word_blocks.db'}"
os.environ["ENV_FILE_PATH"] = str(_TEST_DIR / "chat.env")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest1234567890"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_PHONE_NUMBER"] = "whatsapp:+14155238886"
os.environ["TWILIO_VALIDATE_SIGNATURE"] = "false"
os.environ["GEMINI_API_KEYS"] = "test-gemini-key"

# Clear settings cache before any other app imports
from chatbot.config import get_settings
get_settings.cache_clear()

from chatbot import models  # noqa: E402,F401  registers tables on the bases
from chatbot.gemini import get_responder  # noqa: E402
from chatbot.messaging import get_messenger  # noqa: E402
from chatbot.services import get_service_manager  # noqa: E402
from chatbot.storage import (  # noqa: E402
    BlocksBase,
    BlocksSessionLocal,
    HistoryBase,
    HistorySessionLocal,
    blocks_engine,
    history_engine,
)


# =============================================================================
# Fakes
# =============================================================================

class FakeResponder:
    """Stands in for GeminiResponder; remembers every prompt it was given."""

    def __init__(self, reply: str = "Hello from Gemini", error: Exception = None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeMessenger:
    """Stands in for TwilioMessenger."""

    def __init__(self, error: Exception = None):
        self.from_number = "whatsapp:+14155238886"
        self.error = error
        self.sent = []

    def send(self, to: str, body: str) -> dict:
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))
        return {"sid": "SM0123456789", "status": "queued"}


class FakeProcess:
    """Minimal subprocess.Popen double."""

    _next_pid = 4000

    def __init__(self, args, ignores_terminate: bool = False, exit_code=None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = args
        self.returncode = exit_code
        self.ignores_terminate = ignores_terminate
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignores_terminate:
            self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


# =============================================================================
# Database fixtures
# =============================================================================

def _drop_all():
    HistoryBase.metadata.drop_all(bind=history_engine)
    BlocksBase.metadata.drop_all(bind=blocks_engine)


@pytest.fixture
def databases():
    """Fresh, empty schema in both databases for each test."""
    _drop_all()
    HistoryBase.metadata.create_all(bind=history_engine)
    BlocksBase.metadata.create_all(bind=blocks_engine)
    yield
    _drop_all()


@pytest.fixture
def history_session(databases):
    with HistorySessionLocal() as db:
        yield db


@pytest.fixture
def blocks_session(databases):
    with BlocksSessionLocal() as db:
        yield db


# =============================================================================
# App clients
# =============================================================================

@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def chat_client(databases, responder, messenger):
    """Chat server client with the AI and Twilio replaced by fakes."""
    from chatbot.chat import app

    app.dependency_overrides[get_responder] = lambda: responder
    app.dependency_overrides[get_messenger] = lambda: messenger
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def service_manager():
    """
    ServiceManager wired to fake processes and a fake ngrok API that reports
    a tunnel on the first poll.
    """
    from chatbot.config import Settings
    from chatbot.services import ServiceManager

    def http_get(url, timeout=None):
        return httpx.Response(
            200,
            json={"tunnels": [{"proto": "https", "public_url": "https://abc123.ngrok.app"}]},
            request=httpx.Request("GET", url),
        )

    return ServiceManager(
        settings=Settings(NGROK_POLL_ATTEMPTS=3, NGROK_POLL_INTERVAL=0),
        popen=lambda args, **kwargs: FakeProcess(args),
        http_get=http_get,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def admin_client(databases, service_manager):
    """Admin server client with process management replaced by fakes."""
    from chatbot.admin import app

    app.dependency_overrides[get_service_manager] = lambda: service_manager
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
