"""
Shared fixtures: settings with known secrets, a scripted chat model and a
TestClient wired to in-memory collaborators.
"""
import pytest
from fastapi.testclient import TestClient

from exam_relay.config import Settings
from exam_relay.main import create_app
from exam_relay.rate_limiter import RateLimiter
from exam_relay.results_store import InMemoryKeyValueStore, ResultsStore

ACCESS_PASSWORD = "class-password"
TEACHER_PASSWORD = "teacher-password"


class FakeChatModel:
    """Returns queued replies and records every request."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages, max_tokens=4000, temperature=0.7):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "temperature": temperature})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        access_password=ACCESS_PASSWORD,
        teacher_password=TEACHER_PASSWORD,
        openai_api_key="sk-test",
        allowed_origins=["https://exam.example.org", "http://localhost:5173"],
    )


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(window=60, max_requests=10, cleanup_every=100, stale_factor=5, clock=clock)


@pytest.fixture
def results():
    return ResultsStore(InMemoryKeyValueStore())


@pytest.fixture
def app(settings, chat_model, results, limiter):
    return create_app(settings=settings, chat_model=chat_model, results=results, limiter=limiter)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"X-Access-Password": ACCESS_PASSWORD, "CF-Connecting-IP": "203.0.113.7"}
