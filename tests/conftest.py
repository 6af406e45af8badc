"""Pytest configuration and fixtures."""
import os

import pytest

# Set test environment variables
os.environ["NODEFLOW_ENV"] = "test"
os.environ["NODEFLOW_DATABASE_URL"] = "sqlite://"
os.environ["NODEFLOW_REDIS_URL"] = "redis://localhost:6379/1"  # Test DB
os.environ["NODEFLOW_BROKER_URL"] = "memory://"


class FakeCredentialStore:
    """Credential store keyed by id, holding (owner_id, secret) pairs."""

    def __init__(self, secrets=None):
        self.secrets = dict(secrets or {})
        self.resolved = []

    def resolve(self, credential_id, owner_id):
        from nodeflow.errors import NotFoundError, UnauthorizedError

        self.resolved.append(credential_id)
        if credential_id not in self.secrets:
            raise NotFoundError(f"Credential not found: {credential_id}")
        owner, secret = self.secrets[credential_id]
        if owner != owner_id:
            raise UnauthorizedError(f"Credential not accessible: {credential_id}")
        return secret


class RecordingPublisher:
    """Status publisher that keeps every event."""

    def __init__(self):
        self.events = []

    def publish(self, node_id, status, node_type=None):
        self.events.append((node_id, str(getattr(status, "value", status))))

    def statuses(self, node_id):
        return [status for nid, status in self.events if nid == node_id]


class FakeRedis:
    """The slice of the redis client API the engine uses."""

    def __init__(self):
        self.lists = {}
        self.values = {}
        self.expiry = {}
        self.published = []
        self.closed = 0

    def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        if end == -1:
            return items[start:]
        return items[start:end + 1]

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex
        return True

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def close(self):
        self.closed += 1


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code=200, json_body=None, text=None, reason="OK", headers=None):
        self.status_code = status_code
        self._json = json_body
        self.reason = reason
        if json_body is not None:
            self.headers = {"Content-Type": "application/json", **(headers or {})}
            self.text = text if text is not None else str(json_body)
        else:
            self.headers = {"Content-Type": "text/plain", **(headers or {})}
            self.text = text or ""

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """requests.Session replaying queued responses and recording calls."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def _next(self):
        if not self.responses:
            return FakeResponse(200, json_body={"ok": True})
        return self.responses.pop(0)

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        return self._next()

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture
def credentials():
    """Credential store with one secret owned by user-1."""
    return FakeCredentialStore({"cred-1": ("user-1", "secret-key")})


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def http_session():
    return FakeSession()


@pytest.fixture
def make_response():
    """Factory for fake HTTP responses."""
    return FakeResponse


@pytest.fixture
def make_input(publisher):
    """Factory for executor inputs running steps inline."""
    from nodeflow.runtime import ExecutorInput, InlineStepRunner

    def factory(data, context=None, node_id="node-1", user_id="user-1", **kwargs):
        kwargs.setdefault("step_runner", InlineStepRunner())
        return ExecutorInput(
            data=data,
            node_id=node_id,
            user_id=user_id,
            context=dict(context or {}),
            status_publisher=publisher,
            **kwargs,
        )

    return factory


@pytest.fixture
def scripted_client():
    """Factory for chat clients that return queued replies."""
    from nodeflow.executors.llm import ChatClient, ChatResult

    class ScriptedChatClient(ChatClient):
        provider = "openai"

        def __init__(self, replies):
            super().__init__("http://model.test")
            self.replies = list(replies)
            self.calls = []

        def complete(self, api_key, model, system, messages, tools=None):
            self.calls.append(
                {
                    "api_key": api_key,
                    "model": model,
                    "system": system,
                    "messages": list(messages),
                    "tools": tools,
                }
            )
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            if isinstance(reply, str):
                return ChatResult(text=reply, model=model, provider=self.provider)
            return reply

    return ScriptedChatClient


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    from nodeflow.storage import Base, create_session_factory

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def workflows(session_factory):
    from nodeflow.storage import WorkflowRepository

    return WorkflowRepository(session_factory)


@pytest.fixture
def executions(session_factory):
    from nodeflow.storage import ExecutionRepository

    return ExecutionRepository(session_factory)


@pytest.fixture
def checkpoint_store():
    from nodeflow.runtime import InMemoryCheckpointStore

    return InMemoryCheckpointStore()


@pytest.fixture
def make_orchestrator(workflows, executions, publisher, checkpoint_store):
    """Factory for orchestrators over the test database."""
    from nodeflow.orchestrator import WorkflowOrchestrator
    from nodeflow.quota import QuotaGuard, StaticEntitlementChecker
    from nodeflow.runtime import CheckpointedStepRunner

    def factory(registry, entitlements=None, monthly_limit=100):
        return WorkflowOrchestrator(
            registry=registry,
            workflows=workflows,
            executions=executions,
            quota=QuotaGuard(
                executions,
                entitlements or StaticEntitlementChecker(),
                monthly_limit=monthly_limit,
            ),
            step_runner_factory=lambda run_id: CheckpointedStepRunner(
                run_id, checkpoint_store, max_attempts=3, sleep=lambda _: None
            ),
            status_publisher=publisher,
        )

    return factory


@pytest.fixture
def sample_anthropic_response():
    """Sample Anthropic API response with a tool call."""
    return {
        "id": "msg_test123",
        "type": "message",
        "role": "assistant",
        "content": [
            {
                "type": "text",
                "text": "Let me check.",
            },
            {
                "type": "tool_use",
                "id": "toolu_1",
                "name": "weather",
                "input": {"city": "Paris"},
            },
        ],
        "model": "claude-3-5-sonnet-20241022",
        "stop_reason": "tool_use",
        "usage": {
            "input_tokens": 15,
            "output_tokens": 25,
        },
    }
