"""Unit tests for the Postgres and Redis conversation stores."""
import json
from unittest.mock import MagicMock

import pytest

from nodeflow.context import (
    AGENT_NODE_ID_KEY,
    DATABASE_OPERATION_KEY,
    DATABASE_RESULT_KEY,
    MESSAGE_ROLE_KEY,
    MESSAGE_TO_SAVE_KEY,
    WORKFLOW_ID_KEY,
)
from nodeflow.errors import ConfigurationError
from nodeflow.executors.postgres import PostgresMemoryExecutor
from nodeflow.executors.redis_memory import RedisMemoryExecutor


def redis_data(**overrides):
    data = {"credentialId": "cred-1", "host": "redis.test", "keyPrefix": "chat"}
    data.update(overrides)
    return data


def hub_context(operation, **extra):
    return {
        WORKFLOW_ID_KEY: "wf-1",
        AGENT_NODE_ID_KEY: "agent-1",
        DATABASE_OPERATION_KEY: operation,
        **extra,
    }


class TestRedisMemoryExecutor:
    """Test chat history kept in Redis lists."""

    def make_executor(self, credentials, fake_redis):
        self.client_kwargs = []

        def factory(**kwargs):
            self.client_kwargs.append(kwargs)
            return fake_redis

        return RedisMemoryExecutor(credentials, client_factory=factory)

    def test_save_then_query(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        saved = executor.execute(
            make_input(
                redis_data(),
                context=hub_context("save", **{MESSAGE_TO_SAVE_KEY: "hello", MESSAGE_ROLE_KEY: "user"}),
                node_id="memory",
            )
        )
        queried = executor.execute(make_input(redis_data(), context=hub_context("query"), node_id="memory"))

        assert saved[DATABASE_RESULT_KEY] == {"chatHistory": [], "saved": True, "keyPrefix": "chat"}
        assert queried[DATABASE_RESULT_KEY]["chatHistory"] == [{"role": "user", "content": "hello"}]
        entry = json.loads(fake_redis.lists["chat:wf-1:agent-1"][0])
        assert entry["role"] == "user"
        assert "createdAt" in entry
        assert self.client_kwargs[0]["password"] == "secret-key"
        assert fake_redis.closed == 2

    def test_query_returns_trailing_window(self, make_input, credentials, fake_redis):
        for i in range(5):
            fake_redis.rpush("chat:wf-1:agent-1", json.dumps({"role": "user", "content": str(i)}))
        executor = self.make_executor(credentials, fake_redis)

        result = executor.execute(
            make_input(redis_data(contextWindow=2), context=hub_context("query"))
        )

        assert [t["content"] for t in result[DATABASE_RESULT_KEY]["chatHistory"]] == ["3", "4"]

    def test_pipeline_mode_binds_variable(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)
        params = make_input(
            redis_data(variableName="history"),
            node_id="memory",
            workflow=None,
        )

        result = executor.execute(params)

        assert result["history"] == {"chatHistory": [], "saved": False, "keyPrefix": "chat"}
        assert DATABASE_RESULT_KEY not in result

    def test_pipeline_mode_requires_variable_name(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        with pytest.raises(ConfigurationError) as exc_info:
            executor.execute(make_input(redis_data()))

        assert "variableName" in str(exc_info.value)

    def test_requires_host(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        with pytest.raises(ConfigurationError) as exc_info:
            executor.execute(make_input(redis_data(host=""), context=hub_context("query")))

        assert "host" in str(exc_info.value)

    def test_unknown_operation(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        with pytest.raises(ConfigurationError):
            executor.execute(make_input(redis_data(), context=hub_context("drop")))

    def test_invalid_window(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        with pytest.raises(ConfigurationError):
            executor.execute(make_input(redis_data(contextWindow="many"), context=hub_context("query")))

    def test_default_location(self, make_input, credentials, fake_redis):
        executor = self.make_executor(credentials, fake_redis)

        result = executor.execute(make_input(redis_data(keyPrefix=None), context=hub_context("query")))

        assert result[DATABASE_RESULT_KEY]["keyPrefix"] == "nodeflow_chat_histories"


class TestPostgresMemoryExecutor:
    """Test chat history kept in a Postgres table."""

    @pytest.fixture
    def connection(self):
        conn = MagicMock()
        conn.__enter__.return_value = conn
        conn.execute.return_value.fetchall.return_value = [
            ("assistant", "second"),
            ("user", "first"),
        ]
        return conn

    def test_query_returns_oldest_first(self, make_input, credentials, connection):
        connect = MagicMock(return_value=connection)
        executor = PostgresMemoryExecutor(credentials, connect=connect)
        data = {"credentialId": "cred-1", "host": "db.test", "tableName": "agent_memory"}

        result = executor.execute(make_input(data, context=hub_context("query")))

        assert result[DATABASE_RESULT_KEY] == {
            "chatHistory": [
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "second"},
            ],
            "saved": False,
            "tableName": "agent_memory",
        }
        kwargs = connect.call_args.kwargs
        assert kwargs["host"] == "db.test"
        assert kwargs["password"] == "secret-key"
        assert kwargs["port"] == 5432
        # create table, create index, select
        assert connection.execute.call_count == 3
        assert connection.execute.call_args.args[1] == ("wf-1", "agent-1", 20)

    def test_save_inserts_turn(self, make_input, credentials, connection):
        executor = PostgresMemoryExecutor(credentials, connect=MagicMock(return_value=connection))
        context = hub_context("save", **{MESSAGE_TO_SAVE_KEY: "reply", MESSAGE_ROLE_KEY: "assistant"})

        result = executor.execute(make_input({"credentialId": "cred-1", "host": "db.test"}, context=context))

        assert result[DATABASE_RESULT_KEY]["saved"] is True
        assert result[DATABASE_RESULT_KEY]["tableName"] == "nodeflow_chat_histories"
        assert connection.execute.call_args.args[1] == ("wf-1", "agent-1", "assistant", "reply")
