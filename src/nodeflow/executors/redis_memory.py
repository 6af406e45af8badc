"""Redis conversation store."""
import json
from datetime import datetime, timezone
from typing import Any, Callable

import redis

from nodeflow.executors.memory import ConversationStoreExecutor


class RedisMemoryExecutor(ConversationStoreExecutor):
    """Chat history as a Redis list per (workflow, agent).

    Each entry is a JSON object with role, content and createdAt. The
    credential holds the password and may be empty.
    """

    label = "Redis"
    service = "redis"
    location_key = "keyPrefix"
    location_field = "keyPrefix"

    def __init__(self, *args: Any, client_factory: Callable[..., redis.Redis] = redis.Redis, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.client_factory = client_factory

    def _client(self, data: dict[str, Any], secret: str) -> redis.Redis:
        return self.client_factory(
            host=str(data["host"]),
            port=int(data.get("port") or 6379),
            db=int(data.get("db") or 0),
            password=secret or None,
            decode_responses=True,
            socket_timeout=10,
        )

    @staticmethod
    def history_key(prefix: str, workflow_id: str, agent_node_id: str) -> str:
        return f"{prefix}:{workflow_id}:{agent_node_id}"

    def query_history(self, data, secret, location, workflow_id, agent_node_id, limit):
        client = self._client(data, secret)
        try:
            raw = client.lrange(self.history_key(location, workflow_id, agent_node_id), -limit, -1)
        except redis.RedisError as e:
            raise self.failure(e, "query") from e
        finally:
            client.close()
        history = []
        for item in raw:
            entry = json.loads(item)
            history.append({"role": entry["role"], "content": entry["content"]})
        return history

    def save_message(self, data, secret, location, workflow_id, agent_node_id, role, content):
        entry = json.dumps(
            {
                "role": role,
                "content": content,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        client = self._client(data, secret)
        try:
            client.rpush(self.history_key(location, workflow_id, agent_node_id), entry)
        except redis.RedisError as e:
            raise self.failure(e, "save") from e
        finally:
            client.close()
