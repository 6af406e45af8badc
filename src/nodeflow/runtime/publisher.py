"""Node status publishers."""
import json
from datetime import datetime, timezone

import redis

from nodeflow.models import NodeType
from nodeflow.observability import get_logger
from nodeflow.runtime.contracts import NodeStatus

logger = get_logger(__name__)


class NullStatusPublisher:
    """Discards status events."""

    def publish(
        self,
        node_id: str,
        status: NodeStatus,
        node_type: NodeType | None = None,
    ) -> None:
        return None


class RedisStatusPublisher:
    """Publishes status events as JSON on a Redis pub/sub channel per node type."""

    def __init__(self, redis_client: redis.Redis, channel_prefix: str = "nodeflow:status"):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    def channel_for(self, node_type: NodeType | None) -> str:
        suffix = node_type.value.lower() if node_type is not None else "node"
        return f"{self.channel_prefix}:{suffix}"

    def publish(
        self,
        node_id: str,
        status: NodeStatus,
        node_type: NodeType | None = None,
    ) -> None:
        message = json.dumps(
            {
                "nodeId": node_id,
                "status": NodeStatus(status).value,
                "nodeType": node_type.value if node_type is not None else None,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        try:
            self.redis_client.publish(self.channel_for(node_type), message)
        except redis.RedisError as e:
            # Status is advisory; a dead channel never fails a node
            logger.warning(
                "Failed to publish node status",
                extra={"node_id": node_id, "status": str(status), "error": str(e)},
            )
