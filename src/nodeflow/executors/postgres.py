"""PostgreSQL conversation store."""
from typing import Any, Callable

import psycopg
from psycopg import sql

from nodeflow.executors.memory import ConversationStoreExecutor

CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGSERIAL PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS {index} ON {table} (workflow_id, node_id, created_at DESC)
"""

SELECT_HISTORY = """
SELECT role, content FROM {table}
WHERE workflow_id = %s AND node_id = %s
ORDER BY created_at DESC, id DESC
LIMIT %s
"""

INSERT_MESSAGE = """
INSERT INTO {table} (workflow_id, node_id, role, content) VALUES (%s, %s, %s, %s)
"""


class PostgresMemoryExecutor(ConversationStoreExecutor):
    """Chat history in a PostgreSQL table, created on first use.

    The credential holds the password. ``user``, ``port`` and ``database``
    come from node data.
    """

    label = "Postgres"
    service = "postgres"
    location_key = "tableName"
    location_field = "tableName"

    def __init__(self, *args: Any, connect: Callable[..., psycopg.Connection] = psycopg.connect, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.connect = connect

    def _connection(self, data: dict[str, Any], secret: str) -> psycopg.Connection:
        try:
            return self.connect(
                host=str(data["host"]),
                port=int(data.get("port") or 5432),
                dbname=str(data.get("database") or "postgres"),
                user=str(data.get("user") or "postgres"),
                password=secret,
                sslmode=str(data.get("sslMode") or "prefer"),
                connect_timeout=10,
            )
        except psycopg.OperationalError as e:
            raise self.failure(e, "connection") from e

    def _ensure_table(self, conn: psycopg.Connection, table: str) -> None:
        conn.execute(sql.SQL(CREATE_TABLE).format(table=sql.Identifier(table)))
        conn.execute(
            sql.SQL(CREATE_INDEX).format(
                index=sql.Identifier(f"idx_{table}_lookup"),
                table=sql.Identifier(table),
            )
        )

    def query_history(self, data, secret, location, workflow_id, agent_node_id, limit):
        with self._connection(data, secret) as conn:
            self._ensure_table(conn, location)
            rows = conn.execute(
                sql.SQL(SELECT_HISTORY).format(table=sql.Identifier(location)),
                (workflow_id, agent_node_id, limit),
            ).fetchall()
        # Newest first from the query; callers want oldest first
        return [{"role": role, "content": content} for role, content in reversed(rows)]

    def save_message(self, data, secret, location, workflow_id, agent_node_id, role, content):
        with self._connection(data, secret) as conn:
            self._ensure_table(conn, location)
            conn.execute(
                sql.SQL(INSERT_MESSAGE).format(table=sql.Identifier(location)),
                (workflow_id, agent_node_id, role, content),
            )
