"""Workflow graph and execution data models."""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    """Closed set of node type tags."""

    # Triggers
    INITIAL = "INITIAL"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    WEBHOOK_TRIGGER = "WEBHOOK_TRIGGER"
    SCHEDULED_TRIGGER = "SCHEDULED_TRIGGER"
    GOOGLE_FORM_TRIGGER = "GOOGLE_FORM_TRIGGER"
    GOOGLE_SHEETS_TRIGGER = "GOOGLE_SHEETS_TRIGGER"
    STRIPE_TRIGGER = "STRIPE_TRIGGER"

    # Actions
    HTTP_REQUEST = "HTTP_REQUEST"
    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"
    GEMINI = "GEMINI"
    OPENROUTER = "OPENROUTER"
    DISCORD = "DISCORD"
    SLACK = "SLACK"
    TELEGRAM = "TELEGRAM"
    EMAIL = "EMAIL"
    GOOGLE_SHEETS = "GOOGLE_SHEETS"

    # Adapters
    OPENAI_CHAT_MODEL = "OPENAI_CHAT_MODEL"
    ANTHROPIC_CHAT_MODEL = "ANTHROPIC_CHAT_MODEL"
    GEMINI_CHAT_MODEL = "GEMINI_CHAT_MODEL"
    OPENROUTER_CHAT_MODEL = "OPENROUTER_CHAT_MODEL"
    POSTGRES = "POSTGRES"
    REDIS = "REDIS"
    MCP_TOOLS = "MCP_TOOLS"

    # Hub
    AI_AGENT = "AI_AGENT"


TRIGGER_NODE_TYPES = frozenset(
    {
        NodeType.INITIAL,
        NodeType.MANUAL_TRIGGER,
        NodeType.WEBHOOK_TRIGGER,
        NodeType.SCHEDULED_TRIGGER,
        NodeType.GOOGLE_FORM_TRIGGER,
        NodeType.GOOGLE_SHEETS_TRIGGER,
        NodeType.STRIPE_TRIGGER,
    }
)

CHAT_MODEL_NODE_TYPES = frozenset(
    {
        NodeType.OPENAI_CHAT_MODEL,
        NodeType.ANTHROPIC_CHAT_MODEL,
        NodeType.GEMINI_CHAT_MODEL,
        NodeType.OPENROUTER_CHAT_MODEL,
    }
)

DATABASE_NODE_TYPES = frozenset({NodeType.POSTGRES, NodeType.REDIS})

TOOL_NODE_TYPES = frozenset({NodeType.MCP_TOOLS})

HUB_NODE_TYPES = frozenset({NodeType.AI_AGENT})

# Adapters that only run through the hub they are wired into
AGENT_OWNED_NODE_TYPES = CHAT_MODEL_NODE_TYPES | DATABASE_NODE_TYPES


class Node(BaseModel):
    """One configured step of a workflow."""

    id: str = Field(..., description="Node id")
    type: NodeType = Field(..., description="Node type tag")
    data: dict[str, Any] = Field(default_factory=dict, description="Node configuration")
    credential_id: str | None = Field(default=None, description="Credential reference")


class Connection(BaseModel):
    """Directed, slot-labeled edge between two nodes."""

    from_node_id: str
    to_node_id: str
    from_output: str = "main"
    to_input: str = "main"


class WorkflowGraph(BaseModel):
    """Nodes and connections of one workflow plus its owner."""

    workflow_id: str
    owner_id: str
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> list[Connection]:
        """Connections targeting ``node_id``, in stored order."""
        return [c for c in self.connections if c.to_node_id == node_id]


class ExecutionStatus(str, Enum):
    """Execution record status."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class ExecutionRecord(BaseModel):
    """One run of a workflow, keyed by correlation id."""

    id: str
    correlation_id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    error_detail: str | None = None

    model_config = {"from_attributes": True}
