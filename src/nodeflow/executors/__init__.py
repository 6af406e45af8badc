"""Node executors and the default registry."""
import requests

from nodeflow.config import Settings, get_settings
from nodeflow.executors.agent import AgentExecutor, AgentOrchestrator
from nodeflow.executors.base import NodeExecutor
from nodeflow.executors.chat_models import ChatModelExecutor, TextGenerationExecutor
from nodeflow.executors.email import EmailExecutor
from nodeflow.executors.google_sheets import GoogleSheetsExecutor
from nodeflow.executors.http_request import HttpRequestExecutor
from nodeflow.executors.llm import (
    AnthropicClient,
    ChatClient,
    GeminiClient,
    OpenAICompatibleClient,
)
from nodeflow.executors.mcp_tools import McpToolsExecutor
from nodeflow.executors.messaging import TelegramExecutor, WebhookMessageExecutor
from nodeflow.executors.postgres import PostgresMemoryExecutor
from nodeflow.executors.redis_memory import RedisMemoryExecutor
from nodeflow.executors.triggers import ScheduledTriggerExecutor, TriggerExecutor
from nodeflow.models import NodeType
from nodeflow.registry import ExecutorRegistry
from nodeflow.storage.credentials import CredentialStore


def build_chat_clients(settings: Settings) -> dict[str, ChatClient]:
    """One client per provider, keyed by provider name."""
    common = {"timeout_s": settings.http_timeout_s * 2, "max_tokens": settings.llm_max_tokens}
    return {
        "openai": OpenAICompatibleClient(settings.openai_base_url, provider="openai", **common),
        "openrouter": OpenAICompatibleClient(
            settings.openrouter_base_url, provider="openrouter", **common
        ),
        "anthropic": AnthropicClient(
            settings.anthropic_base_url, version=settings.anthropic_version, **common
        ),
        "gemini": GeminiClient(settings.gemini_base_url, **common),
    }


def build_default_registry(
    credentials: CredentialStore,
    settings: Settings | None = None,
    session: requests.Session | None = None,
    chat_clients: dict[str, ChatClient] | None = None,
) -> ExecutorRegistry:
    """
    Register an executor for every node type.

    Args:
        credentials: Credential store shared by credential-scoped executors
        settings: Settings (defaults to the global settings)
        session: requests session for HTTP, messaging and Google Sheets nodes
        chat_clients: Provider clients (defaults to ``build_chat_clients``)

    Returns:
        The populated registry
    """
    settings = settings or get_settings()
    session = session or requests.Session()
    clients = chat_clients or build_chat_clients(settings)
    registry = ExecutorRegistry()

    trigger = TriggerExecutor()
    for node_type in (
        NodeType.INITIAL,
        NodeType.MANUAL_TRIGGER,
        NodeType.WEBHOOK_TRIGGER,
        NodeType.GOOGLE_FORM_TRIGGER,
        NodeType.GOOGLE_SHEETS_TRIGGER,
        NodeType.STRIPE_TRIGGER,
    ):
        registry.register(node_type, trigger)
    registry.register(NodeType.SCHEDULED_TRIGGER, ScheduledTriggerExecutor())

    registry.register(
        NodeType.HTTP_REQUEST,
        HttpRequestExecutor(session=session, timeout_s=settings.http_timeout_s),
    )

    actions = (
        (NodeType.OPENAI, "openai", settings.openai_default_model, "OpenAI", "openAIResponse"),
        (NodeType.ANTHROPIC, "anthropic", settings.anthropic_default_model, "Anthropic", "anthropicResponse"),
        (NodeType.GEMINI, "gemini", settings.gemini_default_model, "Gemini", "geminiResponse"),
        (NodeType.OPENROUTER, "openrouter", settings.openrouter_default_model, "OpenRouter", "openRouterResponse"),
    )
    for node_type, provider, model, label, response_key in actions:
        registry.register(
            node_type,
            TextGenerationExecutor(
                clients[provider], credentials, model, label, response_key=response_key
            ),
        )

    chat_models = (
        (NodeType.OPENAI_CHAT_MODEL, "openai", settings.openai_default_model, "OpenAI Chat Model"),
        (NodeType.ANTHROPIC_CHAT_MODEL, "anthropic", settings.anthropic_default_model, "Anthropic Chat Model"),
        (NodeType.GEMINI_CHAT_MODEL, "gemini", settings.gemini_default_model, "Gemini Chat Model"),
        (NodeType.OPENROUTER_CHAT_MODEL, "openrouter", settings.openrouter_default_model, "OpenRouter Chat Model"),
    )
    for node_type, provider, model, label in chat_models:
        registry.register(
            node_type,
            ChatModelExecutor(
                clients[provider],
                credentials,
                model,
                label,
                max_tool_iterations=settings.agent_max_tool_iterations,
            ),
        )

    messaging = {"session": session, "timeout_s": settings.http_timeout_s}
    registry.register(NodeType.SLACK, WebhookMessageExecutor("slack", "Slack", **messaging))
    registry.register(NodeType.DISCORD, WebhookMessageExecutor("discord", "Discord", **messaging))
    registry.register(NodeType.TELEGRAM, TelegramExecutor(**messaging))
    registry.register(
        NodeType.EMAIL,
        EmailExecutor(credentials, timeout_s=settings.smtp_timeout_s),
    )
    registry.register(
        NodeType.GOOGLE_SHEETS,
        GoogleSheetsExecutor(
            credentials,
            session=session,
            base_url=settings.google_sheets_base_url,
            token_url=settings.google_token_url,
            client_id=settings.google_client_id,
            client_secret=(
                settings.google_client_secret.get_secret_value()
                if settings.google_client_secret
                else None
            ),
            timeout_s=settings.http_timeout_s,
        ),
    )

    registry.register(NodeType.POSTGRES, PostgresMemoryExecutor(credentials))
    registry.register(NodeType.REDIS, RedisMemoryExecutor(credentials))
    registry.register(NodeType.MCP_TOOLS, McpToolsExecutor(credentials))

    registry.register(NodeType.AI_AGENT, AgentExecutor(registry))
    return registry


__all__ = [
    "AgentExecutor",
    "AgentOrchestrator",
    "NodeExecutor",
    "build_chat_clients",
    "build_default_registry",
]
