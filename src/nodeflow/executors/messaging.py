"""Messaging actions: Slack and Discord webhooks, Telegram bot messages."""
from typing import Any

import requests

from nodeflow.context import ExecutionContext, with_variable
from nodeflow.errors import NodeExecutionError, TransientError
from nodeflow.executors.base import NodeExecutor, variable_name
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.runtime.retry import is_transient_status

WEBHOOK_CONTENT_LIMIT = 2000
TELEGRAM_CONTENT_LIMIT = 4096


class _HttpMessagingExecutor(NodeExecutor):
    def __init__(self, session: requests.Session | None = None, timeout_s: float = 30.0, **kwargs: Any):
        super().__init__(**kwargs)
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def _post_json(self, url: str, body: dict[str, Any]) -> requests.Response:
        try:
            response = self.session.post(url, json=body, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise self.failure(e, "request") from e
        if response.status_code >= 400:
            message = f"{self.label} node: request returned {response.status_code}"
            if is_transient_status(response.status_code):
                raise TransientError(message)
            raise NodeExecutionError(message)
        return response


class WebhookMessageExecutor(_HttpMessagingExecutor):
    """Posts rendered content to an incoming-webhook URL.

    ``service`` prefixes the result keys, e.g. ``slackMessageContent``.
    """

    def __init__(self, service: str, label: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.service = service
        self.label = label

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            self.require(data, "content")
            name = variable_name(self, data)
            self.require(data, "webhookUrl")
            content = self.render(data["content"], params.context)
            body: dict[str, Any] = {"content": content}
            if self.service == "discord":
                body["content"] = content[:WEBHOOK_CONTENT_LIMIT]
                if data.get("username"):
                    body["username"] = data["username"]
            else:
                body["text"] = content

            params.step_runner.run(
                f"{self.service}-webhook:{params.node_id}",
                lambda: self._post_json(str(data["webhookUrl"]), body).status_code,
            )
        return with_variable(
            params.context,
            name,
            {
                f"{self.service}MessageContent": content[:WEBHOOK_CONTENT_LIMIT],
                f"{self.service}MessageSent": True,
            },
        )


class TelegramExecutor(_HttpMessagingExecutor):
    """Sends a Markdown message through the Telegram Bot API."""

    label = "Telegram"
    api_url = "https://api.telegram.org"

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            self.require(data, "content")
            name = variable_name(self, data)
            self.require(data, "botToken", "chatId")
            content = self.render(data["content"], params.context)[:TELEGRAM_CONTENT_LIMIT]

            def send() -> dict[str, Any]:
                response = self._post_json(
                    f"{self.api_url}/bot{data['botToken']}/sendMessage",
                    {"chat_id": data["chatId"], "text": content, "parse_mode": "Markdown"},
                )
                return response.json()

            reply = params.step_runner.run(f"telegram-send:{params.node_id}", send)
        return with_variable(
            params.context,
            name,
            {
                "telegramMessageContent": content,
                "telegramMessageSent": bool(reply.get("ok")),
                "telegramMessageId": (reply.get("result") or {}).get("message_id"),
            },
        )
