"""Email action: sends a rendered HTML message over SMTP."""
import json
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from nodeflow.context import ExecutionContext, with_variable
from nodeflow.errors import ConfigurationError, NodeExecutionError
from nodeflow.executors.base import NodeExecutor, variable_name
from nodeflow.observability import get_logger, with_trace_context
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.storage.credentials import CredentialStore

logger = get_logger(__name__)

GMAIL_HOST = "smtp.gmail.com"
GMAIL_PORT = 465

SmtpFactory = Callable[["SmtpAccount", float], smtplib.SMTP]


class SmtpAccount(BaseModel):
    """Connection details decoded from an email credential."""

    host: str
    port: int = 587
    secure: bool = False
    username: str
    password: str
    sender: str = Field(alias="from")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_secret(cls, secret: str) -> "SmtpAccount":
        """
        Decode a credential secret.

        Two shapes are accepted: an SMTP account
        (``host``, ``port``, ``secure``, ``username``, ``password``, ``from``)
        or a Gmail app password (``email``, ``appPassword``).

        Raises:
            ConfigurationError: If the secret is neither
        """
        try:
            raw = json.loads(secret)
        except json.JSONDecodeError as e:
            raise ConfigurationError("Email node: credential is not valid JSON") from e
        if not isinstance(raw, dict):
            raise ConfigurationError("Email node: credential must be a JSON object")

        if "host" not in raw and raw.get("email"):
            raw = {
                "host": GMAIL_HOST,
                "port": GMAIL_PORT,
                "secure": True,
                "username": raw["email"],
                "password": raw.get("appPassword") or raw.get("password") or "",
                "from": raw["email"],
            }
        raw.setdefault("from", raw.get("username"))
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Email node: invalid credential: {e}") from e


def connect_smtp(account: SmtpAccount, timeout_s: float) -> smtplib.SMTP:
    """Open an authenticated connection; implicit TLS when ``secure`` is set."""
    if account.secure:
        server: smtplib.SMTP = smtplib.SMTP_SSL(account.host, account.port, timeout=timeout_s)
    else:
        server = smtplib.SMTP(account.host, account.port, timeout=timeout_s)
        server.starttls()
    server.login(account.username, account.password)
    return server


class EmailExecutor(NodeExecutor):
    """Renders ``to``, ``subject`` and ``body`` and sends them as HTML."""

    label = "Email"

    def __init__(
        self,
        credentials: CredentialStore,
        smtp_factory: SmtpFactory = connect_smtp,
        timeout_s: float = 30.0,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.credentials = credentials
        self.smtp_factory = smtp_factory
        self.timeout_s = timeout_s

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            name = variable_name(self, data)
            self.require(data, "credentialId", "to", "subject", "body")
            to = self.render(data["to"], params.context).strip()
            subject = self.render(data["subject"], params.context)
            body = self.render(data["body"], params.context)
            if not to:
                raise ConfigurationError('Email node: "to" rendered empty')
            account = SmtpAccount.from_secret(self.resolve_secret(self.credentials, params))

            message_id = params.step_runner.run(
                f"email-send:{params.node_id}",
                lambda: self._send(account, to, subject, body),
            )
        return with_variable(
            params.context,
            name,
            {"emailSent": True, "messageId": message_id, "to": to, "subject": subject},
        )

    def _send(self, account: SmtpAccount, to: str, subject: str, body: str) -> str:
        recipients = [address.strip() for address in to.split(",") if address.strip()]
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = account.sender
        message["To"] = ", ".join(recipients)
        message["Message-ID"] = make_msgid()
        message.attach(MIMEText(body, "html"))

        try:
            server = self.smtp_factory(account, self.timeout_s)
            try:
                server.sendmail(account.sender, recipients, message.as_string())
            finally:
                server.quit()
        except smtplib.SMTPException as e:
            raise NodeExecutionError(f"Email node: sending failed: {e}") from e
        except OSError as e:
            raise self.failure(e, "send") from e

        logger.info(
            "Email sent",
            extra=with_trace_context(recipients=len(recipients), host=account.host),
        )
        return message["Message-ID"]
