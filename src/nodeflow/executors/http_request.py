"""HTTP request action."""
import requests

from nodeflow.context import ExecutionContext, with_variable
from nodeflow.errors import NodeExecutionError, TransientError
from nodeflow.executors.base import NodeExecutor, variable_name
from nodeflow.runtime.contracts import ExecutorInput
from nodeflow.runtime.retry import is_transient_status

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


class HttpRequestExecutor(NodeExecutor):
    """Calls an endpoint and binds ``{status, statusText, data}``.

    ``endpoint`` and ``body`` are templates. The body is only sent for
    POST, PUT and PATCH, as JSON. The response body is parsed as JSON when
    the server says it is JSON and kept as text otherwise.
    """

    label = "HTTP Request"

    def __init__(self, session: requests.Session | None = None, timeout_s: float = 30.0, **kwargs):
        super().__init__(**kwargs)
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def execute(self, params: ExecutorInput) -> ExecutionContext:
        data = params.data
        with self.reporting(params):
            name = variable_name(self, data)
            self.require(data, "endpoint")

            method = str(data.get("method") or "GET").upper()
            if method not in METHODS:
                raise NodeExecutionError(f"HTTP Request node: unsupported method {method}")
            endpoint = self.render(data["endpoint"], params.context)
            body = self.render(data.get("body"), params.context) if method in BODY_METHODS else None

            payload = params.step_runner.run(
                f"http-request:{params.node_id}",
                lambda: self._send(method, endpoint, body),
            )
        return with_variable(params.context, name, payload)

    def _send(self, method: str, endpoint: str, body: str | None) -> dict:
        kwargs: dict = {"timeout": self.timeout_s}
        if body is not None:
            kwargs["data"] = body.encode("utf-8")
            kwargs["headers"] = {"Content-Type": "application/json"}

        try:
            response = self.session.request(method, endpoint, **kwargs)
        except requests.RequestException as e:
            raise self.failure(e, "request") from e

        if response.status_code >= 400:
            message = f"HTTP Request node: {method} {endpoint} returned {response.status_code}"
            if is_transient_status(response.status_code):
                raise TransientError(message)
            raise NodeExecutionError(message)

        content_type = response.headers.get("Content-Type", "")
        if "application/json" in content_type:
            try:
                parsed = response.json()
            except ValueError as e:
                raise NodeExecutionError(f"HTTP Request node: invalid JSON response: {e}") from e
        else:
            parsed = response.text

        return {
            "status": response.status_code,
            "statusText": response.reason or "",
            "data": parsed,
        }
