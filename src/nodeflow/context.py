"""Execution context helpers and the templating capability."""
import json
from typing import Any, Callable, Mapping

from jinja2 import BaseLoader, ChainableUndefined, Environment, TemplateError, Undefined

from nodeflow.errors import ConfigurationError

ExecutionContext = dict[str, Any]

# Scratch keys exchanged between the agent hub and its child adapters.
# They never leave a hub step.
WORKFLOW_ID_KEY = "_workflow_id"
AGENT_NODE_ID_KEY = "_agent_node_id"
CHAT_HISTORY_KEY = "_chat_history"
USER_PROMPT_KEY = "_user_prompt"
CHAT_MODEL_RESPONSE_KEY = "_chat_model_response"
DATABASE_OPERATION_KEY = "_database_operation"
MESSAGE_TO_SAVE_KEY = "_message_to_save"
MESSAGE_ROLE_KEY = "_message_role"
DATABASE_RESULT_KEY = "_database_result"
TOOLS_OPERATION_KEY = "_tools_operation"
TOOL_SET_KEY = "_tool_set"
TOOL_CALL_KEY = "_tool_call"
TOOLS_RESULT_KEY = "_tools_result"

SCRATCH_KEYS = frozenset(
    {
        WORKFLOW_ID_KEY,
        AGENT_NODE_ID_KEY,
        CHAT_HISTORY_KEY,
        USER_PROMPT_KEY,
        CHAT_MODEL_RESPONSE_KEY,
        DATABASE_OPERATION_KEY,
        MESSAGE_TO_SAVE_KEY,
        MESSAGE_ROLE_KEY,
        DATABASE_RESULT_KEY,
        TOOLS_OPERATION_KEY,
        TOOL_SET_KEY,
        TOOL_CALL_KEY,
        TOOLS_RESULT_KEY,
    }
)


def with_variable(context: Mapping[str, Any], name: str, value: Any) -> ExecutionContext:
    """
    Return a new context with ``name`` bound to ``value``.

    The input mapping is left untouched. An existing key is overwritten:
    the last writer wins.

    Args:
        context: Current context
        name: Variable name
        value: JSON-compatible value

    Returns:
        New context
    """
    return {**context, name: value}


def with_variables(context: Mapping[str, Any], **values: Any) -> ExecutionContext:
    """Bind several variables at once; see ``with_variable``."""
    return {**context, **values}


def strip_scratch(context: Mapping[str, Any]) -> ExecutionContext:
    """Drop every internal scratch key from ``context``."""
    return {k: v for k, v in context.items() if k not in SCRATCH_KEYS}


def _to_json(value: Any) -> str:
    if isinstance(value, Undefined):
        return ""
    return json.dumps(value, default=str, ensure_ascii=False)


class TemplateRenderer:
    """Jinja2-backed templating for node fields.

    Templates reference context variables as ``{{ name.path }}``. Unknown
    paths render as an empty string. ``json`` is available as a function
    and as a filter to embed a value as JSON text.
    """

    def __init__(self) -> None:
        self.env = Environment(
            loader=BaseLoader(),
            undefined=ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters["json"] = _to_json
        self.env.globals["json"] = _to_json

    def compile(self, template: str) -> Callable[[Mapping[str, Any]], str]:
        """
        Compile a template into a render function.

        Args:
            template: Template source

        Returns:
            Callable taking a context and returning rendered text

        Raises:
            ConfigurationError: If the template does not parse
        """
        try:
            compiled = self.env.from_string(template)
        except TemplateError as e:
            raise ConfigurationError(f"Invalid template: {e}") from e

        def render(context: Mapping[str, Any]) -> str:
            try:
                return compiled.render(dict(context))
            except TemplateError as e:
                raise ConfigurationError(f"Template render failed: {e}") from e
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Template render failed: {e}") from e

        return render

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """Compile and render ``template`` against ``context``."""
        return self.compile(template)(context)


_renderer: TemplateRenderer | None = None


def get_renderer() -> TemplateRenderer:
    """Get or create the shared renderer."""
    global _renderer
    if _renderer is None:
        _renderer = TemplateRenderer()
    return _renderer
