"""Unit tests for context helpers and templating."""
import pytest

from nodeflow.context import (
    CHAT_HISTORY_KEY,
    TOOL_SET_KEY,
    TemplateRenderer,
    get_renderer,
    strip_scratch,
    with_variable,
    with_variables,
)
from nodeflow.errors import ConfigurationError


def test_with_variable_returns_new_context():
    context = {"a": 1}

    updated = with_variable(context, "b", 2)

    assert updated == {"a": 1, "b": 2}
    assert context == {"a": 1}


def test_with_variable_last_writer_wins():
    assert with_variable({"a": 1}, "a", 2) == {"a": 2}


def test_with_variables_binds_several():
    assert with_variables({"a": 1}, b=2, c=3) == {"a": 1, "b": 2, "c": 3}


def test_strip_scratch_keeps_user_variables():
    context = {"api": {"status": 200}, CHAT_HISTORY_KEY: [], TOOL_SET_KEY: {}}

    assert strip_scratch(context) == {"api": {"status": 200}}


class TestTemplateRenderer:
    """Test template rendering against a context."""

    def test_renders_nested_path(self):
        renderer = TemplateRenderer()
        context = {"api": {"data": {"user": {"name": "Ada"}}}}

        assert renderer.render("Hello {{ api.data.user.name }}!", context) == "Hello Ada!"

    def test_unknown_path_renders_empty(self):
        renderer = TemplateRenderer()

        assert renderer.render("[{{ missing.deeply.nested }}]", {}) == "[]"

    def test_json_filter_and_function(self):
        renderer = TemplateRenderer()
        context = {"payload": {"ids": [1, 2]}}

        assert renderer.render("{{ payload | json }}", context) == '{"ids": [1, 2]}'
        assert renderer.render("{{ json(payload.ids) }}", context) == "[1, 2]"

    def test_json_of_unknown_path_is_empty(self):
        assert TemplateRenderer().render("{{ nothing | json }}", {}) == ""

    def test_compiled_template_is_reusable(self):
        render = TemplateRenderer().compile("{{ n }}")

        assert render({"n": 1}) == "1"
        assert render({"n": 2}) == "2"

    def test_syntax_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            TemplateRenderer().render("{{ unclosed ", {})

        assert "Invalid template" in str(exc_info.value)

    def test_no_html_escaping(self):
        assert TemplateRenderer().render("{{ html }}", {"html": "<b>&</b>"}) == "<b>&</b>"

    def test_get_renderer_singleton(self):
        assert get_renderer() is get_renderer()
