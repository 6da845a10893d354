import pytest

from mirrorsync.engine.templates import PlaceholderRenderer
from mirrorsync.exceptions import TransformError
from mirrorsync.utils import dot


@pytest.fixture
def renderer():
    return PlaceholderRenderer()


CONTEXT = {"user": {"first": "Ada", "last": "Lovelace", "tags": ["math", "code"], "age": 36}}


def test_single_placeholder_returns_raw_value(renderer):
    assert renderer.render("{{ user.tags }}", CONTEXT) == ["math", "code"]
    assert renderer.render("{{user.age}}", CONTEXT) == 36


def test_unresolved_single_placeholder_is_missing(renderer):
    assert renderer.render("{{ user.email }}", CONTEXT) is dot.MISSING


def test_mixed_template_renders_text(renderer):
    assert renderer.render("{{ user.first }} {{ user.last }} ({{ user.age }})", CONTEXT) == "Ada Lovelace (36)"


def test_missing_values_render_empty_in_text(renderer):
    assert renderer.render("Mail: {{ user.email }}", CONTEXT) == "Mail: "


def test_text_without_placeholders_is_literal(renderer):
    assert renderer.render("Fixed text", CONTEXT) == "Fixed text"


def test_filters(renderer):
    assert renderer.render("{{ user.first|upper }}", CONTEXT) == "ADA"
    assert renderer.render("{{ user.last | lower }}", CONTEXT) == "lovelace"
    assert renderer.render("{{ user.tags|length }}", CONTEXT) == 2
    assert renderer.render("{{ user.tags|json }}", CONTEXT) == '["math", "code"]'
    assert renderer.render('{{ user.email|default("n/a") }}', CONTEXT) == "n/a"
    assert renderer.render('{{ user.first|default("n/a") }}', CONTEXT) == "Ada"


def test_quoted_literal(renderer):
    assert renderer.render("{{ 'static' }}", CONTEXT) == "static"


def test_malformed_filter(renderer):
    with pytest.raises(TransformError):
        renderer.render("{{ user.first|up per }}", CONTEXT)


def test_unknown_filter_keeps_value(renderer, caplog):
    assert renderer.render("{{ user.first|shout }}", CONTEXT) == "Ada"
    assert "Unknown template filter: shout" in caplog.text
