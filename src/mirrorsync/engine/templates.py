"""
Template rendering for mapping values that are not plain input paths.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict

from ..utils import dot
from ..exceptions import TransformError

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_FILTER = re.compile(r"^(\w+)(?:\((.*)\))?$")


class TemplateRenderer(ABC):
    """Renders a template expression against a context document."""

    @abstractmethod
    def render(self, expression: str, context: Dict[str, Any]) -> Any:
        """Render ``expression``; return ``dot.MISSING`` when nothing could be resolved."""
        pass


class PlaceholderRenderer(TemplateRenderer):
    """
    Substitutes ``{{ path }}`` placeholders with values from the context.

    A template consisting of a single placeholder yields the raw value, so types
    survive (``{{ user.tags }}`` stays a list). Mixed templates are rendered to a
    string. A placeholder may carry filters: ``{{ name|upper }}``,
    ``{{ name|default("n/a") }}``, ``{{ tags|json }}``. Quoted text is a literal.
    """

    def render(self, expression: str, context: Dict[str, Any]) -> Any:
        whole = _PLACEHOLDER.fullmatch(expression.strip())
        if whole:
            return self._evaluate(whole.group(1), context)

        def replace(match: re.Match) -> str:
            return self._stringify(self._evaluate(match.group(1), context))

        return _PLACEHOLDER.sub(replace, expression)

    def _evaluate(self, body: str, context: Dict[str, Any]) -> Any:
        parts = [part.strip() for part in body.split("|")]
        value = self._literal_or_path(parts[0], context)
        for spec in parts[1:]:
            value = self._apply_filter(spec, value)
        return value

    @staticmethod
    def _literal_or_path(token: str, context: Dict[str, Any]) -> Any:
        if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
            return token[1:-1]
        return dot.get(context, token)

    def _apply_filter(self, spec: str, value: Any) -> Any:
        match = _FILTER.match(spec)
        if not match:
            raise TransformError(f"Malformed template filter: {spec!r}")
        name, argument = match.group(1), match.group(2)

        if name == "default":
            if value is dot.MISSING or value is None or value == "":
                return self._literal_or_path((argument or "").strip(), {})
            return value
        if value is dot.MISSING:
            return value
        if name == "upper":
            return str(value).upper()
        if name == "lower":
            return str(value).lower()
        if name == "json":
            return json.dumps(value)
        if name == "length":
            return len(value) if isinstance(value, (list, dict, str)) else 0

        logger.warning(f"Unknown template filter: {name}")
        return value

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is dot.MISSING or value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
