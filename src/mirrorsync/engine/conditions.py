"""
Condition evaluation deciding whether a source object is in scope.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

from ..utils import dot
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ConditionEvaluator(ABC):
    """Evaluates a boolean expression against one object."""

    @abstractmethod
    def evaluate(self, expression: Any, data: Dict[str, Any]) -> bool:
        pass


def _truthy(value: Any) -> bool:
    # JSON Logic truthiness: empty arrays are false, "0" is true
    if isinstance(value, list):
        return len(value) > 0
    return bool(value)


class JsonLogicEvaluator(ConditionEvaluator):
    """
    Evaluates the JSON Logic subset used by synchronization conditions.

    An empty expression (``None`` or ``{}``) matches every object. Supported
    operators: ``var``, ``missing``, ``==``, ``===``, ``!=``, ``!==``, ``!``, ``!!``,
    ``and``, ``or``, ``if``, ``>``, ``>=``, ``<``, ``<=``, ``in``.
    """

    def evaluate(self, expression: Any, data: Dict[str, Any]) -> bool:
        if expression is None or expression == {} or expression == []:
            return True
        return _truthy(self._apply(expression, data))

    def _apply(self, expression: Any, data: Dict[str, Any]) -> Any:
        if isinstance(expression, list):
            return [self._apply(item, data) for item in expression]
        if not isinstance(expression, dict):
            return expression
        if len(expression) != 1:
            raise ConfigurationError(f"A condition must hold exactly one operator, got {list(expression)}")

        operator, raw_args = next(iter(expression.items()))
        args = raw_args if isinstance(raw_args, list) else [raw_args]

        # Short-circuiting operators evaluate their arguments lazily
        if operator == "and":
            result: Any = True
            for arg in args:
                result = self._apply(arg, data)
                if not _truthy(result):
                    return result
            return result
        if operator == "or":
            result = False
            for arg in args:
                result = self._apply(arg, data)
                if _truthy(result):
                    return result
            return result
        if operator == "if":
            for index in range(0, len(args) - 1, 2):
                if _truthy(self._apply(args[index], data)):
                    return self._apply(args[index + 1], data)
            return self._apply(args[-1], data) if len(args) % 2 else None

        values = [self._apply(arg, data) for arg in args]

        if operator == "var":
            path = values[0] if values else ""
            default = values[1] if len(values) > 1 else None
            if path in ("", None):
                return data
            value = dot.get(data, str(path))
            return default if value is dot.MISSING else value
        if operator == "missing":
            keys = values[0] if len(values) == 1 and isinstance(values[0], list) else values
            return [key for key in keys if dot.get(data, str(key), None) in (None, "")]
        if operator in ("==", "==="):
            return values[0] == values[1]
        if operator in ("!=", "!=="):
            return values[0] != values[1]
        if operator == "!":
            return not _truthy(values[0])
        if operator == "!!":
            return _truthy(values[0])
        if operator in (">", ">=", "<", "<="):
            return self._compare(operator, values)
        if operator == "in":
            needle, haystack = values[0], values[1]
            if isinstance(haystack, (list, str)):
                return needle in haystack
            return False

        raise ConfigurationError(f"Unsupported condition operator: {operator}")

    @staticmethod
    def _compare(operator: str, values: list) -> bool:
        try:
            pairs = list(zip(values, values[1:]))
            if operator == ">":
                return all(a > b for a, b in pairs)
            if operator == ">=":
                return all(a >= b for a, b in pairs)
            if operator == "<":
                return all(a < b for a, b in pairs)
            return all(a <= b for a, b in pairs)
        except TypeError:
            logger.debug(f"Incomparable values for {operator}: {values}")
            return False
