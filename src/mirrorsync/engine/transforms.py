"""
Field transformation utilities for mapping data between services.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Union

from ..utils import dot
from .casts import apply_cast, parse_cast_list
from .templates import PlaceholderRenderer, TemplateRenderer
from ..exceptions import TransformError
from ..models.mapping import Constant, ExactPath, Mapping, Template

logger = logging.getLogger(__name__)

DOT_SENTINEL = "&#46;"
ROOT_KEY = "#"
LIST_INPUT_KEY = "listInput"


def encode_keys(data: Any, to_replace: str, replacement: str) -> Any:
    """Replace ``to_replace`` in every dictionary key, at every depth."""
    if isinstance(data, dict):
        return {
            (key.replace(to_replace, replacement) if isinstance(key, str) else key): encode_keys(value, to_replace, replacement)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [encode_keys(item, to_replace, replacement) for item in data]
    return data


class FieldTransformer:
    """
    Applies mapping recipes to documents.

    Transformation is a pure function of (mapping, input): the input is never
    modified and no state is kept between calls.
    """

    def __init__(self, renderer: Optional[TemplateRenderer] = None):
        self.renderer = renderer or PlaceholderRenderer()

    def transform(self, mapping: Mapping, data: Dict[str, Any], as_list: bool = False) -> Any:
        """
        Map (transform) an input document into an output document.

        Args:
            mapping: The recipe to apply
            data: The input document
            as_list: Treat ``data`` as a collection and map every entry

        Returns:
            The output document; a list or dictionary in list mode, and whatever
            ``#`` holds when the mapping writes to the root

        Raises:
            TransformError: If the mapping or its casts are malformed
        """
        if as_list:
            return self.map_item_list(mapping, data)
        return self.map_fields(mapping, data)

    def map_item_list(self, mapping: Mapping, data: Union[Dict[str, Any], List[Any]]) -> Union[Dict[Any, Any], List[Any]]:
        """
        Map every entry of a collection.

        ``data`` is either the collection itself or a document holding it under
        ``listInput``; the other keys of that document are shared extra values
        merged into every entry, the entry's own data taking precedence.
        """
        extra: Dict[str, Any] = {}
        entries: Any = data
        if isinstance(data, dict) and LIST_INPUT_KEY in data:
            extra = {key: value for key, value in data.items() if key not in (LIST_INPUT_KEY, "value")}
            entries = data[LIST_INPUT_KEY]

        if isinstance(entries, dict):
            return {key: self.map_fields(mapping, self._list_entry(entry, extra)) for key, entry in entries.items()}
        if isinstance(entries, list):
            return [self.map_fields(mapping, self._list_entry(entry, extra)) for entry in entries]
        raise TransformError(f"List mapping needs a list or dictionary of entries, got {type(entries).__name__}")

    @staticmethod
    def _list_entry(entry: Any, extra: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(extra)
        if isinstance(entry, dict):
            merged.update(entry)
        else:
            merged["value"] = entry
        return merged

    def map_fields(self, mapping: Mapping, data: Dict[str, Any]) -> Any:
        """Map a single document."""
        source = encode_keys(data, ".", DOT_SENTINEL)
        output: Dict[str, Any] = copy.deepcopy(source) if mapping.pass_through else {}

        for key, expression in mapping.expressions:
            if isinstance(expression, ExactPath):
                value = dot.get(source, expression.path)
                if value is dot.MISSING:
                    # Not a path of this input: the text is a template, usually a literal
                    value = self.renderer.render(expression.path, source)
                    if value is dot.MISSING:
                        continue
                dot.set(output, key, copy.deepcopy(value))
            elif isinstance(expression, Template):
                value = self.renderer.render(expression.expression, source)
                if value is dot.MISSING:
                    logger.debug(f"Mapping '{mapping.id}': template for '{key}' resolved nothing, skipping")
                    continue
                dot.set(output, key, copy.deepcopy(value))
            elif isinstance(expression, Constant):
                dot.set(output, key, copy.deepcopy(expression.value))

        for path in mapping.unset:
            if not dot.delete(output, path):
                logger.debug(f"Mapping '{mapping.id}': nothing to unset at '{path}'")

        for key, casts in mapping.cast.items():
            cast_list = parse_cast_list(key, casts)
            for cast in cast_list:
                if not dot.has(output, key):
                    logger.debug(f"Mapping '{mapping.id}': nothing to cast at '{key}'")
                    break
                apply_cast(output, key, cast)

        output = encode_keys(output, DOT_SENTINEL, ".")

        if isinstance(output, dict) and list(output.keys()) == [ROOT_KEY]:
            return output[ROOT_KEY]
        return output
