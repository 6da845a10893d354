"""
Mapping recipes and the expressions they are made of.

A mapping value is classified exactly once, when the mapping is loaded:

* ``ExactPath``: a bare token (``user.name``) copied verbatim from the input when
  the path exists there, and rendered as a literal (``person``) when it does not.
* ``Template``: a string holding ``{{ ... }}`` placeholders, or free text, that is
  rendered against the whole input.
* ``Constant``: any non-string value (numbers, booleans, lists, objects).
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ..exceptions import TransformError

_PATH_PATTERN = re.compile(r"^[^\s{}\"'|]+$")


@dataclass(frozen=True)
class ExactPath:
    path: str


@dataclass(frozen=True)
class Template:
    expression: str


@dataclass(frozen=True)
class Constant:
    value: Any


MappingExpr = Union[ExactPath, Template, Constant]


def classify_expression(value: Any) -> MappingExpr:
    """Resolve a raw mapping value into its expression variant.

    Raises:
        TransformError: If a template has unbalanced delimiters
    """
    if not isinstance(value, str):
        return Constant(value)

    if "{{" in value or "}}" in value:
        if value.count("{{") != value.count("}}"):
            raise TransformError(f"Unbalanced template delimiters in mapping value: {value!r}")
        return Template(value)

    if value and _PATH_PATTERN.match(value):
        return ExactPath(value)

    return Template(value)


class Mapping(BaseModel):
    """Transform recipe, reusable by several synchronizations."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for this mapping")
    name: str = Field("", description="Human-readable name")
    description: Optional[str] = Field(None)
    reference: Optional[str] = Field(None, description="External reference, e.g. a schema URL")
    version: str = Field("0.0.1")

    mapping: Dict[str, Any] = Field(default_factory=dict, description="Output dot-path to source expression")
    unset: List[str] = Field(default_factory=list, description="Output dot-paths removed after mapping")
    cast: Dict[str, Union[List[Any], str]] = Field(default_factory=dict, description="Output dot-path to cast operators")
    pass_through: bool = Field(False, alias="passThrough", description="Keep unmapped input fields")

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    _expressions: List[Tuple[str, MappingExpr]] = PrivateAttr(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        self._expressions = [(key, classify_expression(value)) for key, value in self.mapping.items()]

    @property
    def expressions(self) -> List[Tuple[str, MappingExpr]]:
        """Output keys paired with their pre-classified expressions, in declaration order."""
        return self._expressions

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(by_alias=True)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Mapping":
        """Create instance from Firestore document."""
        data = dict(data)
        data["id"] = doc_id
        return cls(**data)
