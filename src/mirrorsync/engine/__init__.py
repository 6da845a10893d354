"""
Sync engine for executing data synchronization between services.
"""

from .sync import SyncEngine, decide_action, extract_objects, get_next_link
from .transforms import FieldTransformer
from .fingerprint import fingerprint
from .conditions import ConditionEvaluator, JsonLogicEvaluator
from .templates import TemplateRenderer, PlaceholderRenderer
from .trigger import SyncTrigger

__all__ = [
    "SyncEngine",
    "SyncTrigger",
    "FieldTransformer",
    "fingerprint",
    "ConditionEvaluator",
    "JsonLogicEvaluator",
    "TemplateRenderer",
    "PlaceholderRenderer",
    "decide_action",
    "extract_objects",
    "get_next_link",
]
