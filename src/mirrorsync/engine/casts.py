"""
Cast operators applied to mapped values.

Casts follow the loose coercion rules mapping authors expect from the PHP-era
configuration format: ``int`` of ``"12abc"`` is ``12``, ``bool`` of ``"yes"`` is
``True`` and ``date`` treats the value as a format string for the current time.
"""

import base64
import binascii
import calendar
import html
import json
import logging
import math
import re
import unicodedata
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from email.utils import format_datetime
from html.entities import codepoint2name
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, quote_plus, unquote, unquote_plus

from ..utils import dot
from ..exceptions import TransformError

logger = logging.getLogger(__name__)

_NUMERIC_PREFIX = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
_NUMERIC_STRING = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")

# Letters NFKD decomposition cannot reduce to ASCII
_TRANSLITERATIONS = {
    "ß": "ss", "æ": "ae", "Æ": "AE", "ø": "o", "Ø": "O", "œ": "oe", "Œ": "OE",
    "ł": "l", "Ł": "L", "đ": "d", "Đ": "D", "þ": "th", "Þ": "TH", "ð": "d",
    "€": "EUR", "‘": "'", "’": "'", "“": '"', "”": '"', "–": "-", "—": "-",
}


# Loose coercion helpers

def to_int(value: Any) -> int:
    """Integer coercion that reads a leading number and ignores the rest."""
    if isinstance(value, bool):
        return int(value)
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return 0 if math.isnan(value) or math.isinf(value) else int(value)
    if isinstance(value, (list, dict)):
        return 1 if value else 0
    match = _NUMERIC_PREFIX.match(str(value))
    if not match:
        return 0
    number = float(match.group(0))
    return 0 if math.isinf(number) else int(number)


def to_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (list, dict)):
        return 1.0 if value else 0.0
    match = _NUMERIC_PREFIX.match(str(value))
    return float(match.group(0)) if match else 0.0


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, str) and value.strip().lower() in ("true", "yes"):
        return True
    return to_int(value) == 1


def to_array(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return value
    if value is None:
        return []
    return [value]


def is_empty(value: Any) -> bool:
    """Emptiness as mapping authors know it: ``0``, ``"0"`` and ``[]`` are all empty."""
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value in ("", "0")
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(_NUMERIC_STRING.match(value))


def loose_equals(value: Any, other: str) -> bool:
    """Compare a mapped value with a cast parameter, which is always text."""
    if value is None:
        return other == ""
    if isinstance(value, bool):
        return value == (other not in ("", "0"))
    if isinstance(value, (list, dict)):
        return False
    if _is_numeric(value) and _is_numeric(other):
        return float(value) == float(other)
    return to_string(value) == other


def all_leaves_empty(value: Any) -> bool:
    """True when every leaf of a nested list/dict is empty."""
    items = value.values() if isinstance(value, dict) else value
    for item in items:
        if isinstance(item, (list, dict)):
            if not all_leaves_empty(item):
                return False
        elif not is_empty(item):
            return False
    return True


# Date formatting

def _ordinal_suffix(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")


def _utc_offset(moment: datetime, separator: str) -> str:
    offset = moment.utcoffset()
    seconds = int(offset.total_seconds()) if offset else 0
    sign = "-" if seconds < 0 else "+"
    hours, minutes = divmod(abs(seconds) // 60, 60)
    return f"{sign}{hours:02d}{separator}{minutes:02d}"


_DATE_FORMATS: Dict[str, Callable[[datetime], str]] = {
    "d": lambda m: f"{m.day:02d}",
    "D": lambda m: m.strftime("%a"),
    "j": lambda m: str(m.day),
    "l": lambda m: m.strftime("%A"),
    "N": lambda m: str(m.isoweekday()),
    "S": lambda m: _ordinal_suffix(m.day),
    "w": lambda m: str(m.isoweekday() % 7),
    "z": lambda m: str(m.timetuple().tm_yday - 1),
    "W": lambda m: f"{m.isocalendar()[1]:02d}",
    "F": lambda m: m.strftime("%B"),
    "m": lambda m: f"{m.month:02d}",
    "M": lambda m: m.strftime("%b"),
    "n": lambda m: str(m.month),
    "t": lambda m: str(calendar.monthrange(m.year, m.month)[1]),
    "L": lambda m: "1" if calendar.isleap(m.year) else "0",
    "o": lambda m: str(m.isocalendar()[0]),
    "Y": lambda m: str(m.year),
    "y": lambda m: f"{m.year % 100:02d}",
    "a": lambda m: "am" if m.hour < 12 else "pm",
    "A": lambda m: "AM" if m.hour < 12 else "PM",
    "g": lambda m: str(m.hour % 12 or 12),
    "G": lambda m: str(m.hour),
    "h": lambda m: f"{m.hour % 12 or 12:02d}",
    "H": lambda m: f"{m.hour:02d}",
    "i": lambda m: f"{m.minute:02d}",
    "s": lambda m: f"{m.second:02d}",
    "u": lambda m: f"{m.microsecond:06d}",
    "v": lambda m: f"{m.microsecond // 1000:03d}",
    "e": lambda m: m.tzname() or "UTC",
    "T": lambda m: m.tzname() or "UTC",
    "P": lambda m: _utc_offset(m, ":"),
    "O": lambda m: _utc_offset(m, ""),
    "Z": lambda m: str(int(m.utcoffset().total_seconds()) if m.utcoffset() else 0),
    "c": lambda m: m.replace(microsecond=0).isoformat(),
    "r": lambda m: format_datetime(m),
    "U": lambda m: str(int(m.timestamp())),
}


def format_date(pattern: str, moment: Optional[datetime] = None) -> str:
    """Format ``moment`` (default: now) with a PHP ``date()`` pattern; ``\\`` escapes."""
    moment = moment or datetime.now().astimezone()
    output: List[str] = []
    escaped = False
    for char in pattern:
        if escaped:
            output.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            formatter = _DATE_FORMATS.get(char)
            output.append(formatter(moment) if formatter else char)
    return "".join(output)


# Value casts

def html_entities(text: str) -> str:
    """Encode every character that has a named HTML 4 entity; quotes included."""
    encoded = []
    for char in text:
        if char == "'":
            encoded.append("&#039;")
            continue
        name = codepoint2name.get(ord(char))
        encoded.append(f"&{name};" if name else char)
    return "".join(encoded)


def transliterate(text: str) -> str:
    """Best-effort ASCII transliteration."""
    text = "".join(_TRANSLITERATIONS.get(char, char) for char in text)
    return unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")


def base64_decode(value: Any) -> str:
    try:
        decoded = base64.b64decode(to_string(value), validate=True)
    except (binascii.Error, ValueError) as e:
        raise TransformError(f"Value is not valid base64: {e}")
    return decoded.decode("utf-8", errors="replace")


def json_to_array(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(html.unescape(value))
    except json.JSONDecodeError:
        logger.debug(f"jsonToArray could not decode {value[:50]!r}")
        return None


def coordinate_string_to_array(coordinates: Any) -> List[Any]:
    """
    Convert ``"lon lat lon lat ..."`` into points.

    Tokens are paired consecutively; a single point is returned unwrapped, and
    an empty string gives ``[""]``.
    """
    points: List[List[Any]] = []
    point: List[Any] = []
    for token in to_string(coordinates).split(" "):
        if len(point) > 1:
            points.append(point)
            point = []
        point.append(_coordinate(token))
    points.append(point)

    if len(points) == 1:
        return points[0]
    return points


def _coordinate(token: str) -> Any:
    if not _NUMERIC_STRING.match(token):
        return token
    number = float(token)
    return int(number) if number.is_integer() and "." not in token and "e" not in token.lower() else number


def money_string_to_int(value: Any) -> int:
    return to_int(to_string(value).replace(".", "").replace(",", ""))


def int_to_money_string(value: Any) -> str:
    number = to_float(value)
    if math.isnan(number) or math.isinf(number):
        raise TransformError(f"intToMoneyString needs a finite amount, got {value!r}")
    amount = (Decimal(repr(number)) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{amount:,.2f}".translate(str.maketrans({",": ".", ".": ","}))


_VALUE_CASTS: Dict[str, Callable[[Any], Any]] = {
    "string": to_string,
    "bool": to_bool,
    "boolean": to_bool,
    "int": to_int,
    "integer": to_int,
    "float": to_float,
    "array": to_array,
    "date": lambda value: format_date(to_string(value)),
    "url": lambda value: quote_plus(to_string(value)),
    "urlDecode": lambda value: unquote_plus(to_string(value)),
    "rawurl": lambda value: quote(to_string(value), safe=""),
    "rawurlDecode": lambda value: unquote(to_string(value)),
    "html": lambda value: html_entities(to_string(value)),
    "htmlDecode": lambda value: html.unescape(to_string(value)),
    "base64": lambda value: base64.b64encode(to_string(value).encode("utf-8")).decode("ascii"),
    "base64Decode": base64_decode,
    "json": lambda value: json.dumps(value, separators=(",", ":")),
    "jsonToArray": json_to_array,
    "utf8": lambda value: transliterate(to_string(value)),
    "nullStringToNull": lambda value: None if value == "null" else value,
    "coordinateStringToArray": coordinate_string_to_array,
    "moneyStringToInt": money_string_to_int,
    "intToMoneyString": int_to_money_string,
}


def parse_cast_list(key: str, casts: Any) -> List[str]:
    """Normalize a configured cast list; a comma separated string is accepted.

    Raises:
        TransformError: If the configuration is not text
    """
    if isinstance(casts, str):
        casts = [cast.strip() for cast in casts.split(",") if cast.strip()]
    if not isinstance(casts, list):
        raise TransformError(f"Casts for '{key}' must be a list or a comma separated string, got {type(casts).__name__}")
    for cast in casts:
        if not isinstance(cast, str):
            raise TransformError(f"Cast for '{key}' must be a string, got {cast!r}")
    return casts


def apply_cast(document: Dict[str, Any], key: str, cast: str) -> None:
    """
    Apply one cast to ``document[key]`` in place.

    Some casts remove the key instead of changing the value; a removed key is
    never written back.

    Raises:
        TransformError: On malformed cast parameters or undecodable base64
    """
    value = dot.get(document, key)

    if cast.startswith("unsetIfValue=="):
        if _matches_value_trigger(value, cast[len("unsetIfValue=="):]):
            dot.delete(document, key)
        return

    if cast.startswith("setNullIfValue=="):
        if _matches_value_trigger(value, cast[len("setNullIfValue=="):]):
            dot.set(document, key, None)
        return

    if cast.startswith("countValue:"):
        path = cast[len("countValue:"):]
        if not path:
            raise TransformError(f"countValue cast on '{key}' needs a path, e.g. countValue:items")
        counted = dot.get(document, path)
        if isinstance(counted, (list, dict)):
            dot.set(document, key, len(counted))
        return

    if cast == "keyCantBeValue":
        if not isinstance(value, (list, dict)) and loose_equals(value, key):
            dot.delete(document, key)
        return

    handler = _VALUE_CASTS.get(cast)
    if handler is None:
        logger.warning(f"Unknown cast '{cast}' for key '{key}'")
        return

    dot.set(document, key, handler(value))


def _matches_value_trigger(value: Any, expected: str) -> bool:
    if loose_equals(value, expected):
        return True
    if expected == "":
        if is_empty(value):
            return True
        if isinstance(value, (list, dict)) and all_leaves_empty(value):
            return True
    return False
