"""
JSON helpers backed by orjson
=============================

Thin str-returning wrappers so callers can use a json-module style interface.
"""

import orjson
from typing import Any, Optional


def dumps(obj: Any, indent: Optional[int] = None, default: callable = None) -> str:
    """Serialize obj to a JSON string (orjson returns bytes)."""
    option = orjson.OPT_SERIALIZE_UUID | orjson.OPT_NON_STR_KEYS
    if indent is not None:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, default=default, option=option).decode("utf-8")


def loads(s: Any) -> Any:
    """Deserialize JSON from str or bytes."""
    return orjson.loads(s)


def dump(obj: Any, fp, indent: Optional[int] = None) -> None:
    fp.write(dumps(obj, indent=indent))


def load(fp) -> Any:
    return orjson.loads(fp.read())
