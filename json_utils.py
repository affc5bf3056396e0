"""
JSON helpers backed by orjson
=============================

Thin wrappers used for ffprobe output parsing and CLI reports.
orjson returns bytes; these helpers
return str where the standard json interface would.
"""

import orjson
from typing import Any, Callable, Optional, Union


def dumps(obj: Any, indent: Optional[int] = None, default: Optional[Callable] = None) -> str:
    """
    Serialize obj to a JSON string.

    Args:
        obj: Object to serialize
        indent: Any non-None value enables two-space pretty printing
        default: Callable for objects orjson cannot serialize (e.g. default=str)
    """
    option = orjson.OPT_SERIALIZE_UUID | orjson.OPT_NON_STR_KEYS
    if indent is not None:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, default=default, option=option).decode("utf-8")


def loads(data: Union[str, bytes, bytearray]) -> Any:
    """Deserialize JSON text or raw process output."""
    return orjson.loads(data)


def dump(obj: Any, fp, indent: Optional[int] = None, default: Optional[Callable] = None) -> None:
    """Serialize obj and write it to a text file-like object."""
    fp.write(dumps(obj, indent=indent, default=default))


def load(fp) -> Any:
    """Deserialize JSON from a file-like object."""
    return loads(fp.read())


JSONDecodeError = orjson.JSONDecodeError
