"""JSON Patch (RFC 6902) deltas between flat form-data documents.

Form data is a flat map of field name to value, so every path is a single
JSON Pointer token (RFC 6901): ``/firstName``. Operations are emitted in
sorted key order, which makes the result independent of the key order of
either input.
"""

from collections.abc import Mapping
from typing import Any

from formflow.errors import InvalidPatch

Operation = dict[str, Any]


def escape_token(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def unescape_token(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


def compute_delta(old: Mapping[str, Any], new: Mapping[str, Any]) -> list[Operation]:
    """Operations that turn ``old`` into ``new``; ``[]`` when they are equal."""
    ops: list[Operation] = []
    for key in sorted(set(old) | set(new)):
        path = "/" + escape_token(key)
        if key not in new:
            ops.append({"op": "remove", "path": path})
        elif key not in old:
            ops.append({"op": "add", "path": path, "value": new[key]})
        elif old[key] != new[key]:
            ops.append({"op": "replace", "path": path, "value": new[key]})
    return ops


def _key(path: str) -> str:
    if not path.startswith("/") or "/" in path[1:]:
        raise InvalidPatch(f"Path {path!r} does not address a top-level key", path=path)
    return unescape_token(path[1:])


def apply_delta(doc: Mapping[str, Any], ops: list[Operation]) -> dict[str, Any]:
    """Apply a flat patch produced by ``compute_delta``; ``doc`` is not modified."""
    result = dict(doc)
    for op in ops:
        kind = op.get("op")
        key = _key(op.get("path", ""))
        if kind == "add":
            result[key] = op["value"]
        elif kind in ("remove", "replace"):
            if key not in result:
                raise InvalidPatch(f"Cannot {kind} missing key {key!r}", path=op["path"])
            if kind == "remove":
                del result[key]
            else:
                result[key] = op["value"]
        else:
            raise InvalidPatch(f"Unsupported patch operation {kind!r}", path=op.get("path"))
    return result
