from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable, Mapping
from typing import Any

from .errors import InvalidPageTokenError


def _binary_to_text(value: Any) -> str:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError("binary value must be bytes")
    return base64.b64encode(bytes(value)).decode("ascii")


def _binary_from_text(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError("binary value must be a base64 string")
    return base64.b64decode(value, validate=True)


def _convert_attribute_value(av: Any, binary: Callable[[Any], Any]) -> dict[str, Any]:
    """Copy one typed attribute value, passing every binary payload through ``binary``.

    Encoding turns bytes into base64 text and decoding turns it back, so the
    same walk serves both directions.
    """
    if not isinstance(av, Mapping) or len(av) != 1:
        raise ValueError("attribute value must be a single-key map")
    kind, value = next(iter(av.items()))

    match kind:
        case "S" | "N":
            if not isinstance(value, str):
                raise ValueError(f"{kind} value must be a string")
            return {kind: value}
        case "BOOL":
            if not isinstance(value, bool):
                raise ValueError("BOOL value must be a boolean")
            return {kind: value}
        case "NULL":
            if value is not True:
                raise ValueError("NULL value must be true")
            return {kind: True}
        case "B":
            return {kind: binary(value)}
        case "SS" | "NS" | "BS" | "L":
            if not isinstance(value, list):
                raise ValueError(f"{kind} value must be a list")
            if kind == "BS":
                return {kind: [binary(v) for v in value]}
            if kind == "L":
                return {kind: [_convert_attribute_value(v, binary) for v in value]}
            if not all(isinstance(v, str) for v in value):
                raise ValueError(f"{kind} value must be a list of strings")
            return {kind: list(value)}
        case "M":
            if not isinstance(value, Mapping):
                raise ValueError("M value must be a map")
            return {kind: _convert_key(value, binary)}

    raise ValueError(f"unsupported attribute value type: {kind}")


def _convert_key(key: Mapping[str, Any], binary: Callable[[Any], Any]) -> dict[str, Any]:
    return {str(k): _convert_attribute_value(key[k], binary) for k in sorted(key)}


def encode_page_token(last_key: Mapping[str, Any] | None) -> str | None:
    """Encode a ``LastEvaluatedKey`` as an opaque page token.

    No key means there is nothing left to read, so no token is produced.
    """
    if not last_key:
        return None
    if not isinstance(last_key, Mapping):
        raise ValueError("last_key must be a map")

    payload = json.dumps(
        {"lastKey": _convert_key(last_key, _binary_to_text)},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_page_token(token: str | None) -> dict[str, Any] | None:
    """Decode a page token back into an ``ExclusiveStartKey``.

    No token means start from the beginning. Tokens that were not produced by
    :func:`encode_page_token` raise :class:`InvalidPageTokenError`.
    """
    raw = (token or "").strip()
    if not raw:
        return None

    try:
        padding = "=" * (-len(raw) % 4)
        parsed = json.loads(base64.urlsafe_b64decode(raw + padding).decode("utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError("page token must decode to an object")

        last_key_raw = parsed.get("lastKey")
        if not isinstance(last_key_raw, dict) or not last_key_raw:
            raise ValueError("page token lastKey is invalid")

        return _convert_key(last_key_raw, _binary_from_text)
    except (ValueError, binascii.Error, UnicodeDecodeError) as err:
        raise InvalidPageTokenError(f"invalid page token: {err}") from err


class PageToken:
    encode = staticmethod(encode_page_token)
    decode = staticmethod(decode_page_token)
