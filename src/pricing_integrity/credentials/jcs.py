"""RFC 8785 JSON Canonicalization Scheme (JCS) for credential and receipt payloads.

Rules applied:
  * object members sorted by their UTF-16 code units, no insignificant whitespace;
  * strings escaped the way ECMAScript ``JSON.stringify`` does (short escapes for
    ``\\b \\f \\n \\r \\t``, lowercase ``\\u00xx`` for other control characters);
  * numbers in ECMAScript shortest round-trip form: integral values without a
    fraction, exponent notation only outside ``[1e-6, 1e21)``.

NaN and Infinity have no JSON form and raise ``ValueError``.
"""
from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any


def _utf16_key(key: str) -> bytes:
    return key.encode("utf-16-be")


def _number(n: int | float) -> str:
    if isinstance(n, bool):
        raise TypeError("bool is not a JSON number")
    if isinstance(n, int):
        return str(n)
    if not math.isfinite(n):
        raise ValueError("NaN/Infinity not permitted in canonical JSON")
    if n == 0:
        return "0"  # also folds -0.0
    if n.is_integer() and abs(n) < 1e21:
        return str(int(n))
    text = repr(n)
    if "e" not in text:
        return text
    if 1e-6 <= abs(n) < 1e21:
        return format(Decimal(text), "f")
    mantissa, exp = text.split("e")
    if mantissa.endswith(".0"):
        mantissa = mantissa[:-2]
    return f"{mantissa}e{int(exp):+d}"


def _encode(obj: Any, out: list[str]) -> None:
    if obj is None:
        out.append("null")
    elif obj is True:
        out.append("true")
    elif obj is False:
        out.append("false")
    elif isinstance(obj, (int, float)):
        out.append(_number(obj))
    elif isinstance(obj, str):
        out.append(json.dumps(obj, ensure_ascii=False))
    elif isinstance(obj, (list, tuple)):
        out.append("[")
        for i, item in enumerate(obj):
            if i:
                out.append(",")
            _encode(item, out)
        out.append("]")
    elif isinstance(obj, dict):
        if any(not isinstance(k, str) for k in obj):
            raise TypeError("object keys must be strings")
        out.append("{")
        for i, key in enumerate(sorted(obj, key=_utf16_key)):
            if i:
                out.append(",")
            out.append(json.dumps(key, ensure_ascii=False))
            out.append(":")
            _encode(obj[key], out)
        out.append("}")
    else:
        raise TypeError(f"Unsupported type for canonical JSON: {type(obj)!r}")


def jcs_canonical(obj: Any) -> bytes:
    out: list[str] = []
    _encode(obj, out)
    return "".join(out).encode("utf-8")


__all__ = ["jcs_canonical"]
