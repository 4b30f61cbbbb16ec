import json
import math
from typing import Any


def sort_keys_deep(value: Any) -> Any:
    """
    Rebuild mappings with keys in lexicographic order at every level.
    Sequence order is preserved.
    """
    if isinstance(value, dict):
        return {str(k): sort_keys_deep(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [sort_keys_deep(v) for v in value]
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("NaN and Infinity have no canonical JSON form")
        if value.is_integer():
            # Issuers serialize 1.0 as 1.
            return int(value)
    return value


def canonicalize(value: Any) -> str:
    """
    Deterministic compact JSON used as the signing input for payloads.
    A missing payload canonicalizes as an empty mapping.
    """
    if value is None:
        value = {}
    return json.dumps(
        sort_keys_deep(value),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
