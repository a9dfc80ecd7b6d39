"""JSON serialization utilities."""

from __future__ import annotations

import base64
import dataclasses
import datetime
import decimal
import enum

_MAX_SERIALIZE_BYTES = 10 * 1024 * 1024  # 10 MB


def json_default(obj: object) -> object:
    """JSON serializer for objects not serializable by default json code."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, decimal.Decimal):
        # DynamoDB numbers: int when integral, string when float would lose precision.
        if obj == obj.to_integral_value():
            return int(obj)
        f = float(obj)
        if decimal.Decimal(str(f)) != obj:
            return str(obj)
        return f
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, bytes):
        try:
            return obj.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(obj).decode("utf-8")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        to_dict = getattr(obj, "to_dict", None)
        if callable(to_dict):
            return to_dict()
        return dataclasses.asdict(obj)

    # StreamingBody and friends
    if hasattr(obj, "read") and callable(obj.read):
        try:
            content = obj.read(_MAX_SERIALIZE_BYTES)
            if not content:
                return ""
            if isinstance(content, bytes):
                try:
                    return content.decode("utf-8")
                except UnicodeDecodeError:
                    return base64.b64encode(content).decode("utf-8")
            return content
        except (OSError, UnicodeDecodeError):
            return ""

    return str(obj)
