"""
Permissive accessors for loosely-typed model JSON
"""
from typing import Any, Dict, List, Optional
import math


def get_string(data: Any, key: str, default: str = "") -> str:
    """String value of data[key], trimmed; numbers are stringified"""
    if not isinstance(data, dict):
        return default
    value = data.get(key)
    if value is None or isinstance(value, (dict, list)):
        return default
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def get_array(data: Any, key: str) -> List[Any]:
    if not isinstance(data, dict):
        return []
    value = data.get(key)
    return value if isinstance(value, list) else []


def get_dict(data: Any, key: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def is_numeric(value: Any) -> bool:
    """Finite int, float or numeric string; NaN and Infinity are not numbers here"""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def get_int(value: Any) -> Optional[int]:
    if not is_numeric(value):
        return None
    return int(float(value))


def get_bool_loose(value: Any) -> bool:
    """true, "true"/"1"/"yes" (any case) and numeric 1 are truthy"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        return is_numeric(lowered) and float(lowered) == 1
    if isinstance(value, (int, float)):
        return value == 1
    return False
