"""
Built-in column transformations.

Each transformation is a function ``(value, config) -> value`` registered
under an id. Column mappings refer to transformations by id and carry their
configuration (``find``/``replace``, ``start``/``length``, ...).
"""

from collections.abc import Callable
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from databridge.client.exceptions import TransformationError

Transformation = Callable[[Any, dict[str, Any]], Any]

TRANSFORMATIONS: dict[str, Transformation] = {}


def register_transformation(transformation_id: str) -> Callable[[Transformation], Transformation]:
    """Register a function under a transformation id."""

    def decorator(func: Transformation) -> Transformation:
        TRANSFORMATIONS[transformation_id] = func
        return func

    return decorator


def apply_transformation(transformation_id: str, value: Any, config: dict[str, Any] | None = None) -> Any:
    """
    Apply a registered transformation to one value.

    Raises:
        TransformationError: If the id is unknown or the value cannot be converted
    """
    func = TRANSFORMATIONS.get(transformation_id)
    if func is None:
        raise TransformationError(f"Unknown transformation: {transformation_id}")
    try:
        return func(value, config or {})
    except TransformationError:
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise TransformationError(
            f"{transformation_id} failed for value {value!r}: {e}"
        ) from e


@register_transformation("uppercase")
def uppercase(value: Any, config: dict[str, Any]) -> Any:
    return None if value is None else str(value).upper()


@register_transformation("lowercase")
def lowercase(value: Any, config: dict[str, Any]) -> Any:
    return None if value is None else str(value).lower()


@register_transformation("trim")
def trim(value: Any, config: dict[str, Any]) -> Any:
    return None if value is None else str(value).strip()


@register_transformation("replace")
def replace(value: Any, config: dict[str, Any]) -> Any:
    if value is None:
        return None
    find = config.get("find")
    if not find:
        raise TransformationError("replace requires a non-empty 'find'")
    return str(value).replace(str(find), str(config.get("replace", "")))


@register_transformation("substring")
def substring(value: Any, config: dict[str, Any]) -> Any:
    if value is None:
        return None
    start = int(config.get("start", 0))
    length = config.get("length")
    text = str(value)
    return text[start:] if length is None else text[start : start + int(length)]


@register_transformation("default-value")
def default_value(value: Any, config: dict[str, Any]) -> Any:
    if value is None or value == "":
        return config.get("value")
    return value


@register_transformation("bit-to-boolean")
def bit_to_boolean(value: Any, config: dict[str, Any]) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "t", "yes", "y"):
        return True
    if text in ("0", "false", "f", "no", "n", ""):
        return False
    raise ValueError("not a bit value")


@register_transformation("date-format-iso")
def date_format_iso(value: Any, config: dict[str, Any]) -> Any:
    """Normalize a date or timestamp to ISO 8601.

    ``sourceFormat`` is a strptime format; without it the value must already
    be parseable by ``datetime.fromisoformat``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    source_format = config.get("sourceFormat")
    if source_format:
        parsed = datetime.strptime(str(value), source_format)
    else:
        parsed = datetime.fromisoformat(str(value))
    return parsed.isoformat()


@register_transformation("to-integer")
def to_integer(value: Any, config: dict[str, Any]) -> Any:
    if value is None or value == "":
        return None
    return int(Decimal(str(value)))


@register_transformation("to-decimal")
def to_decimal(value: Any, config: dict[str, Any]) -> Any:
    if value is None or value == "":
        return None
    number = Decimal(str(value))
    scale = config.get("scale")
    if scale is not None:
        number = number.quantize(Decimal(1).scaleb(-int(scale)))
    return str(number)


def _number(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _required(config: dict[str, Any], name: str, transformation_id: str) -> Decimal:
    if config.get(name) is None:
        raise TransformationError(f"{transformation_id} requires '{name}'")
    return Decimal(str(config[name]))


@register_transformation("round")
def round_number(value: Any, config: dict[str, Any]) -> Any:
    """Round half away from zero to ``decimals`` places (default 2)."""
    number = _number(value)
    if number is None:
        return None
    decimals = int(config.get("decimals", 2))
    return str(number.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP))


@register_transformation("floor")
def floor(value: Any, config: dict[str, Any]) -> Any:
    number = _number(value)
    return None if number is None else int(number.to_integral_value(rounding=ROUND_FLOOR))


@register_transformation("ceil")
def ceil(value: Any, config: dict[str, Any]) -> Any:
    number = _number(value)
    return None if number is None else int(number.to_integral_value(rounding=ROUND_CEILING))


@register_transformation("abs")
def absolute(value: Any, config: dict[str, Any]) -> Any:
    number = _number(value)
    return None if number is None else str(abs(number))


@register_transformation("multiply")
def multiply(value: Any, config: dict[str, Any]) -> Any:
    multiplier = _required(config, "multiplier", "multiply")
    number = _number(value)
    return None if number is None else str(number * multiplier)


@register_transformation("divide")
def divide(value: Any, config: dict[str, Any]) -> Any:
    divisor = _required(config, "divisor", "divide")
    if divisor == 0:
        raise TransformationError("divide requires a non-zero 'divisor'")
    number = _number(value)
    return None if number is None else str(number / divisor)


@register_transformation("add-timezone")
def add_timezone(value: Any, config: dict[str, Any]) -> Any:
    """Attach ``timezone`` (default UTC) to a timestamp.

    Naive timestamps are taken to be in that zone; aware ones are converted
    to it. The result is ISO 8601 with an offset.
    """
    if value is None or value == "":
        return None
    name = config.get("timezone") or "UTC"
    try:
        zone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TransformationError(f"add-timezone: unknown timezone {name!r}") from e
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone).isoformat()
    return parsed.astimezone(zone).isoformat()
