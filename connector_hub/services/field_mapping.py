"""Field mapping engine: translates records between local and remote shapes.

Mappings are declarative. A `transform` mapping names an entry of the closed
TRANSFORMS catalog; a `calculated` mapping names an entry of CALCULATIONS and
the source fields it reads. Nothing stored in a mapping row is ever executed.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from connector_hub.core.exceptions import FieldError

INBOUND = "inbound"
OUTBOUND = "outbound"

MAPPING_TYPES = ("direct", "transform", "calculated")

_MISSING = object()


# ---- Path helpers ----

def get_path(record: Dict[str, Any], path: str) -> Any:
    """Read a dotted path ("variants.0.price") out of nested dicts/lists."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def set_path(record: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate dicts/lists as needed."""
    parts = path.split(".")
    current: Any = record
    for i, part in enumerate(parts[:-1]):
        next_is_index = parts[i + 1].isdigit()
        if isinstance(current, list):
            index = int(part)
            while len(current) <= index:
                current.append([] if next_is_index else {})
            current = current[index]
        else:
            if part not in current or current[part] is None:
                current[part] = [] if next_is_index else {}
            current = current[part]
    last = parts[-1]
    if isinstance(current, list):
        index = int(last)
        while len(current) <= index:
            current.append(None)
        current[index] = value
    else:
        current[last] = value


def _is_missing(value: Any) -> bool:
    return value is _MISSING or value is None or (isinstance(value, str) and value.strip() == "")


# ---- Transform catalog ----

def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value).strip())


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def _to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _iso_to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    return _to_naive_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))


def _datetime_to_iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _unix_to_datetime(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _datetime_to_unix(value: Any) -> int:
    dt = _iso_to_datetime(value)
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def _value_map(value: Any, params: Dict[str, Any]) -> Any:
    mapping = params.get("map") or {}
    return mapping.get(str(value), params.get("fallback", value))


def _value_map_inverse(value: Any, params: Dict[str, Any]) -> Any:
    inverted = {str(v): k for k, v in (params.get("map") or {}).items()}
    return inverted.get(str(value), params.get("fallback", value))


@dataclass(frozen=True)
class Transform:
    func: Callable[[Any, Dict[str, Any]], Any]
    description: str
    inverse: Optional[str] = None


TRANSFORMS: Dict[str, Transform] = {
    "to_string": Transform(lambda v, p: str(v), "Convert to text"),
    "to_int": Transform(lambda v, p: int(_to_decimal(v)), "Convert to an integer"),
    "to_decimal": Transform(lambda v, p: _to_decimal(v), "Convert to a decimal number", inverse="to_string"),
    "to_bool": Transform(lambda v, p: _to_bool(v), "Interpret truthy strings (true/yes/1) as a boolean"),
    "lowercase": Transform(lambda v, p: str(v).lower(), "Lower-case text"),
    "uppercase": Transform(lambda v, p: str(v).upper(), "Upper-case text"),
    "strip": Transform(lambda v, p: str(v).strip(), "Trim surrounding whitespace"),
    "truncate": Transform(lambda v, p: str(v)[: int(p.get("length", 255))], "Cut text to params.length characters"),
    "cents_to_amount": Transform(
        lambda v, p: (Decimal(int(v)) / Decimal(100)).quantize(Decimal("0.01")),
        "Integer minor units (cents) to a decimal amount", inverse="amount_to_cents",
    ),
    "amount_to_cents": Transform(
        lambda v, p: int((_to_decimal(v) * 100).to_integral_value()),
        "Decimal amount to integer minor units (cents)", inverse="cents_to_amount",
    ),
    "unix_to_datetime": Transform(
        lambda v, p: _unix_to_datetime(v), "Unix epoch seconds to a UTC timestamp", inverse="datetime_to_unix",
    ),
    "datetime_to_unix": Transform(
        lambda v, p: _datetime_to_unix(v), "Timestamp to Unix epoch seconds", inverse="unix_to_datetime",
    ),
    "iso_to_datetime": Transform(
        lambda v, p: _iso_to_datetime(v), "ISO-8601 text to a UTC timestamp", inverse="datetime_to_iso",
    ),
    "datetime_to_iso": Transform(
        lambda v, p: _datetime_to_iso(v), "Timestamp to ISO-8601 text", inverse="iso_to_datetime",
    ),
    "split_first": Transform(
        lambda v, p: str(v).split(p.get("separator", " "))[0], "First token of text split on params.separator",
    ),
    "join_list": Transform(
        lambda v, p: p.get("separator", ", ").join(str(x) for x in v if x not in (None, "")),
        "Join a list into text with params.separator",
    ),
    "value_map": Transform(_value_map, "Translate values through params.map", inverse="value_map_inverse"),
    "value_map_inverse": Transform(_value_map_inverse, "Reverse lookup through params.map", inverse="value_map"),
}


# ---- Calculation catalog ----

def _numbers(values: List[Any]) -> List[Decimal]:
    return [_to_decimal(v) for v in values if not _is_missing(v)]


def _calc_sum(values, rule):
    return sum(_numbers(values), Decimal(0))


def _calc_product(values, rule):
    result = Decimal(1)
    for n in _numbers(values):
        result *= n
    return result


def _calc_subtract(values, rule):
    nums = _numbers(values)
    if not nums:
        raise ValueError("no numeric inputs")
    result = nums[0]
    for n in nums[1:]:
        result -= n
    return result


def _calc_concat(values, rule):
    separator = rule.get("separator", " ")
    return separator.join(str(v) for v in values if not _is_missing(v))


def _calc_coalesce(values, rule):
    for v in values:
        if not _is_missing(v):
            return v
    return None


def _calc_first(values, rule):
    return values[0] if values else None


def _calc_multiply_by(values, rule):
    nums = _numbers(values[:1])
    if not nums:
        return None
    return nums[0] * _to_decimal(rule.get("factor", 1))


def _calc_count(values, rule):
    value = values[0] if values else None
    return len(value) if isinstance(value, (list, tuple)) else 0


CALCULATIONS: Dict[str, Dict[str, Any]] = {
    "sum": {"func": _calc_sum, "description": "Sum of the numeric source fields"},
    "product": {"func": _calc_product, "description": "Product of the numeric source fields"},
    "subtract": {"func": _calc_subtract, "description": "First field minus the remaining fields"},
    "concat": {"func": _calc_concat, "description": "Join non-empty fields with rule.separator"},
    "coalesce": {"func": _calc_coalesce, "description": "First non-empty field"},
    "first": {"func": _calc_first, "description": "Value of the first source field, even if empty"},
    "multiply_by": {"func": _calc_multiply_by, "description": "First field times rule.factor"},
    "count": {"func": _calc_count, "description": "Number of items in a list field"},
}


# ---- Rules ----

@dataclass
class MappingRule:
    """Provider-agnostic mapping rule; built from adapter defaults or FieldMapping rows."""
    entity_type: str
    local_field: str
    remote_field: str
    mapping_type: str = "direct"
    transform: Dict[str, Any] = field(default_factory=dict)
    is_required: bool = False
    default_value: Any = None
    has_default: bool = False

    @classmethod
    def from_model(cls, mapping) -> "MappingRule":
        mapping_type = mapping.mapping_type.value if hasattr(mapping.mapping_type, "value") else mapping.mapping_type
        return cls(
            entity_type=mapping.entity_type,
            local_field=mapping.local_field,
            remote_field=mapping.remote_field,
            mapping_type=mapping_type,
            transform=mapping.transform,
            is_required=mapping.is_required,
            default_value=mapping.default_value,
            has_default=mapping.has_default,
        )


@dataclass
class MappingOutcome:
    data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def validate_rule(rule: MappingRule) -> List[FieldError]:
    """Check a rule only references catalog transforms/calculations."""
    errors: List[FieldError] = []
    label = f"{rule.entity_type}.{rule.local_field}"
    if rule.mapping_type not in MAPPING_TYPES:
        errors.append(FieldError(label, f"unknown mapping type '{rule.mapping_type}'"))
        return errors
    if not rule.local_field or not rule.remote_field:
        errors.append(FieldError(label, "local_field and remote_field are required"))
    if rule.mapping_type == "transform":
        name = (rule.transform or {}).get("name")
        if name not in TRANSFORMS:
            errors.append(FieldError(label, f"unknown transform '{name}'"))
        outbound = (rule.transform or {}).get("outbound")
        if outbound and outbound not in TRANSFORMS:
            errors.append(FieldError(label, f"unknown outbound transform '{outbound}'"))
    elif rule.mapping_type == "calculated":
        for key, spec in (("", rule.transform or {}), ("outbound ", (rule.transform or {}).get("outbound"))):
            if spec is None and key:
                continue
            op = (spec or {}).get("op")
            if op not in CALCULATIONS:
                errors.append(FieldError(label, f"unknown {key}calculation '{op}'"))
            fields = (spec or {}).get("fields")
            if not isinstance(fields, list) or not fields:
                errors.append(FieldError(label, f"{key}calculation needs a non-empty 'fields' list"))
    return errors


def merge_rules(defaults: Iterable[MappingRule], overrides: Iterable[MappingRule]) -> List[MappingRule]:
    """Tenant rules replace adapter defaults with the same (entity_type, local_field)."""
    merged: Dict[tuple, MappingRule] = {}
    for rule in defaults:
        merged[(rule.entity_type, rule.local_field)] = rule
    for rule in overrides:
        merged[(rule.entity_type, rule.local_field)] = rule
    return list(merged.values())


def rules_for(rules: Iterable[MappingRule], entity_type: str) -> List[MappingRule]:
    return [r for r in rules if r.entity_type == entity_type]


def _run_transform(name: str, value: Any, params: Dict[str, Any]) -> Any:
    return TRANSFORMS[name].func(value, params)


def _resolve_value(rule: MappingRule, direction: str, record: Dict[str, Any]) -> Any:
    if direction == INBOUND:
        source_field = rule.remote_field
    else:
        source_field = rule.local_field

    if rule.mapping_type == "calculated":
        spec = rule.transform if direction == INBOUND else (rule.transform or {}).get("outbound")
        if spec is None:
            return _MISSING
        values = [get_path(record, f) for f in spec.get("fields", [])]
        values = [None if v is _MISSING else v for v in values]
        result = CALCULATIONS[spec["op"]]["func"](values, spec)
        return _MISSING if result is None else result

    value = get_path(record, source_field)
    if _is_missing(value) or rule.mapping_type != "transform":
        return value

    transform = rule.transform or {}
    params = transform.get("params") or {}
    if direction == INBOUND:
        name = transform.get("name")
    else:
        name = transform.get("outbound") or TRANSFORMS[transform.get("name")].inverse
    if not name:
        return value
    return _run_transform(name, value, params)


def apply(rules: Iterable[MappingRule], direction: str, record: Dict[str, Any]) -> MappingOutcome:
    """Translate one record.

    Inbound reads remote fields and writes local ones; outbound the reverse.
    A required field that is missing falls back to its default with a
    warning, or becomes an error that fails the record.
    """
    outcome = MappingOutcome()
    for rule in rules:
        target = rule.local_field if direction == INBOUND else rule.remote_field
        try:
            value = _resolve_value(rule, direction, record)
        except (ValueError, TypeError, ArithmeticError, KeyError, OverflowError) as e:
            outcome.errors.append(FieldError(rule.local_field, f"{rule.mapping_type} mapping failed: {e}"))
            continue

        if _is_missing(value):
            if rule.mapping_type == "calculated" and direction == OUTBOUND and "outbound" not in (rule.transform or {}):
                continue
            if rule.has_default:
                if rule.is_required:
                    outcome.warnings.append(f"{rule.local_field}: missing, default value used")
                value = rule.default_value
            elif rule.is_required:
                outcome.errors.append(FieldError(rule.local_field, "required field is missing"))
                continue
            else:
                continue

        if direction == INBOUND:
            outcome.data[target] = value
        else:
            set_path(outcome.data, target, value)
    return outcome


def catalog() -> Dict[str, Any]:
    """Describe the transform and calculation catalog for admin forms."""
    return {
        "transforms": {
            name: {"description": t.description, "inverse": t.inverse} for name, t in TRANSFORMS.items()
        },
        "calculations": {name: {"description": c["description"]} for name, c in CALCULATIONS.items()},
    }
