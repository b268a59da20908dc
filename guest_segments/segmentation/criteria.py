"""
Criterion vocabulary - the typed predicates segments are built from.

Each criterion type declares which operators it accepts and the value shape
every operator takes. Raw criteria are validated once into ValidCriterion;
everything downstream (storage, matching) works with the resolved shape and
never re-inspects raw values.
"""
import operator as op
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from guest_segments.core.exceptions import CriterionValidationError


# A guest's attribute bag, keyed by criterion type
GuestAttributes = Mapping[str, Any]
Predicate = Callable[[GuestAttributes], bool]


class CriterionType(str, Enum):
    COUNTRY = "country"
    STATE = "state"
    CITY = "city"
    HAS_CHILDREN = "has_children"
    HAS_PETS = "has_pets"
    RIG_TYPE = "rig_type"
    STAY_LENGTH = "stay_length"
    STAY_REASON = "stay_reason"
    REPEAT_STAYS = "repeat_stays"
    BOOKING_MONTH = "booking_month"
    ARRIVAL_DAY = "arrival_day"


class Operator(str, Enum):
    EQUALS = "equals"
    IN = "in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


class ValueShape(str, Enum):
    TEXT = "text"
    TEXT_SET = "text_set"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    INTEGER_RANGE = "integer_range"


@dataclass(frozen=True)
class TypeSpec:
    """Legal operators of one criterion type and the value shape each takes."""
    label: str
    operators: Dict[Operator, ValueShape]
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    known_values: Dict[str, str] = field(default_factory=dict)


TEXT_OPERATORS = {
    Operator.EQUALS: ValueShape.TEXT,
    Operator.IN: ValueShape.TEXT_SET,
}

BOOLEAN_OPERATORS = {
    Operator.EQUALS: ValueShape.BOOLEAN,
}

NUMERIC_OPERATORS = {
    Operator.EQUALS: ValueShape.INTEGER,
    Operator.GREATER_THAN: ValueShape.INTEGER,
    Operator.LESS_THAN: ValueShape.INTEGER,
    Operator.BETWEEN: ValueShape.INTEGER_RANGE,
}

RIG_TYPE_LABELS = {
    "class_a": "Class A Motorhome",
    "class_b": "Class B Motorhome",
    "class_c": "Class C Motorhome",
    "fifth_wheel": "Fifth Wheel",
    "travel_trailer": "Travel Trailer",
    "pop_up": "Pop-up Camper",
    "tent": "Tent",
    "van": "Camper Van",
    "truck_camper": "Truck Camper",
    "cabin": "Cabin/Other",
}

STAY_REASON_LABELS = {
    "vacation": "Vacation",
    "family_visit": "Family Visit",
    "event": "Event/Festival",
    "work_remote": "Remote Work",
    "stopover": "Stopover/Transit",
    "relocation": "Relocation",
    "other": "Other",
}

VOCABULARY: Dict[CriterionType, TypeSpec] = {
    CriterionType.COUNTRY: TypeSpec("Country", TEXT_OPERATORS),
    CriterionType.STATE: TypeSpec("State/Province", TEXT_OPERATORS),
    CriterionType.CITY: TypeSpec("City", TEXT_OPERATORS),
    CriterionType.HAS_CHILDREN: TypeSpec("Has Children", BOOLEAN_OPERATORS),
    CriterionType.HAS_PETS: TypeSpec("Has Pets", BOOLEAN_OPERATORS),
    CriterionType.RIG_TYPE: TypeSpec("RV/Equipment Type", TEXT_OPERATORS, known_values=RIG_TYPE_LABELS),
    CriterionType.STAY_LENGTH: TypeSpec("Stay Length (nights)", NUMERIC_OPERATORS, minimum=0),
    CriterionType.STAY_REASON: TypeSpec("Stay Reason", TEXT_OPERATORS, known_values=STAY_REASON_LABELS),
    CriterionType.REPEAT_STAYS: TypeSpec("Number of Stays", NUMERIC_OPERATORS, minimum=0),
    CriterionType.BOOKING_MONTH: TypeSpec("Booking Month", NUMERIC_OPERATORS, minimum=1, maximum=12),
    # between never spans a month boundary: lower bound must not exceed upper
    CriterionType.ARRIVAL_DAY: TypeSpec("Arrival Day", NUMERIC_OPERATORS, minimum=1, maximum=31),
}

CriterionValue = Union[str, Tuple[str, ...], bool, int, Tuple[int, int]]


@dataclass(frozen=True)
class ValidCriterion:
    """A criterion that passed validation, with its value resolved to its shape."""
    type: CriterionType
    operator: Operator
    shape: ValueShape
    value: CriterionValue

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if self.shape in (ValueShape.TEXT_SET, ValueShape.INTEGER_RANGE):
            value = list(value)
        return {"type": self.type.value, "operator": self.operator.value, "value": value}


def validate(criterion: Any) -> ValidCriterion:
    """
    Validate a raw criterion ({type, operator, value}).

    Raises:
        CriterionValidationError: UnknownType, IllegalOperator or MalformedValue
    """
    if not isinstance(criterion, Mapping):
        raise CriterionValidationError(
            CriterionValidationError.MALFORMED_VALUE,
            "criterion must be an object with type, operator and value",
            "criterion"
        )

    raw_type = criterion.get("type")
    if not isinstance(raw_type, str) or raw_type not in _TYPE_VALUES:
        raise CriterionValidationError(
            CriterionValidationError.UNKNOWN_TYPE,
            f"'{raw_type}' is not a criterion type; expected one of {sorted(_TYPE_VALUES)}",
            "type"
        )
    criterion_type = CriterionType(raw_type)
    type_spec = VOCABULARY[criterion_type]

    raw_operator = criterion.get("operator")
    legal = [o.value for o in type_spec.operators]
    if not isinstance(raw_operator, str) or raw_operator not in legal:
        raise CriterionValidationError(
            CriterionValidationError.ILLEGAL_OPERATOR,
            f"'{raw_operator}' is not allowed for {raw_type}; expected one of {legal}",
            "operator"
        )
    criterion_operator = Operator(raw_operator)
    shape = type_spec.operators[criterion_operator]

    value = _resolve_value(shape, type_spec, criterion.get("value"))
    return ValidCriterion(criterion_type, criterion_operator, shape, value)


def validate_all(criteria: Any) -> List[ValidCriterion]:
    """Validate a segment's criteria list, locating errors by index."""
    if not isinstance(criteria, (list, tuple)):
        raise CriterionValidationError(
            CriterionValidationError.MALFORMED_VALUE,
            "criteria must be a list",
            "criteria"
        )
    valid = []
    for index, criterion in enumerate(criteria):
        try:
            valid.append(validate(criterion))
        except CriterionValidationError as exc:
            raise exc.at(index) from None
    return valid


def predicate(criterion: ValidCriterion) -> Predicate:
    """
    Build the pure matching function for a validated criterion.
    A guest without the attribute never matches.
    """
    key = criterion.type.value
    value = criterion.value

    if criterion.shape is ValueShape.TEXT:
        expected = _fold(value)

        def matches(attributes: GuestAttributes) -> bool:
            actual = attributes.get(key)
            return isinstance(actual, str) and _fold(actual) == expected

    elif criterion.shape is ValueShape.TEXT_SET:
        allowed = frozenset(_fold(v) for v in value)

        def matches(attributes: GuestAttributes) -> bool:
            actual = attributes.get(key)
            return isinstance(actual, str) and _fold(actual) in allowed

    elif criterion.shape is ValueShape.BOOLEAN:

        def matches(attributes: GuestAttributes) -> bool:
            actual = attributes.get(key)
            return isinstance(actual, bool) and actual == value

    elif criterion.shape is ValueShape.INTEGER:
        compare = _COMPARATORS[criterion.operator]

        def matches(attributes: GuestAttributes) -> bool:
            actual = _integer(attributes.get(key))
            return actual is not None and compare(actual, value)

    else:
        low, high = value

        def matches(attributes: GuestAttributes) -> bool:
            actual = _integer(attributes.get(key))
            return actual is not None and low <= actual <= high

    return matches


def describe_vocabulary() -> List[Dict[str, Any]]:
    """Criterion types with labels, operators and value shapes, for building forms."""
    return [
        {
            "type": criterion_type.value,
            "label": type_spec.label,
            "operators": {o.value: shape.value for o, shape in type_spec.operators.items()},
            "minimum": type_spec.minimum,
            "maximum": type_spec.maximum,
            "known_values": dict(type_spec.known_values),
        }
        for criterion_type, type_spec in VOCABULARY.items()
    ]


_TYPE_VALUES = {t.value for t in CriterionType}

_COMPARATORS = {
    Operator.EQUALS: op.eq,
    Operator.GREATER_THAN: op.gt,
    Operator.LESS_THAN: op.lt,
}


def _fold(text: str) -> str:
    return text.strip().casefold()


def _integer(raw: Any) -> Optional[int]:
    """Integers only; booleans and integral floats are handled explicitly."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    return None


def _malformed(message: str) -> CriterionValidationError:
    return CriterionValidationError(CriterionValidationError.MALFORMED_VALUE, message, "value")


def _resolve_value(shape: ValueShape, type_spec: TypeSpec, raw: Any) -> CriterionValue:
    if shape is ValueShape.TEXT:
        if not isinstance(raw, str) or not raw.strip():
            raise _malformed("expected a non-empty string")
        return raw.strip()

    if shape is ValueShape.TEXT_SET:
        if isinstance(raw, (str, bytes)) or not isinstance(raw, (list, tuple, set, frozenset)):
            raise _malformed("expected a non-empty list of strings")
        items: List[str] = []
        for item in raw:
            if not isinstance(item, str) or not item.strip():
                raise _malformed("every entry must be a non-empty string")
            if item.strip() not in items:
                items.append(item.strip())
        if not items:
            raise _malformed("expected a non-empty list of strings")
        return tuple(items)

    if shape is ValueShape.BOOLEAN:
        if not isinstance(raw, bool):
            raise _malformed("expected true or false")
        return raw

    if shape is ValueShape.INTEGER:
        return _bounded(type_spec, raw)

    if isinstance(raw, (str, bytes)) or not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise _malformed("expected a [low, high] pair of integers")
    low, high = _bounded(type_spec, raw[0]), _bounded(type_spec, raw[1])
    if low > high:
        raise _malformed(f"range lower bound {low} exceeds upper bound {high}")
    return (low, high)


def _bounded(type_spec: TypeSpec, raw: Any) -> int:
    number = _integer(raw)
    if number is None:
        raise _malformed("expected an integer")
    if type_spec.minimum is not None and number < type_spec.minimum:
        raise _malformed(f"{number} is below the minimum of {type_spec.minimum}")
    if type_spec.maximum is not None and number > type_spec.maximum:
        raise _malformed(f"{number} is above the maximum of {type_spec.maximum}")
    return number
