"""
Row validation for bulk imports.

Validation is pure: it looks at one canonical-field row at a time and never
touches storage. Rules run in a fixed order and stop at the first failure:

1. required fields present and non-empty
2. per-field type/format checks (numbers, dates, emails, codes)
3. schema-specific business constraints
"""

import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from app.domain.imports.records import TypedRecord, build_record
from app.domain.imports.schema_mapper import FieldKind, FieldSpec, SchemaDefinition, SchemaType
from app.utils.date import parse_flexible_date


# Preset regex patterns for field formats
PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
}

PRESET_DESCRIPTIONS = {
    "email": "Standard email format",
}

# Spreadsheet placeholders that mean "no value".
EMPTY_MARKERS = {"", "null", "none", "nan", "###", "-"}

_CURRENCY_SYMBOLS = re.compile(r'(?i)rp\.?|idr|[$€£¥₹]')


def get_preset_pattern(preset_name: str) -> Optional[str]:
    return PRESET_PATTERNS.get(preset_name)


def validate_with_preset(
    value: str,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = PRESET_DESCRIPTIONS.get(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name} format"
    return True, None


def clean_value(value: Any) -> Optional[str]:
    """Trim a raw cell and collapse placeholder markers to None."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in EMPTY_MARKERS:
        return None
    return text


def parse_decimal(value: str) -> Decimal:
    """
    Parse a formatted number such as "Rp 1.234.567,89" or "$1,234,567.89".

    When both separators appear, the last one is the decimal separator. A lone
    comma followed by exactly two digits is treated as a decimal comma,
    otherwise commas are thousands separators.
    """
    cleaned = _CURRENCY_SYMBOLS.sub('', value)
    cleaned = re.sub(r'\s+', '', cleaned)

    if ',' in cleaned and '.' in cleaned:
        if cleaned.rfind(',') > cleaned.rfind('.'):
            cleaned = cleaned.replace('.', '').replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')
    elif ',' in cleaned:
        if cleaned.count(',') == 1 and len(cleaned) - cleaned.index(',') == 3:
            cleaned = cleaned.replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')
    elif cleaned.count('.') > 1:
        # "1.234.567" only makes sense as thousands grouping
        cleaned = cleaned.replace('.', '')

    try:
        number = Decimal(cleaned)
        if not number.is_finite():
            raise ValueError(f"Invalid number: {value}")
        return number.quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValueError(f"Invalid number: {value}")


def parse_integer(value: str) -> int:
    """Integers may arrive as "3", "3.0" (spreadsheet floats) or "1,000"."""
    number = parse_decimal(value)
    if number != number.to_integral_value():
        raise ValueError(f"Not a whole number: {value}")
    return int(number)


@dataclass
class FieldFailure:
    field: Optional[str]
    reason: str


@dataclass
class ValidationOutcome:
    record: Optional[TypedRecord] = None
    failure: Optional[FieldFailure] = None

    @property
    def is_valid(self) -> bool:
        return self.record is not None


def _check_format(spec: FieldSpec, text: str) -> Union[FieldFailure, Any]:
    if spec.max_length is not None and len(text) > spec.max_length:
        return FieldFailure(spec.name, f"Field '{spec.name}' is longer than {spec.max_length} characters")

    if spec.kind == FieldKind.DECIMAL:
        try:
            return parse_decimal(text)
        except ValueError:
            return FieldFailure(spec.name, f"Field '{spec.name}' must be a number (got '{text}')")

    if spec.kind == FieldKind.INTEGER:
        try:
            return parse_integer(text)
        except ValueError:
            return FieldFailure(spec.name, f"Field '{spec.name}' must be a whole number (got '{text}')")

    if spec.kind == FieldKind.DATE:
        parsed = parse_flexible_date(text, log_context=spec.name)
        if parsed is None:
            return FieldFailure(spec.name, f"Field '{spec.name}' must be a date like YYYY-MM-DD or DD/MM/YYYY (got '{text}')")
        return parsed

    if spec.kind == FieldKind.EMAIL:
        ok, _ = validate_with_preset(text, "email", allow_null=False)
        if not ok:
            return FieldFailure(spec.name, f"Field '{spec.name}' must be a valid email address (got '{text}')")
        return text.lower()

    # Codes are free-form once trimmed; only max_length applies.
    return text


# Business rules: each returns an error message or None.
BusinessRule = Callable[[Dict[str, Any]], Optional[FieldFailure]]


def _non_negative(field_name: str) -> BusinessRule:
    def rule(values: Dict[str, Any]) -> Optional[FieldFailure]:
        value = values.get(field_name)
        if value is not None and value < 0:
            return FieldFailure(field_name, f"Field '{field_name}' must be >= 0")
        return None
    return rule


def _special_price_not_above_normal(values: Dict[str, Any]) -> Optional[FieldFailure]:
    special = values.get("special_price")
    if special is not None and special > values["normal_price"]:
        return FieldFailure("special_price", "Field 'special_price' must not exceed 'normal_price'")
    return None


def _positive_qty(values: Dict[str, Any]) -> Optional[FieldFailure]:
    if values.get("qty") is not None and values["qty"] < 1:
        return FieldFailure("qty", "Field 'qty' must be at least 1")
    return None


def _joined_after_birth(values: Dict[str, Any]) -> Optional[FieldFailure]:
    birth: Optional[date] = values.get("birth_date")
    joined: Optional[date] = values.get("joined_date")
    if birth and joined and joined < birth:
        return FieldFailure("joined_date", "Field 'joined_date' must not be before 'birth_date'")
    return None


BUSINESS_RULES: Dict[SchemaType, List[BusinessRule]] = {
    SchemaType.PRICELIST: [
        _non_negative("normal_price"),
        _non_negative("special_price"),
        _special_price_not_above_normal,
    ],
    SchemaType.TRANSFER_ITEMS: [_non_negative("line_no"), _positive_qty],
    SchemaType.STAFF: [_joined_after_birth],
    SchemaType.STORES: [],
    SchemaType.REFERENCE_SHEET: [],
}


def validate_row(
    schema: SchemaDefinition,
    row: Dict[str, Optional[str]],
    defaults: Optional[Dict[str, Any]] = None,
) -> ValidationOutcome:
    """
    Validate one canonical-field row.

    Args:
        schema: Schema definition for the import
        row: Canonical field name -> raw string value (missing keys allowed)
        defaults: Job-level values used when the row has no value for a field

    Returns:
        ValidationOutcome carrying either the typed record or the first failure
    """
    cleaned: Dict[str, Optional[str]] = {}
    for spec in schema.fields:
        value = clean_value(row.get(spec.name))
        if value is None and defaults and defaults.get(spec.name) is not None:
            value = clean_value(defaults[spec.name])
        if value is None and spec.default is not None:
            value = spec.default
        cleaned[spec.name] = value

    # 1. required fields
    for spec in schema.fields:
        if spec.required and cleaned[spec.name] is None:
            return ValidationOutcome(failure=FieldFailure(spec.name, f"Missing required field '{spec.name}'"))

    # 2. type / format
    typed: Dict[str, Any] = {}
    for spec in schema.fields:
        text = cleaned[spec.name]
        if text is None:
            typed[spec.name] = None
            continue
        result = _check_format(spec, text)
        if isinstance(result, FieldFailure):
            return ValidationOutcome(failure=result)
        typed[spec.name] = result

    # 3. business constraints
    for rule in BUSINESS_RULES.get(schema.schema_type, []):
        failure = rule(typed)
        if failure is not None:
            return ValidationOutcome(failure=failure)

    values = {name: value for name, value in typed.items() if value is not None}
    return ValidationOutcome(record=build_record(schema.schema_type, values))
