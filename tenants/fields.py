"""
tenants/fields.py -- Custom-field schema rules and value validation.

Two concerns live here because both are about an application's field names:

  Definitions: field names are identifiers (letter or underscore first, at
      most 64 chars) and may not shadow a built-in user attribute. STRING
      fields may carry a regex that must compile.

  Values: clean_custom_fields() checks a submitted mapping against the
      current definitions -- unknown names are rejected, required fields must
      end up non-empty, and each value is coerced to its declared type.
      Stored values of a definition that has since been deleted are carried
      along untouched.

  Claims: parse_claims() normalizes a jwtCustomClaims submission (a list or
      a comma-joined string) and rejects names that are neither standard
      claims nor declared fields.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.errors import ConfigurationError, ValidationError
from tenants.models import RESERVED_FIELD_NAMES, STANDARD_CLAIMS, FieldDefinition, FieldType

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_url_adapter = TypeAdapter(AnyHttpUrl)

_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def validate_definition(definition: FieldDefinition) -> None:
    """Raise ValidationError if a field definition is malformed."""
    if not _FIELD_NAME_RE.match(definition.field_name):
        raise ValidationError(
            "Field name must start with a letter or underscore and contain only letters, digits and underscores.",
            code="invalid_field",
        )
    if definition.field_name.lower() in RESERVED_FIELD_NAMES:
        raise ValidationError(f"'{definition.field_name}' is a reserved name.", code="invalid_field")
    if definition.validation_pattern:
        if definition.field_type is not FieldType.STRING:
            raise ValidationError("validation_pattern only applies to STRING fields.", code="invalid_field")
        try:
            re.compile(definition.validation_pattern)
        except re.error as exc:
            raise ValidationError(f"validation_pattern is not a valid regex: {exc}", code="invalid_field") from exc


def clean_custom_fields(
    definitions: list[FieldDefinition],
    values: dict[str, Any],
    current: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Validate values against definitions and return the merged, coerced mapping.

    current holds the user's stored values (profile update); it is None on
    signup. A None or empty-string value clears a field.
    """
    by_name = {d.field_name: d for d in definitions}
    unknown = sorted(set(values) - set(by_name))
    if unknown:
        raise ValidationError(f"Unknown custom field(s): {', '.join(unknown)}.", code="invalid_field")

    merged = dict(current or {})
    for name, raw in values.items():
        value = coerce_value(by_name[name], raw)
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value

    for definition in definitions:
        if definition.required and merged.get(definition.field_name) is None:
            raise ValidationError(f"Field '{definition.field_name}' is required.", code="required_field")
    return merged


def coerce_value(definition: FieldDefinition, raw: Any) -> Any:
    """Return raw converted to the field's type, or raise ValidationError."""
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None
    name = definition.field_name
    kind = definition.field_type

    if kind is FieldType.NUMBER:
        if isinstance(raw, bool):
            raise _type_error(name, "a number")
        if isinstance(raw, (int, float)):
            if isinstance(raw, float) and not math.isfinite(raw):
                raise _type_error(name, "a number")
            return raw
        if isinstance(raw, str):
            try:
                number = float(raw.strip())
            except ValueError:
                raise _type_error(name, "a number") from None
            if not math.isfinite(number):
                raise _type_error(name, "a number")
            return int(number) if number.is_integer() and "." not in raw else number
        raise _type_error(name, "a number")

    if kind is FieldType.BOOLEAN:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in _TRUE | _FALSE:
            return raw.strip().lower() in _TRUE
        raise _type_error(name, "true or false")

    if not isinstance(raw, str):
        raise _type_error(name, "a string")
    text = raw.strip()

    if kind is FieldType.DATE:
        try:
            date.fromisoformat(text)
        except ValueError:
            raise _type_error(name, "an ISO date (YYYY-MM-DD)") from None
        return text

    if kind is FieldType.EMAIL:
        if not _EMAIL_RE.match(text):
            raise _type_error(name, "an email address")
        return text.lower()

    if kind is FieldType.URL:
        try:
            _url_adapter.validate_python(text)
        except PydanticValidationError:
            raise _type_error(name, "an http(s) URL") from None
        return text

    if definition.validation_pattern and not re.fullmatch(definition.validation_pattern, raw):
        raise ValidationError(f"Field '{name}' does not match the required format.", code="invalid_field")
    return raw


def parse_claims(claims: list[str] | str | None, field_names: set[str]) -> list[str]:
    """Normalize a claim list, keeping first-seen order and dropping duplicates.

    Raises ConfigurationError(invalid_claims) naming every unknown claim.
    """
    if claims is None:
        return []
    if isinstance(claims, str):
        claims = claims.split(",")
    names: list[str] = []
    for claim in claims:
        claim = claim.strip()
        if claim and claim not in names:
            names.append(claim)
    allowed = set(STANDARD_CLAIMS) | field_names
    unknown = [n for n in names if n not in allowed]
    if unknown:
        raise ConfigurationError(f"Unknown JWT claim(s): {', '.join(unknown)}.", code="invalid_claims")
    return names


def _type_error(name: str, expected: str) -> ValidationError:
    return ValidationError(f"Field '{name}' must be {expected}.", code="invalid_field")
