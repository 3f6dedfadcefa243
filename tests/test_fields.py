"""Unit tests for tenants/fields.py -- custom field definitions, values and claims.

Covers:
- definition name rules, reserved names, regex compilation
- value coercion per FieldType
- required / unknown field handling on signup and profile update
- claim list parsing against standard claims and field names
"""

import pytest

from core.errors import ConfigurationError, ValidationError
from tenants.fields import clean_custom_fields, coerce_value, parse_claims, validate_definition
from tenants.models import FieldDefinition, FieldType


def _field(name="department", kind=FieldType.STRING, **kwargs):
    return FieldDefinition(application_id="app-1", field_name=name, field_type=kind, **kwargs)


class TestDefinitions:
    @pytest.mark.parametrize("name", ["department", "_internal", "team2", "A" * 64])
    def test_valid_names(self, name):
        validate_definition(_field(name))

    @pytest.mark.parametrize("name", ["2fa", "has-dash", "has space", "", "A" * 65])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            validate_definition(_field(name))

    @pytest.mark.parametrize("name", ["email", "Password", "id", "status"])
    def test_reserved_names(self, name):
        with pytest.raises(ValidationError):
            validate_definition(_field(name))

    def test_pattern_must_compile(self):
        with pytest.raises(ValidationError):
            validate_definition(_field(validation_pattern="([a-z"))

    def test_pattern_only_on_strings(self):
        with pytest.raises(ValidationError):
            validate_definition(_field(kind=FieldType.NUMBER, validation_pattern=r"\d+"))


class TestCoercion:
    @pytest.mark.parametrize("raw,expected", [(3, 3), (2.5, 2.5), ("42", 42), ("4.0", 4.0), (" 7 ", 7)])
    def test_number(self, raw, expected):
        assert coerce_value(_field(kind=FieldType.NUMBER), raw) == expected

    @pytest.mark.parametrize("raw", [True, "abc", "nan", "inf", [1], float("nan"), float("inf"), float("-inf")])
    def test_number_rejects(self, raw):
        with pytest.raises(ValidationError):
            coerce_value(_field(kind=FieldType.NUMBER), raw)

    @pytest.mark.parametrize("raw,expected", [(True, True), ("false", False), ("YES", True), ("0", False)])
    def test_boolean(self, raw, expected):
        assert coerce_value(_field(kind=FieldType.BOOLEAN), raw) is expected

    def test_boolean_rejects(self):
        with pytest.raises(ValidationError):
            coerce_value(_field(kind=FieldType.BOOLEAN), "maybe")

    def test_date(self):
        assert coerce_value(_field(kind=FieldType.DATE), "2024-02-29") == "2024-02-29"
        with pytest.raises(ValidationError):
            coerce_value(_field(kind=FieldType.DATE), "2023-02-29")

    def test_email_lowercased(self):
        assert coerce_value(_field(kind=FieldType.EMAIL), "Jane@Example.COM") == "jane@example.com"
        with pytest.raises(ValidationError):
            coerce_value(_field(kind=FieldType.EMAIL), "not-an-email")

    def test_url(self):
        assert coerce_value(_field(kind=FieldType.URL), "https://acme.io/x") == "https://acme.io/x"
        with pytest.raises(ValidationError):
            coerce_value(_field(kind=FieldType.URL), "ftp://acme.io")

    def test_string_pattern(self):
        definition = _field(validation_pattern=r"[A-Z]{3}-\d+")
        assert coerce_value(definition, "ENG-12") == "ENG-12"
        with pytest.raises(ValidationError):
            coerce_value(definition, "ENG-12x")

    def test_empty_means_unset(self):
        assert coerce_value(_field(kind=FieldType.NUMBER), "") is None
        assert coerce_value(_field(), None) is None


class TestClean:
    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            clean_custom_fields([_field()], {"nickname": "x"})
        assert exc_info.value.code == "invalid_field"

    def test_required_field_missing(self):
        with pytest.raises(ValidationError) as exc_info:
            clean_custom_fields([_field(required=True)], {})
        assert exc_info.value.code == "required_field"

    def test_merge_keeps_existing_and_clears_empty(self):
        definitions = [_field(), _field("level", FieldType.NUMBER)]
        merged = clean_custom_fields(definitions, {"level": "3", "department": ""}, current={"department": "eng"})
        assert merged == {"level": 3}

    def test_required_field_satisfied_by_current_value(self):
        definitions = [_field(required=True), _field("level", FieldType.NUMBER)]
        merged = clean_custom_fields(definitions, {"level": 1}, current={"department": "eng"})
        assert merged == {"department": "eng", "level": 1}

    def test_required_field_cannot_be_cleared(self):
        with pytest.raises(ValidationError):
            clean_custom_fields([_field(required=True)], {"department": None}, current={"department": "eng"})

    def test_values_of_deleted_definitions_are_kept(self):
        merged = clean_custom_fields([_field()], {"department": "ops"}, current={"legacy": "v"})
        assert merged == {"legacy": "v", "department": "ops"}


class TestClaims:
    def test_list_and_string_forms(self):
        assert parse_claims(["email", "department"], {"department"}) == ["email", "department"]
        assert parse_claims("email, department,email", {"department"}) == ["email", "department"]

    def test_empty(self):
        assert parse_claims(None, set()) == []
        assert parse_claims("", set()) == []

    def test_unknown_claim(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_claims(["email", "nope"], {"department"})
        assert exc_info.value.code == "invalid_claims"
        assert "nope" in exc_info.value.message
