"""Tests for ValidationResult, the validation enums and FieldDefinition."""
import pytest

from formstate import FieldDefinition, FieldID, ResetStrategy, ValidationMode, ValidationResult


class TestValidationResult:

    def test_valid_constant(self):
        assert ValidationResult.VALID.is_valid
        assert ValidationResult.VALID.error_message is None
        assert not ValidationResult.VALID.is_validating

    def test_validating_constant(self):
        assert ValidationResult.VALIDATING.is_valid
        assert ValidationResult.VALIDATING.is_validating

    def test_valid_with_message_rejected(self):
        """is_valid implies no error message."""
        with pytest.raises(ValueError):
            ValidationResult(is_valid=True, error_message="boom")

    def test_invalid_helper(self):
        result = ValidationResult.invalid("bad")
        assert not result.is_valid
        assert result.error_message == "bad"
        assert result.has_error

    def test_value_equality(self):
        assert ValidationResult.invalid("x") == ValidationResult(False, "x")

    def test_with_validating_returns_same_when_unchanged(self):
        assert ValidationResult.VALID.with_validating(False) is ValidationResult.VALID
        assert ValidationResult.VALID.with_validating(True) == ValidationResult.VALIDATING

    def test_dict_round_trip(self):
        result = ValidationResult.invalid("bad")
        assert ValidationResult.from_dict(result.to_dict()) == result


class TestFieldDefinition:

    def test_requires_field_id(self):
        with pytest.raises(TypeError):
            FieldDefinition("name")

    def test_negative_debounce_rejected(self):
        with pytest.raises(ValueError):
            FieldDefinition(FieldID("q"), debounce=-1)

    def test_depends_on_normalized_to_tuple(self):
        definition = FieldDefinition(FieldID("b"), depends_on=[FieldID("a")])
        assert definition.depends_on == (FieldID("a"),)

    def test_declared_type_wins(self):
        definition = FieldDefinition(FieldID[str]("name"), initial_value=None)
        assert definition.type_tag == (str,)

    def test_type_inferred_from_initial_value(self):
        definition = FieldDefinition(FieldID("count"), initial_value=3)
        assert definition.type_tag == (int, float)

    def test_untyped_none_is_unchecked(self):
        assert FieldDefinition(FieldID("anything")).type_tag is None

    def test_display_label_falls_back_to_local_name(self):
        assert FieldDefinition(FieldID("address.city")).display_label == "city"
        assert FieldDefinition(FieldID("city"), label="City").display_label == "City"

    def test_default_mode_is_auto(self):
        assert FieldDefinition(FieldID("x")).validation_mode is ValidationMode.AUTO

    @pytest.mark.parametrize("initial, empty", [
        ("text", ""),
        (5, 0),
        (True, False),
        ([1, 2], []),
        ({"a": 1}, {}),
    ])
    def test_clear_value_by_type(self, initial, empty):
        definition = FieldDefinition(FieldID("f"), initial_value=initial)
        assert definition.reset_value(ResetStrategy.CLEAR) == empty

    def test_clear_value_is_fresh_container(self):
        definition = FieldDefinition(FieldID("f"), initial_value=[1])
        assert definition.reset_value(ResetStrategy.CLEAR) is not definition.reset_value(ResetStrategy.CLEAR)

    def test_explicit_empty_value(self):
        definition = FieldDefinition(FieldID("f"), initial_value="x", empty_value="-")
        assert definition.reset_value(ResetStrategy.CLEAR) == "-"

    def test_initial_values_strategy(self):
        definition = FieldDefinition(FieldID("f"), initial_value="x")
        assert definition.reset_value(ResetStrategy.INITIAL_VALUES) == "x"
