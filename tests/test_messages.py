"""Tests for message resolution and hot-swapping."""
from formstate import (
    DefaultFormMessages, FieldDefinition, FieldID, FormController, Validators, ValidationKeys,
)


class SpanishMessages(DefaultFormMessages):
    def required(self, label):
        return f"{label} es requerido"


def test_resolve_required_uses_label():
    assert DefaultFormMessages().resolve(ValidationKeys.REQUIRED, "Email") == "Email is required"


def test_resolve_parameterized_keys():
    messages = DefaultFormMessages()
    assert messages.resolve("formstate_key_min_length:8", "Password") == "Minimum length is 8 characters"
    assert messages.resolve("formstate_key_max:2.5", "Ratio") == "Maximum value is 2.5"


def test_literal_message_gets_placeholders():
    resolved = DefaultFormMessages().resolve("{label} cannot be {value}", "Age", 3)
    assert resolved == "Age cannot be 3"


def test_unknown_placeholders_left_alone():
    assert DefaultFormMessages().format("{who} is {what}", {"who": "Ada"}) == "Ada is {what}"


def test_with_param():
    assert ValidationKeys.with_param(ValidationKeys.MIN, 3) == "formstate_key_min:3"


def test_controller_resolves_validator_keys():
    """Keys returned by validator chains become display text."""
    email = FieldID[str]("email")
    form = FormController([
        FieldDefinition(email, initial_value="", label="Email", validator=Validators.string().required().build()),
    ])
    assert form.get_validation(email).error_message == "Email is required"


def test_hot_swap_keeps_state():
    """Swapping messages keeps values and affects only later validations."""
    email = FieldID[str]("email")
    form = FormController([
        FieldDefinition(email, initial_value="x", label="Email", validator=Validators.string().required().build()),
    ])
    form.set_value(email, "")
    before = form.state

    form.messages = SpanishMessages()
    assert form.state is before
    assert form.get_validation(email).error_message == "Email is required"

    form.validate()
    assert form.get_validation(email).error_message == "Email es requerido"
    assert form.get_value(email) == ""
