"""Pytest configuration and shared fixtures."""
import pytest

from formstate import FieldDefinition, FieldID, FormConfig, FormController
from formstate.field_id import clear_id_cache


@pytest.fixture(autouse=True)
def reset_reified_id_cache():
    """Start every test with an empty FieldID[...] type cache."""
    clear_id_cache()
    yield
    clear_id_cache()


@pytest.fixture
def fast_config():
    """Config with debounce windows short enough for tests."""
    return FormConfig(debounce=0.01, persistence_debounce=0.01)


@pytest.fixture
def name_id():
    return FieldID[str]("name")


@pytest.fixture
def age_id():
    return FieldID[int]("age")


@pytest.fixture
def email_id():
    return FieldID[str]("email")


def adult_validator(value):
    if value is None or value < 18:
        return "must be 18 or older"
    return None


@pytest.fixture
def profile_form(name_id, age_id, fast_config):
    """A small two-field form: required name, adult age."""
    return FormController(
        [
            FieldDefinition(name_id, initial_value="", validator=lambda v: "Name is required" if not v else None),
            FieldDefinition(age_id, initial_value=18, validator=adult_validator),
        ],
        config=fast_config,
    )


class Recorder:
    """Listener that records every snapshot it receives."""

    def __init__(self):
        self.snapshots = []

    def __call__(self, snapshot):
        self.snapshots.append(snapshot)

    @property
    def count(self):
        return len(self.snapshots)

    @property
    def last(self):
        return self.snapshots[-1]


@pytest.fixture
def recorder():
    return Recorder()
