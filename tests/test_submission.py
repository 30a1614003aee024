"""
Tests for form submission.

Tests cover:
- Waiting for pending async validation before deciding validity
- on_valid / on_error / focus handler dispatch
- Throttling, is_submitting bookkeeping and error propagation
- Optimistic baselines and optimistic field updates
"""
import asyncio

import pytest

from formstate import FieldDefinition, FieldID, FormController
from formstate.analytics import FormAnalytics


class SubmitAnalytics(FormAnalytics):

    def __init__(self):
        self.events = []

    def on_submit_attempt(self, form_id, values):
        self.events.append(("attempt", values))

    def on_submit_success(self, form_id):
        self.events.append(("success",))

    def on_submit_failure(self, form_id, errors):
        self.events.append(("failure", errors))

    def on_form_abandoned(self, form_id, time_spent):
        self.events.append(("abandoned",))


@pytest.fixture
def username():
    return FieldID[str]("username")


@pytest.fixture
def signup_form(username, fast_config):
    async def available(value):
        await asyncio.sleep(0.01)
        return "Username taken" if value == "admin" else None

    return FormController(
        [FieldDefinition(username, initial_value="", async_validator=available)],
        config=fast_config,
    )


class TestSubmit:

    @pytest.mark.asyncio
    async def test_waits_for_async_validation(self, signup_form, username):
        submitted = []
        errors = []
        signup_form.set_value(username, "admin")

        ok = await signup_form.submit(submitted.append, on_error=errors.append)

        assert not ok
        assert submitted == []
        assert errors[0]["username"].error_message == "Username taken"

    @pytest.mark.asyncio
    async def test_submit_rechecks_async_validation(self, username, fast_config):
        taken = set()
        calls = []

        async def available(value):
            calls.append(value)
            return "Username taken" if value in taken else None

        form = FormController([FieldDefinition(username, initial_value="", async_validator=available)], config=fast_config)
        form.set_value(username, "ada")
        while form.state.is_validating:
            await asyncio.sleep(0.005)
        assert form.get_validation(username).is_valid

        taken.add("ada")
        submitted = []
        assert not await form.submit(submitted.append)
        assert submitted == []
        assert calls == ["ada", "ada"]
        assert form.get_validation(username).error_message == "Username taken"

    @pytest.mark.asyncio
    async def test_valid_submit_awaits_on_valid(self, signup_form, username):
        received = []

        async def on_valid(values):
            assert signup_form.state.is_submitting
            await asyncio.sleep(0)
            received.append(values)

        signup_form.set_value(username, "ada")
        assert await signup_form.submit(on_valid)
        assert received == [{"username": "ada"}]
        assert not signup_form.state.is_submitting

    @pytest.mark.asyncio
    async def test_waits_for_pending_flag(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")
        profile_form.set_pending(name_id, True)
        submitted = []

        task = asyncio.create_task(profile_form.submit(submitted.append))
        await asyncio.sleep(0.01)
        assert submitted == []
        assert profile_form.state.is_submitting

        profile_form.set_pending(name_id, False)
        assert await task
        assert submitted == [{"name": "Ada", "age": 18}]

    @pytest.mark.asyncio
    async def test_without_waiting(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")
        profile_form.set_pending(name_id, True)
        submitted = []
        assert await profile_form.submit(submitted.append, wait_for_pending=False)
        assert submitted

    @pytest.mark.asyncio
    async def test_invalid_calls_focus_handler(self, name_id, age_id):
        focused = []
        form = FormController(
            [
                FieldDefinition(name_id, initial_value="", validator=lambda v: "Name is required" if not v else None),
                FieldDefinition(age_id, initial_value=0),
            ],
            focus_handler=focused.append,
        )
        assert not await form.submit(lambda values: None)
        assert focused == ["name"]

    @pytest.mark.asyncio
    async def test_auto_focus_can_be_disabled(self, name_id):
        focused = []
        form = FormController(
            [FieldDefinition(name_id, initial_value="", validator=lambda v: "required" if not v else None)],
            focus_handler=focused.append,
        )
        await form.submit(lambda values: None, auto_focus_on_invalid=False)
        assert focused == []

    @pytest.mark.asyncio
    async def test_async_on_error_awaited(self, profile_form):
        seen = []

        async def on_error(validations):
            await asyncio.sleep(0)
            seen.append(sorted(key for key, result in validations.items() if not result.is_valid))

        await profile_form.submit(lambda values: None, on_error=on_error)
        assert seen == [["name"]]

    @pytest.mark.asyncio
    async def test_throttle(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")
        submitted = []
        assert await profile_form.submit(submitted.append, throttle=10)
        assert not await profile_form.submit(submitted.append, throttle=10)
        assert len(submitted) == 1

    @pytest.mark.asyncio
    async def test_on_valid_error_propagates(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")

        async def failing(values):
            raise RuntimeError("server rejected")

        with pytest.raises(RuntimeError, match="server rejected"):
            await profile_form.submit(failing)
        assert not profile_form.state.is_submitting


class TestOptimisticSubmit:

    @pytest.mark.asyncio
    async def test_baseline_committed_before_on_valid(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")
        dirty_during = []

        async def on_valid(values):
            dirty_during.append(profile_form.state.is_dirty)

        assert await profile_form.submit(on_valid, optimistic=True)
        assert dirty_during == [False]
        assert not profile_form.state.is_dirty
        assert profile_form.initial_values["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_revert_on_error(self, profile_form, name_id):
        profile_form.set_value(name_id, "Ada")

        async def failing(values):
            raise RuntimeError("offline")

        with pytest.raises(RuntimeError):
            await profile_form.submit(failing, optimistic=True, revert_on_error=True)
        assert profile_form.is_field_dirty(name_id)
        assert profile_form.initial_values["name"] == ""

    @pytest.mark.asyncio
    async def test_invalid_submit_restores_baseline(self, profile_form, name_id, age_id):
        profile_form.set_value(name_id, "Ada")
        profile_form.set_value(age_id, 10)

        assert not await profile_form.submit(lambda values: None, optimistic=True)
        assert profile_form.is_field_dirty(name_id)
        assert profile_form.is_field_dirty(age_id)
        assert profile_form.initial_values == {"name": "", "age": 18}

        profile_form.reset()
        assert profile_form.state.values == {"name": "", "age": 18}


class TestOptimisticUpdate:

    @pytest.mark.asyncio
    async def test_success_keeps_value(self, profile_form, name_id):
        pending_during = []

        async def save():
            pending_during.append(profile_form.is_field_pending(name_id))
            return "saved"

        result = await profile_form.optimistic_update(name_id, "Ada", save)
        assert result == "saved"
        assert pending_during == [True]
        assert profile_form.get_value(name_id) == "Ada"
        assert not profile_form.is_field_pending(name_id)

    @pytest.mark.asyncio
    async def test_failure_reverts(self, profile_form, name_id):
        async def save():
            assert profile_form.get_value(name_id) == "Ada"
            raise ConnectionError("offline")

        with pytest.raises(ConnectionError):
            await profile_form.optimistic_update(name_id, "Ada", save)
        assert profile_form.get_value(name_id) == ""
        assert not profile_form.is_field_pending(name_id)

    @pytest.mark.asyncio
    async def test_failure_without_revert(self, profile_form, name_id):
        async def save():
            raise ConnectionError("offline")

        with pytest.raises(ConnectionError):
            await profile_form.optimistic_update(name_id, "Ada", save, revert_on_error=False)
        assert profile_form.get_value(name_id) == "Ada"

    @pytest.mark.asyncio
    async def test_cancelled_action_clears_pending(self, profile_form, name_id):
        started = asyncio.Event()

        async def save():
            started.set()
            await asyncio.sleep(10)

        task = asyncio.ensure_future(profile_form.optimistic_update(name_id, "Ada", save))
        await started.wait()
        assert profile_form.is_field_pending(name_id)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not profile_form.is_field_pending(name_id)


class TestSubmitAnalytics:

    @pytest.mark.asyncio
    async def test_success_events(self, name_id):
        analytics = SubmitAnalytics()
        form = FormController([FieldDefinition(name_id, initial_value="Ada")], analytics=analytics)
        await form.submit(lambda values: None)
        form.close()
        assert analytics.events == [("attempt", {"name": "Ada"}), ("success",)]

    @pytest.mark.asyncio
    async def test_failure_events(self, name_id):
        analytics = SubmitAnalytics()
        form = FormController(
            [FieldDefinition(name_id, initial_value="", validator=lambda v: "required" if not v else None)],
            analytics=analytics,
        )
        await form.submit(lambda values: None)
        form.close()
        assert analytics.events == [
            ("attempt", {"name": ""}),
            ("failure", {"name": "required"}),
            ("abandoned",),
        ]
