"""
Signup form example.

Builds a three-field signup form with a debounced async username check, a
password confirmation that depends on the password, and a submit that waits
for the username check before deciding.

Run with:
    python examples/signup_form.py
"""

import asyncio
import logging

from formstate import FieldDefinition, FieldID, FormController, LoggingFormAnalytics, Validators

logger = logging.getLogger(__name__)

TAKEN_USERNAMES = {"admin", "root"}

username = FieldID[str]("username")
password = FieldID[str]("password")
confirm = FieldID[str]("confirm")


async def username_available(value):
    await asyncio.sleep(0.05)  # simulated network round trip
    return "Username is already taken" if value in TAKEN_USERNAMES else None


def passwords_match(value, snapshot):
    if value != snapshot.values.get("password"):
        return "Passwords do not match"
    return None


def build_form() -> FormController:
    return FormController(
        [
            FieldDefinition(
                username,
                initial_value="",
                validator=Validators.string().required().min_length(3).build(),
                async_validator=username_available,
                label="Username",
            ),
            FieldDefinition(
                password,
                initial_value="",
                validator=Validators.string().required().min_length(8).build(),
                label="Password",
            ),
            FieldDefinition(
                confirm,
                initial_value="",
                depends_on=[password],
                cross_field_validator=passwords_match,
                label="Confirm password",
            ),
        ],
        form_id="signup",
        analytics=LoggingFormAnalytics(level=logging.INFO),
        focus_handler=lambda key: logger.info(f"Focus field '{key}'"),
    )


async def main():
    form = build_form()
    form.add_listener(lambda snapshot: logger.info(f"errors={snapshot.errors} pending={snapshot.is_pending}"))

    async def create_account(values):
        logger.info(f"Creating account for {values['username']}")

    with form.batch():
        form.set_value(username, "admin")
        form.set_value(password, "correct horse")
        form.set_value(confirm, "correct horse")
    await form.submit(create_account)

    form.set_value(username, "ada")
    await form.submit(create_account)
    await form.aclose()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(name)s: %(message)s')
    asyncio.run(main())
