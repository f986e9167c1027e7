"""Error hierarchy for formflow.

Every error carries the identifiers needed to render a precise message
(``context``) and a ``status_code`` hint that a route layer can map to an
HTTP response.

Usage::

    from formflow.errors import FormflowError, NotFound

    try:
        await instances.send_event(instance_id, form_def_id, "NEXT", data)
    except NotFound as e:
        return 404, str(e)
    except FormflowError as e:
        return e.status_code, str(e)
"""

from typing import Any


class FormflowError(Exception):
    """Base exception for all formflow errors."""

    status_code: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)


class NotFound(FormflowError):
    """A workflow definition, instance or form definition does not exist."""

    status_code = 404

    def __init__(self, entity: str, id: Any, **context: Any) -> None:
        self.entity = entity
        self.id = id
        super().__init__(f"{entity} {id} could not be found", id=id, **context)


class InvalidConfig(FormflowError):
    """Malformed machine config, e.g. no resolvable initial state."""

    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any) -> None:
        self.errors = errors or [message]
        super().__init__(message, **context)


class InvalidState(FormflowError):
    """A state name is not declared, or has no form definition."""

    status_code = 400

    def __init__(self, message: str, state: str | None = None, **context: Any) -> None:
        self.state = state
        super().__init__(message, state=state, **context)


class InvalidStates(FormflowError):
    """The workflow definition declares no states at all."""

    status_code = 404


class PastCurrentState(FormflowError):
    """A state ahead of the instance's current state was requested."""

    status_code = 400

    def __init__(self, state: str, current_state: str, **context: Any) -> None:
        self.state = state
        self.current_state = current_state
        super().__init__(
            f"State {state!r} is ahead of the current state {current_state!r}",
            state=state,
            current_state=current_state,
            **context,
        )


class NoSchema(FormflowError):
    """No form definition exists for a (workflow definition, state) pair."""

    status_code = 404

    def __init__(self, workflow_def_id: int, state: str, **context: Any) -> None:
        self.workflow_def_id = workflow_def_id
        self.state = state
        super().__init__(
            f"No form found for state {state!r} of workflow definition {workflow_def_id}",
            workflow_def_id=workflow_def_id,
            state=state,
            **context,
        )


class InvalidTransition(FormflowError):
    """The event is not valid from the current state."""

    status_code = 400

    def __init__(
        self, message: str, state: str | None = None, event: str | None = None, **context: Any
    ) -> None:
        self.state = state
        self.event = event
        super().__init__(message, state=state, event=event, **context)


class NoProgress(FormflowError):
    """A transition resolved to the state the instance was already in."""

    status_code = 400

    def __init__(self, state: str, event: str, **context: Any) -> None:
        self.state = state
        self.event = event
        super().__init__(
            f"The workflow did not progress forward: event {event!r} kept the instance in {state!r}",
            state=state,
            event=event,
            **context,
        )


class FormValidationError(FormflowError):
    """Aggregated field-level validation errors."""

    status_code = 400

    def __init__(self, errors: list[Any], message: str | None = None, **context: Any) -> None:
        # errors is a list of formflow.forms.FieldError
        self.errors = list(errors)
        if message is None:
            message = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(message, **context)

    def field_errors(self) -> dict[str, list[str]]:
        """Group messages by field name, for inline rendering."""
        grouped: dict[str, list[str]] = {}
        for e in self.errors:
            grouped.setdefault(e.field, []).append(e.message)
        return grouped


class InvalidData(FormValidationError):
    """Submitted data is not complete, schema-valid data for an event."""

    def __init__(self, errors: list[Any], **context: Any) -> None:
        detail = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(errors, message=f"Invalid data provided: {detail}", **context)


class InvalidPatch(FormflowError):
    """A patch cannot be applied to a document."""

    status_code = 400


class MigrationError(FormflowError):
    """The form definition was created but migrating saved data failed.

    ``form_definition`` is the created (and committed) definition so that
    operators can reconcile by re-running the migration.
    """

    status_code = 500

    def __init__(self, form_definition: Any, cause: BaseException) -> None:
        self.form_definition = form_definition
        super().__init__(
            f"Form version created but data migration failed: {cause}",
            form_def_id=getattr(form_definition, "id", None),
            state=getattr(form_definition, "state", None),
        )
