import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from formflow.errors import InvalidConfig, InvalidData, InvalidTransition, NoProgress, NotFound
from formflow.forms import compile_schema
from formflow.machine import initial_state, is_terminal, next_events, transition
from formflow.model import WorkflowInstance
from formflow.postgres import (
    DbFormDefinition,
    DbWorkflowDefinition,
    DbWorkflowInstance,
    utcnow,
)
from formflow.store import PatchStore

logger = logging.getLogger(__name__)


class WorkflowInstanceService:
    """Runs workflow instances through their definition's transition table.

    ``send_event`` saves the submitted form data before anything else and
    never rolls that save back: a rejected event does not lose user input.
    Concurrent events on one instance are not serialized here.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: PatchStore,
    ) -> None:
        self._session_maker = session_maker
        self._store = store

    async def create_instance(self, workflow_def_id: int) -> WorkflowInstance:
        """Start an instance in the definition's initial state.

        Raises:
            NotFound: the workflow definition does not exist.
            InvalidConfig: no initial state can be determined.
        """
        async with self._session_maker() as s:
            definition = await s.get(DbWorkflowDefinition, workflow_def_id)
            if definition is None:
                raise NotFound("Workflow definition", workflow_def_id)
            try:
                state = initial_state(definition.machine_config)
            except InvalidConfig as e:
                raise InvalidConfig(str(e), errors=e.errors, workflow_def_id=workflow_def_id) from e
            row = DbWorkflowInstance(
                workflow_def_id=workflow_def_id,
                current_state=state,
                status="completed" if is_terminal(definition.machine_config, state) else "active",
            )
            s.add(row)
            await s.flush()
            created = WorkflowInstance.model_validate(row)
            await s.commit()
        logger.info(
            "Created workflow instance %s of definition %s in state %s",
            created.id,
            workflow_def_id,
            created.current_state,
        )
        return created

    async def get(self, instance_id: int) -> WorkflowInstance:
        async with self._session_maker() as s:
            row = await s.get(DbWorkflowInstance, instance_id)
            if row is None:
                raise NotFound("Workflow instance", instance_id)
            return WorkflowInstance.model_validate(row)

    async def list_instances(self, workflow_def_id: int | None = None) -> list[WorkflowInstance]:
        q = select(DbWorkflowInstance).order_by(DbWorkflowInstance.created_at.desc())
        if workflow_def_id is not None:
            q = q.where(DbWorkflowInstance.workflow_def_id == workflow_def_id)
        async with self._session_maker() as s:
            rows = (await s.execute(q)).scalars()
            return [WorkflowInstance.model_validate(r) for r in rows]

    async def next_events(self, instance_id: int) -> list[str]:
        """Events that can be sent to the instance right now; empty once it is terminal."""
        async with self._session_maker() as s:
            instance = await s.get(DbWorkflowInstance, instance_id)
            if instance is None:
                raise NotFound("Workflow instance", instance_id)
            definition = await s.get(DbWorkflowDefinition, instance.workflow_def_id)
            if definition is None:
                raise NotFound("Workflow definition", instance.workflow_def_id)
            return next_events(definition.machine_config, instance.current_state)

    async def send_event(
        self,
        instance_id: int,
        form_def_id: int,
        event: str,
        form_data: Mapping[str, Any],
        created_by: str | None = None,
    ) -> WorkflowInstance:
        """Save submitted form data, then move the instance with ``event``.

        Steps run in order: save data (partial validation), reload the
        instance, validate the data in full, run the transition, check the
        state changed, persist the new state.

        Raises:
            NotFound: the instance or form definition does not exist.
            FormValidationError: the data is malformed; nothing was saved.
            InvalidData: the data is incomplete; it was saved, no transition ran.
            InvalidTransition: the event is not valid from the current state.
            NoProgress: the event leaves the instance in the same state.
        """
        await self._store.save_version(instance_id, form_def_id, form_data, created_by=created_by)

        async with self._session_maker() as s:
            instance = await s.get(DbWorkflowInstance, instance_id)
            if instance is None:
                raise NotFound("Workflow instance", instance_id)
            definition = await s.get(DbWorkflowDefinition, instance.workflow_def_id)
            if definition is None:
                raise NotFound("Workflow definition", instance.workflow_def_id)
            form_def = await s.get(DbFormDefinition, form_def_id)
            if form_def is None:
                raise NotFound("Form definition", form_def_id)

            result = compile_schema(form_def.form_schema).validate(form_data)
            if not result.success:
                logger.warning(
                    "Rejected event %s for instance %s: %d invalid field(s)",
                    event,
                    instance_id,
                    len(result.errors),
                )
                raise InvalidData(result.errors, workflow_instance_id=instance_id, event=event)

            previous_state = instance.current_state
            config = definition.machine_config
            try:
                new_state = transition(config, previous_state, event)
            except InvalidTransition as e:
                logger.warning(
                    "Rejected event %s for instance %s in state %s: %s",
                    event,
                    instance_id,
                    previous_state,
                    e,
                )
                raise InvalidTransition(
                    f"Cannot apply event {event!r} to instance {instance_id} "
                    f"in state {previous_state!r}: {e}",
                    state=previous_state,
                    event=event,
                    workflow_instance_id=instance_id,
                ) from e

            if new_state == previous_state:
                raise NoProgress(previous_state, event, workflow_instance_id=instance_id)

            instance.current_state = new_state
            instance.updated_at = utcnow()
            instance.status = "completed" if is_terminal(config, new_state) else "active"
            await s.flush()
            updated = WorkflowInstance.model_validate(instance)
            await s.commit()

        logger.info(
            "Instance %s moved from %s to %s on %s",
            instance_id,
            previous_state,
            new_state,
            event,
        )
        return updated
