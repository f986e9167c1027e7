import logging
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from formflow.errors import InvalidState, InvalidStates, MigrationError, NotFound
from formflow.forms import FormSchema, is_superset
from formflow.model import MIGRATION_CREATED_BY, FormDataVersion, FormDefinition
from formflow.postgres import (
    DbFormDataVersion,
    DbFormDefinition,
    DbWorkflowDefinition,
    DbWorkflowInstance,
)
from formflow.store import latest_saved_for_state

logger = logging.getLogger(__name__)


class FormDefinitionResolver:
    """Creates form definition versions and resolves the current one for a state.

    Creating a version also migrates saved data of instances sitting in that
    state, when the new schema still has every field the data uses.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get(self, form_def_id: int) -> FormDefinition:
        async with self._session_maker() as s:
            row = await s.get(DbFormDefinition, form_def_id)
            if row is None:
                raise NotFound("Form definition", form_def_id)
            return FormDefinition.model_validate(row)

    async def list_versions(self, workflow_def_id: int, state: str) -> list[FormDefinition]:
        async with self._session_maker() as s:
            rows = (
                await s.execute(
                    select(DbFormDefinition)
                    .where(
                        DbFormDefinition.workflow_def_id == workflow_def_id,
                        DbFormDefinition.state == state,
                    )
                    .order_by(DbFormDefinition.version)
                )
            ).scalars()
            return [FormDefinition.model_validate(r) for r in rows]

    async def create_version(
        self,
        workflow_def_id: int,
        state: str,
        schema: FormSchema | Mapping[str, Any],
        created_by: str = "system",
    ) -> FormDefinition:
        """Store the next form definition version for a state and migrate compatible data.

        The new definition is committed before migration runs and is kept
        even when migration fails.

        Raises:
            NotFound: the workflow definition does not exist.
            InvalidState: the state is not declared by the workflow definition.
            MigrationError: the definition was created, migrating data failed.
        """
        if not isinstance(schema, FormSchema):
            schema = FormSchema.model_validate(schema)

        async with self._session_maker() as s:
            definition = await s.get(DbWorkflowDefinition, workflow_def_id)
            if definition is None:
                raise NotFound("Workflow definition", workflow_def_id)
            if state not in definition.states:
                raise InvalidState(
                    f"State {state!r} is not declared by workflow definition {workflow_def_id}",
                    state=state,
                    workflow_def_id=workflow_def_id,
                )
            current_version = (
                await s.execute(
                    select(func.max(DbFormDefinition.version)).where(
                        DbFormDefinition.workflow_def_id == workflow_def_id,
                        DbFormDefinition.state == state,
                    )
                )
            ).scalar()
            row = DbFormDefinition(
                workflow_def_id=workflow_def_id,
                state=state,
                version=(current_version or 0) + 1,
                form_schema=schema,
                created_by=created_by,
            )
            s.add(row)
            await s.flush()
            created = FormDefinition.model_validate(row)
            await s.commit()

        logger.info(
            "Created form definition %s (version %s) for state %s of workflow definition %s",
            created.id,
            created.version,
            state,
            workflow_def_id,
        )

        try:
            await self.migrate_compatible_data(created)
        except SQLAlchemyError as e:
            logger.exception(
                "Failed to migrate form data versions to form definition %s", created.id
            )
            raise MigrationError(created, e) from e
        return created

    async def migrate_compatible_data(
        self, form_definition: FormDefinition
    ) -> list[FormDataVersion]:
        """Carry saved data forward to ``form_definition`` for instances in its state.

        For each instance of the workflow definition sitting in the state, the
        latest data saved under an older form definition of that state is
        copied as version 1 under the new definition, provided its field
        names are a subset of the new schema's. Instances that already have
        data under the new definition are skipped, so this can be re-run to
        reconcile after a ``MigrationError``.
        """
        migrated: list[FormDataVersion] = []
        async with self._session_maker() as s:
            instances = (
                await s.execute(
                    select(DbWorkflowInstance).where(
                        DbWorkflowInstance.workflow_def_id == form_definition.workflow_def_id,
                        DbWorkflowInstance.current_state == form_definition.state,
                    )
                )
            ).scalars().all()

            for instance in instances:
                already = (
                    await s.execute(
                        select(DbFormDataVersion.id)
                        .where(
                            DbFormDataVersion.workflow_instance_id == instance.id,
                            DbFormDataVersion.form_def_id == form_definition.id,
                        )
                        .limit(1)
                    )
                ).first()
                if already is not None:
                    continue

                latest = await latest_saved_for_state(
                    s,
                    instance.id,
                    form_definition.workflow_def_id,
                    form_definition.state,
                    before_form_version=form_definition.version,
                )
                if latest is None:
                    continue
                old_data = latest[0].data
                if not is_superset(old_data, form_definition.form_schema):
                    logger.debug(
                        "Instance %s keeps form %s data: fields %s are not all in the new schema",
                        instance.id,
                        latest[1].id,
                        sorted(old_data),
                    )
                    continue

                row = DbFormDataVersion(
                    workflow_instance_id=instance.id,
                    form_def_id=form_definition.id,
                    version=1,
                    data=dict(old_data),
                    patch=[],
                    created_by=MIGRATION_CREATED_BY,
                )
                s.add(row)
                await s.flush()
                migrated.append(FormDataVersion.model_validate(row))

            await s.commit()

        if migrated:
            logger.info(
                "Migrated data of %d instance(s) to form definition %s",
                len(migrated),
                form_definition.id,
            )
        return migrated

    async def get_current_for_definition(
        self, workflow_def_id: int, state: str | None = None
    ) -> FormDefinition:
        """Latest form definition for ``state``, defaulting to the first required state.

        Raises:
            NotFound: the workflow definition does not exist.
            InvalidStates: the workflow definition declares no states.
            InvalidState: no form definition exists for the state.
        """
        async with self._session_maker() as s:
            definition = await s.get(DbWorkflowDefinition, workflow_def_id)
            if definition is None:
                raise NotFound("Workflow definition", workflow_def_id)
            if not definition.states:
                raise InvalidStates(
                    f"Invalid States: {definition.states}", workflow_def_id=workflow_def_id
                )
            if not state:
                candidates = definition.required_states or definition.states
                state = candidates[0]
            row = (
                await s.execute(
                    select(DbFormDefinition)
                    .where(
                        DbFormDefinition.workflow_def_id == workflow_def_id,
                        DbFormDefinition.state == state,
                    )
                    .order_by(DbFormDefinition.version.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                raise InvalidState(
                    f"Invalid State: {state}", state=state, workflow_def_id=workflow_def_id
                )
            return FormDefinition.model_validate(row)
