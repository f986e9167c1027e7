import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from formflow.errors import InvalidConfig, InvalidState, NoSchema, NotFound, PastCurrentState
from formflow.forms import FormValidator, compile_schema
from formflow.model import FormDataVersion, FormDefinition, ResolvedForm
from formflow.patch import Operation, apply_delta, compute_delta
from formflow.postgres import (
    DbFormDataVersion,
    DbFormDefinition,
    DbWorkflowDefinition,
    DbWorkflowInstance,
)

logger = logging.getLogger(__name__)


async def latest_saved_for_state(
    s: AsyncSession,
    workflow_instance_id: int,
    workflow_def_id: int,
    state: str,
    before_form_version: int | None = None,
) -> tuple[DbFormDataVersion, DbFormDefinition] | None:
    """Most recently saved data of an instance across every form definition of a state.

    Ordered by ``created_at``, then data version, then form definition
    version. ``before_form_version`` restricts the search to form
    definitions older than that version.
    """
    q = (
        select(DbFormDataVersion, DbFormDefinition)
        .join(DbFormDefinition, DbFormDataVersion.form_def_id == DbFormDefinition.id)
        .where(
            DbFormDataVersion.workflow_instance_id == workflow_instance_id,
            DbFormDefinition.workflow_def_id == workflow_def_id,
            DbFormDefinition.state == state,
        )
        .order_by(
            DbFormDataVersion.created_at.desc(),
            DbFormDataVersion.version.desc(),
            DbFormDefinition.version.desc(),
        )
        .limit(1)
    )
    if before_form_version is not None:
        q = q.where(DbFormDefinition.version < before_form_version)
    row = (await s.execute(q)).first()
    if row is None:
        return None
    return row[0], row[1]


class PatchStore:
    """Append-only store of form data versions, each kept as full data plus a JSON Patch.

    A save that produces the same data as the latest version is a no-op.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        default_created_by: str = "user",
    ) -> None:
        self._session_maker = session_maker
        self._default_created_by = default_created_by

    async def _latest(
        self, s: AsyncSession, workflow_instance_id: int, form_def_id: int
    ) -> DbFormDataVersion | None:
        return (
            await s.execute(
                select(DbFormDataVersion)
                .where(
                    DbFormDataVersion.workflow_instance_id == workflow_instance_id,
                    DbFormDataVersion.form_def_id == form_def_id,
                )
                .order_by(DbFormDataVersion.version.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

    async def latest_version(
        self, workflow_instance_id: int, form_def_id: int
    ) -> FormDataVersion | None:
        async with self._session_maker() as s:
            row = await self._latest(s, workflow_instance_id, form_def_id)
            return FormDataVersion.model_validate(row) if row is not None else None

    async def save_version(
        self,
        workflow_instance_id: int,
        form_def_id: int,
        new_data: Mapping[str, Any],
        validator: FormValidator | None = None,
        created_by: str | None = None,
    ) -> FormDataVersion:
        """Store ``new_data`` as the next version for the (instance, form definition) pair.

        Data is validated in partial mode first; nothing is written when it is
        invalid. When no ``validator`` is given, the form definition's schema
        is compiled in partial mode.

        Raises:
            NotFound: the instance or the form definition does not exist.
            FormValidationError: the data is malformed.
        """
        new_data = dict(new_data)
        async with self._session_maker() as s:
            form_def = await s.get(DbFormDefinition, form_def_id)
            if form_def is None:
                raise NotFound("Form definition", form_def_id)
            if await s.get(DbWorkflowInstance, workflow_instance_id) is None:
                raise NotFound("Workflow instance", workflow_instance_id)

            if validator is None:
                validator = compile_schema(form_def.form_schema, partial=True)
            validator.validate(new_data).raise_for_errors()

            existing = await self._latest(s, workflow_instance_id, form_def_id)
            if existing is not None and existing.data == new_data:
                logger.debug(
                    "Data for instance %s form %s unchanged, keeping version %s",
                    workflow_instance_id,
                    form_def_id,
                    existing.version,
                )
                return FormDataVersion.model_validate(existing)

            row = DbFormDataVersion(
                workflow_instance_id=workflow_instance_id,
                form_def_id=form_def_id,
                version=existing.version + 1 if existing is not None else 1,
                data=new_data,
                patch=compute_delta(existing.data, new_data) if existing is not None else [],
                created_by=created_by or self._default_created_by,
            )
            s.add(row)
            await s.flush()
            saved = FormDataVersion.model_validate(row)
            await s.commit()

        logger.info(
            "Saved version %s of form %s data for instance %s (%d patch operations)",
            saved.version,
            form_def_id,
            workflow_instance_id,
            len(saved.patch),
        )
        return saved

    async def list_versions(
        self, workflow_instance_id: int, form_def_id: int | None = None
    ) -> list[FormDataVersion]:
        q = select(DbFormDataVersion).where(
            DbFormDataVersion.workflow_instance_id == workflow_instance_id
        )
        if form_def_id is not None:
            q = q.where(DbFormDataVersion.form_def_id == form_def_id)
        q = q.order_by(
            DbFormDataVersion.form_def_id, DbFormDataVersion.version
        )
        async with self._session_maker() as s:
            rows = (await s.execute(q)).scalars().all()
            return [FormDataVersion.model_validate(r) for r in rows]

    async def materialize(
        self, workflow_instance_id: int, form_def_id: int, version: int
    ) -> dict[str, Any]:
        """Rebuild the data of ``version`` by replaying the patch chain from version 1."""
        versions = [
            v
            for v in await self.list_versions(workflow_instance_id, form_def_id)
            if v.version <= version
        ]
        if not versions or versions[-1].version != version:
            raise NotFound(
                "Form data version",
                version,
                workflow_instance_id=workflow_instance_id,
                form_def_id=form_def_id,
            )
        doc = dict(versions[0].data)
        for v in versions[1:]:
            doc = apply_delta(doc, v.patch)
        return doc

    async def compare_versions(
        self, workflow_instance_id: int, form_def_id: int, version1: int, version2: int
    ) -> list[Operation]:
        """Patch turning the data of ``version1`` into the data of ``version2``."""
        by_version = {
            v.version: v for v in await self.list_versions(workflow_instance_id, form_def_id)
        }
        for version in (version1, version2):
            if version not in by_version:
                raise NotFound(
                    "Form data version",
                    version,
                    workflow_instance_id=workflow_instance_id,
                    form_def_id=form_def_id,
                )
        return compute_delta(by_version[version1].data, by_version[version2].data)

    async def resolve_current(
        self, workflow_instance_id: int, state: str | None = None
    ) -> ResolvedForm:
        """Resolve the form definition and latest data for an instance at a state.

        ``state`` defaults to the instance's current state. An instance may
        look back at earlier states or at its current state, never ahead.

        The data picked is the most recently saved version across every form
        definition version of the state, so data saved against an older form
        revision outranks a newer revision nothing was saved against yet.

        Raises:
            NotFound: the instance does not exist.
            InvalidState: ``state`` is not declared by the workflow definition.
            PastCurrentState: ``state`` comes after the current state.
            NoSchema: no form definition exists for the state.
        """
        async with self._session_maker() as s:
            row = (
                await s.execute(
                    select(DbWorkflowInstance, DbWorkflowDefinition)
                    .join(
                        DbWorkflowDefinition,
                        DbWorkflowInstance.workflow_def_id == DbWorkflowDefinition.id,
                    )
                    .where(DbWorkflowInstance.id == workflow_instance_id)
                )
            ).first()
            if row is None:
                raise NotFound("Workflow instance", workflow_instance_id)
            instance, definition = row[0], row[1]

            current_state = instance.current_state
            state = state if state is not None else current_state
            states = list(definition.states)
            if state not in states:
                raise InvalidState(
                    f"State {state!r} is not declared by workflow definition {definition.id}",
                    state=state,
                    workflow_instance_id=workflow_instance_id,
                )
            if current_state not in states:
                raise InvalidConfig(
                    f"Current state {current_state!r} of instance {instance.id} "
                    f"is not declared by workflow definition {definition.id}",
                    workflow_instance_id=workflow_instance_id,
                )
            if states.index(state) > states.index(current_state):
                raise PastCurrentState(
                    state, current_state, workflow_instance_id=workflow_instance_id
                )

            latest = await latest_saved_for_state(s, instance.id, definition.id, state)
            if latest is not None:
                data_row, form_row = latest
                logger.debug(
                    "Instance %s state %s resolved to form %s data version %s",
                    instance.id,
                    state,
                    form_row.id,
                    data_row.version,
                )
                return ResolvedForm(
                    workflow_instance_id=instance.id,
                    workflow_def_id=definition.id,
                    state=state,
                    form_definition=FormDefinition.model_validate(form_row),
                    data_version=FormDataVersion.model_validate(data_row),
                )

            form_row = (
                await s.execute(
                    select(DbFormDefinition)
                    .where(
                        DbFormDefinition.workflow_def_id == definition.id,
                        DbFormDefinition.state == state,
                    )
                    .order_by(DbFormDefinition.version.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if form_row is None:
                raise NoSchema(definition.id, state, workflow_instance_id=workflow_instance_id)
            return ResolvedForm(
                workflow_instance_id=instance.id,
                workflow_def_id=definition.id,
                state=state,
                form_definition=FormDefinition.model_validate(form_row),
            )
