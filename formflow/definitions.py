import logging
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from formflow.errors import NotFound
from formflow.machine import MachineConfig, Step, build_step_machine, required_states, state_names
from formflow.model import WorkflowDefinition
from formflow.postgres import DbFormDefinition, DbWorkflowDefinition
from formflow.validation import load_machine_config

logger = logging.getLogger(__name__)


class WorkflowDefinitionService:
    """Versioned workflow definitions.

    Definitions are immutable: editing a workflow stores a new row under the
    same name with the next version.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def _insert(
        self, s: AsyncSession, name: str, config: MachineConfig, created_by: str
    ) -> DbWorkflowDefinition:
        current_version = (
            await s.execute(
                select(func.max(DbWorkflowDefinition.version)).where(
                    DbWorkflowDefinition.name == name
                )
            )
        ).scalar()
        row = DbWorkflowDefinition(
            name=name,
            version=(current_version or 0) + 1,
            machine_config=config,
            states=state_names(config),
            required_states=required_states(config),
            created_by=created_by,
        )
        s.add(row)
        await s.flush()
        return row

    async def create(
        self,
        name: str,
        machine_config: MachineConfig | Mapping[str, Any],
        created_by: str = "system",
    ) -> WorkflowDefinition:
        """Store ``machine_config`` as the next version of workflow ``name``.

        Raises:
            InvalidConfig: the machine config is malformed.
        """
        config = load_machine_config(
            machine_config if isinstance(machine_config, MachineConfig) else dict(machine_config)
        )
        async with self._session_maker() as s:
            row = await self._insert(s, name, config, created_by)
            created = WorkflowDefinition.model_validate(row)
            await s.commit()
        logger.info("Created workflow definition %s version %s", name, created.version)
        return created

    async def create_from_steps(
        self, name: str, steps: list[Step], created_by: str = "system"
    ) -> WorkflowDefinition:
        """Create a linear workflow from ordered steps.

        Each step that references a form definition gets a copy of that
        schema as version 1 of the form for the step's state.
        """
        config = load_machine_config(build_step_machine(steps))
        async with self._session_maker() as s:
            row = await self._insert(s, name, config, created_by)
            for step in steps:
                if step.form_def_id is None:
                    continue
                existing = await s.get(DbFormDefinition, step.form_def_id)
                if existing is None:
                    logger.warning(
                        "Step %s references missing form definition %s, not cloned",
                        step.name,
                        step.form_def_id,
                    )
                    continue
                s.add(
                    DbFormDefinition(
                        workflow_def_id=row.id,
                        state=step.name,
                        version=1,
                        form_schema=existing.form_schema,
                        created_by=created_by,
                    )
                )
            created = WorkflowDefinition.model_validate(row)
            await s.commit()
        logger.info(
            "Created workflow definition %s version %s from %d steps",
            name,
            created.version,
            len(steps),
        )
        return created

    async def get(self, workflow_def_id: int) -> WorkflowDefinition:
        async with self._session_maker() as s:
            row = await s.get(DbWorkflowDefinition, workflow_def_id)
            if row is None:
                raise NotFound("Workflow definition", workflow_def_id)
            return WorkflowDefinition.model_validate(row)

    async def get_latest(self, name: str) -> WorkflowDefinition:
        async with self._session_maker() as s:
            row = (
                await s.execute(
                    select(DbWorkflowDefinition)
                    .where(DbWorkflowDefinition.name == name)
                    .order_by(DbWorkflowDefinition.version.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                raise NotFound("Workflow definition", name)
            return WorkflowDefinition.model_validate(row)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        async with self._session_maker() as s:
            rows = (
                await s.execute(
                    select(DbWorkflowDefinition).order_by(
                        DbWorkflowDefinition.name, DbWorkflowDefinition.version
                    )
                )
            ).scalars()
            return [WorkflowDefinition.model_validate(r) for r in rows]
