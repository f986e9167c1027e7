"""Wiring for formflow services.

Creates the database engine, session maker and tables, and every service
bound to them.

Example:
    async with create_formflow_services() as resources:
        definition = await resources.definitions.create("onboarding", machine_config)
        form = await resources.forms.create_version(definition.id, "form1", schema)
        instance = await resources.instances.create_instance(definition.id)
        await resources.instances.send_event(instance.id, form.id, "NEXT", data)
"""
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from formflow.config import DEFAULT_DATABASE_URL, FormflowConfig
from formflow.definitions import WorkflowDefinitionService
from formflow.instances import WorkflowInstanceService
from formflow.postgres import Base
from formflow.resolver import FormDefinitionResolver
from formflow.store import PatchStore


@dataclass
class FormflowResources:
    """Resources created by create_formflow_services."""
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    definitions: WorkflowDefinitionService
    forms: FormDefinitionResolver
    store: PatchStore
    instances: WorkflowInstanceService


def make_services(
    session_maker: async_sessionmaker[AsyncSession],
    engine: AsyncEngine,
    default_created_by: str = "user",
) -> FormflowResources:
    store = PatchStore(session_maker, default_created_by=default_created_by)
    return FormflowResources(
        engine=engine,
        session_maker=session_maker,
        definitions=WorkflowDefinitionService(session_maker),
        forms=FormDefinitionResolver(session_maker),
        store=store,
        instances=WorkflowInstanceService(session_maker, store),
    )


@asynccontextmanager
async def create_formflow_services(
    database_url: str | None = None,
    create_tables: bool | None = None,
    engine_echo: bool | None = None,
    config: FormflowConfig | None = None,
):
    """Create the engine, tables and services; dispose the engine on exit.

    Args:
        database_url: Database connection string (defaults to ``config``,
            then env var DATABASE_URL)
        create_tables: Whether to create database tables (default: True)
        engine_echo: Whether to echo SQL statements (default: False)
        config: Optional FormflowConfig supplying defaults for the above

    Yields:
        FormflowResources: Container with the engine, session maker and services
    """
    config = config or FormflowConfig(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    )
    database_url = database_url or config.database_url
    if create_tables is None:
        create_tables = config.create_tables
    if engine_echo is None:
        engine_echo = config.engine_echo

    engine = create_async_engine(database_url, echo=engine_echo)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)

    try:
        if create_tables:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        yield make_services(
            session_maker, engine, default_created_by=config.default_created_by
        )
    finally:
        await engine.dispose()
