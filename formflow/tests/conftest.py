"""
Pytest configuration and shared fixtures for formflow tests.

Storage tests run against an in-memory SQLite database (aiosqlite). The
StaticPool keeps a single connection so every session sees the same
database.
"""

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from formflow.model import FormDefinition, WorkflowDefinition, WorkflowInstance
from formflow.postgres import Base
from formflow.setup import FormflowResources, make_services

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Machine configs and schemas shared by tests
LINEAR_CONFIG = {
    "id": "linear",
    "initial": "form1",
    "states": {
        "form1": {"on": {"NEXT": "form2", "SAVE": "form1"}},
        "form2": {"on": {"NEXT": "form3", "BACK": "form1"}},
        "form3": {"on": {"BACK": "form2"}},
    },
}

TWO_STEP_CONFIG = {
    "initial": "form1",
    "states": {
        "form1": {"on": {"NEXT": "form2"}},
        "form2": {"type": "final"},
    },
}

NESTED_CONFIG = {
    "id": "review",
    "initial": "draft",
    "states": {
        "draft": {"on": {"SUBMIT": "review"}},
        "review": {
            "initial": "legal",
            "on": {"CANCEL": "draft"},
            "states": {
                "legal": {"on": {"APPROVE": "market"}},
                "market": {
                    "initial": "pending",
                    "states": {
                        "pending": {"on": {"APPROVE": "#done", "REJECT": "#review.legal"}},
                    },
                },
            },
        },
        "done": {"type": "final"},
    },
}

NAME_SCHEMA = {
    "title": "Applicant",
    "fields": [
        {"name": "firstName", "label": "First name", "type": "text", "required": True},
    ],
}

NAME_AND_SURNAME_SCHEMA = {
    "title": "Applicant",
    "fields": [
        {"name": "firstName", "label": "First name", "type": "text", "required": True},
        {"name": "lastName", "label": "Last name", "type": "text"},
    ],
}

EMAIL_SCHEMA = {
    "title": "Contact",
    "fields": [
        {
            "name": "email",
            "label": "Email",
            "type": "text",
            "required": True,
            "pattern": r"^[^@\s]+@[^@\s]+$",
        },
    ],
}


# Database fixtures
@pytest.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory database engine and recreate tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def test_session_maker(
    test_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create a test session maker."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def services(
    test_engine: AsyncEngine, test_session_maker: async_sessionmaker[AsyncSession]
) -> FormflowResources:
    """All services bound to the test database."""
    return make_services(test_session_maker, test_engine)


# Workflow fixtures
@pytest.fixture
async def linear_workflow(services: FormflowResources) -> WorkflowDefinition:
    """Linear form1 -> form2 -> form3 workflow."""
    return await services.definitions.create("linear", LINEAR_CONFIG)


@pytest.fixture
async def linear_forms(
    services: FormflowResources, linear_workflow: WorkflowDefinition
) -> dict[str, FormDefinition]:
    """One form definition per state of the linear workflow."""
    return {
        state: await services.forms.create_version(linear_workflow.id, state, NAME_SCHEMA)
        for state in ("form1", "form2", "form3")
    }


@pytest.fixture
async def two_step_workflow(services: FormflowResources) -> WorkflowDefinition:
    """form1 -> form2 (final) workflow."""
    return await services.definitions.create("two-step", TWO_STEP_CONFIG)


@pytest.fixture
async def two_step_form(
    services: FormflowResources, two_step_workflow: WorkflowDefinition
) -> FormDefinition:
    """Form for form1 with a required firstName."""
    return await services.forms.create_version(two_step_workflow.id, "form1", NAME_SCHEMA)


@pytest.fixture
async def two_step_instance(
    services: FormflowResources,
    two_step_workflow: WorkflowDefinition,
    two_step_form: FormDefinition,
) -> WorkflowInstance:
    return await services.instances.create_instance(two_step_workflow.id)
