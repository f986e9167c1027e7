"""
Tests for formflow.resolver module (FormDefinitionResolver).
"""
import pytest
from sqlalchemy.exc import OperationalError

from formflow.errors import InvalidState, InvalidStates, MigrationError, NotFound
from formflow.forms import FormSchema
from formflow.model import MIGRATION_CREATED_BY
from formflow.resolver import FormDefinitionResolver
from formflow.tests.conftest import (
    EMAIL_SCHEMA,
    NAME_AND_SURNAME_SCHEMA,
    NAME_SCHEMA,
    TWO_STEP_CONFIG,
)


class TestCreateVersion:
    """Tests for FormDefinitionResolver.create_version."""

    async def test_versions_increment_per_state(self, services, linear_workflow):
        first = await services.forms.create_version(linear_workflow.id, "form1", NAME_SCHEMA)
        second = await services.forms.create_version(linear_workflow.id, "form1", EMAIL_SCHEMA)
        other = await services.forms.create_version(linear_workflow.id, "form2", NAME_SCHEMA)
        assert (first.version, second.version, other.version) == (1, 2, 1)
        assert isinstance(second.form_schema, FormSchema)
        assert second.form_schema.fields[0].name == "email"

    async def test_schema_round_trips(self, services, linear_workflow):
        created = await services.forms.create_version(
            linear_workflow.id, "form1", NAME_AND_SURNAME_SCHEMA, created_by="designer"
        )
        fetched = await services.forms.get(created.id)
        assert fetched.form_schema == created.form_schema
        assert fetched.created_by == "designer"

    async def test_unknown_workflow(self, services):
        with pytest.raises(NotFound):
            await services.forms.create_version(999, "form1", NAME_SCHEMA)

    async def test_undeclared_state(self, services, linear_workflow):
        with pytest.raises(InvalidState):
            await services.forms.create_version(linear_workflow.id, "nowhere", NAME_SCHEMA)

    async def test_list_versions(self, services, linear_workflow):
        await services.forms.create_version(linear_workflow.id, "form1", NAME_SCHEMA)
        await services.forms.create_version(linear_workflow.id, "form1", EMAIL_SCHEMA)
        versions = await services.forms.list_versions(linear_workflow.id, "form1")
        assert [v.version for v in versions] == [1, 2]


class TestMigration:
    """Tests for migrating saved data to a new form definition."""

    async def test_superset_schema_migrates(self, services, linear_workflow, linear_forms):
        """Every instance in the state gets its data copied as version 1."""
        first = await services.instances.create_instance(linear_workflow.id)
        second = await services.instances.create_instance(linear_workflow.id)
        v1 = linear_forms["form1"]
        await services.store.save_version(first.id, v1.id, {"firstName": "Ada"})
        await services.store.save_version(second.id, v1.id, {"firstName": "Grace"})

        v2 = await services.forms.create_version(
            linear_workflow.id, "form1", NAME_AND_SURNAME_SCHEMA
        )

        for instance, name in ((first, "Ada"), (second, "Grace")):
            versions = await services.store.list_versions(instance.id, v2.id)
            assert len(versions) == 1
            assert versions[0].version == 1
            assert versions[0].created_by == MIGRATION_CREATED_BY
            assert versions[0].data == {"firstName": name}
            assert versions[0].patch == []

        resolved = await services.store.resolve_current(first.id)
        assert resolved.form_definition.id == v2.id

    async def test_non_superset_schema_does_not_migrate(
        self, services, linear_workflow, linear_forms
    ):
        instance = await services.instances.create_instance(linear_workflow.id)
        await services.store.save_version(instance.id, linear_forms["form1"].id, {"firstName": "Ada"})

        v2 = await services.forms.create_version(linear_workflow.id, "form1", EMAIL_SCHEMA)

        assert await services.store.list_versions(instance.id, v2.id) == []
        resolved = await services.store.resolve_current(instance.id)
        assert resolved.form_definition.id == linear_forms["form1"].id

    async def test_instances_in_other_states_untouched(
        self, services, linear_workflow, linear_forms
    ):
        instance = await services.instances.create_instance(linear_workflow.id)
        await services.instances.send_event(
            instance.id, linear_forms["form1"].id, "NEXT", {"firstName": "Ada"}
        )

        v2 = await services.forms.create_version(
            linear_workflow.id, "form1", NAME_AND_SURNAME_SCHEMA
        )
        assert await services.store.list_versions(instance.id, v2.id) == []

    async def test_instances_without_data_skipped(self, services, linear_workflow, linear_forms):
        instance = await services.instances.create_instance(linear_workflow.id)
        v2 = await services.forms.create_version(
            linear_workflow.id, "form1", NAME_AND_SURNAME_SCHEMA
        )
        assert await services.store.list_versions(instance.id, v2.id) == []

    async def test_rerun_is_idempotent(self, services, linear_workflow, linear_forms):
        instance = await services.instances.create_instance(linear_workflow.id)
        await services.store.save_version(instance.id, linear_forms["form1"].id, {"firstName": "Ada"})
        v2 = await services.forms.create_version(
            linear_workflow.id, "form1", NAME_AND_SURNAME_SCHEMA
        )

        assert await services.forms.migrate_compatible_data(v2) == []
        assert len(await services.store.list_versions(instance.id, v2.id)) == 1

    async def test_migration_failure_keeps_definition(
        self, services, linear_workflow, linear_forms, monkeypatch
    ):
        """A failed migration surfaces as MigrationError carrying the created definition."""

        async def boom(self, form_definition):
            raise OperationalError("INSERT", {}, Exception("boom"))

        monkeypatch.setattr(FormDefinitionResolver, "migrate_compatible_data", boom)

        with pytest.raises(MigrationError) as exc_info:
            await services.forms.create_version(linear_workflow.id, "form1", EMAIL_SCHEMA)

        created = exc_info.value.form_definition
        assert created.version == 2
        assert exc_info.value.status_code == 500
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert (await services.forms.get(created.id)).id == created.id


class TestGetCurrentForDefinition:
    """Tests for FormDefinitionResolver.get_current_for_definition."""

    async def test_defaults_to_first_required_state(self, services, linear_workflow, linear_forms):
        current = await services.forms.get_current_for_definition(linear_workflow.id)
        assert current.id == linear_forms["form1"].id

    async def test_latest_version_for_state(self, services, linear_workflow, linear_forms):
        v2 = await services.forms.create_version(linear_workflow.id, "form2", EMAIL_SCHEMA)
        current = await services.forms.get_current_for_definition(linear_workflow.id, "form2")
        assert current.id == v2.id

    async def test_state_without_form(self, services):
        definition = await services.definitions.create("two-step", TWO_STEP_CONFIG)
        with pytest.raises(InvalidState) as exc_info:
            await services.forms.get_current_for_definition(definition.id, "form2")
        assert str(exc_info.value) == "Invalid State: form2"

    async def test_unknown_workflow(self, services):
        with pytest.raises(NotFound):
            await services.forms.get_current_for_definition(999)

    async def test_definition_without_states(self, services, test_session_maker):
        from formflow.machine import MachineConfig
        from formflow.postgres import DbWorkflowDefinition

        async with test_session_maker() as s:
            row = DbWorkflowDefinition(
                name="empty",
                version=1,
                machine_config=MachineConfig(),
                states=[],
                required_states=[],
            )
            s.add(row)
            await s.commit()
            definition_id = row.id

        with pytest.raises(InvalidStates):
            await services.forms.get_current_for_definition(definition_id)
