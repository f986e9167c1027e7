"""Records returned by formflow services.

These are detached snapshots of database rows; build them with
``Model.model_validate(row)``.
"""

import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from formflow.forms import FormSchema
from formflow.machine import MachineConfig

MIGRATION_CREATED_BY = "system-migration"


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class WorkflowDefinition(Record):
    id: int
    name: str
    version: int
    machine_config: MachineConfig
    states: list[str] = Field(default_factory=list)
    required_states: list[str] = Field(default_factory=list)
    created_at: datetime.datetime | None = None
    created_by: str = "system"


class FormDefinition(Record):
    id: int
    workflow_def_id: int
    state: str
    version: int
    form_schema: FormSchema
    created_at: datetime.datetime | None = None
    created_by: str = "system"


class WorkflowInstance(Record):
    id: int
    workflow_def_id: int
    current_state: str
    status: Literal["active", "completed"] = "active"
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None


class FormDataVersion(Record):
    id: int
    workflow_instance_id: int
    form_def_id: int
    version: int
    data: dict[str, Any]
    patch: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime.datetime | None = None
    created_by: str


class ResolvedForm(Record):
    """The form definition and data snapshot that apply to an instance at a state.

    ``data`` is None when nothing has been saved for that state yet; the form
    definition is then the newest one.
    """

    workflow_instance_id: int
    workflow_def_id: int
    state: str
    form_definition: FormDefinition
    data_version: FormDataVersion | None = None

    @property
    def data(self) -> dict[str, Any] | None:
        return self.data_version.data if self.data_version is not None else None
