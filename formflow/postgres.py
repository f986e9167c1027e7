from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import TypeAdapter
from sqlalchemy import (
    JSON,
    DateTime,
    Dialect,
    ForeignKey,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.schema import Index

from formflow.forms import FormSchema
from formflow.machine import MachineConfig

ModelT = TypeVar("ModelT")

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PydanticType(TypeDecorator[ModelT]):
    """SQLAlchemy type for storing Pydantic models (or any type a TypeAdapter accepts) as JSON"""

    cache_ok = True
    impl = JSON

    def __init__(self, pydantic_type: Any) -> None:
        super().__init__()
        self._pydantic_type = pydantic_type
        self._adapter = TypeAdapter(pydantic_type)

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: ModelT | None, _dialect: Dialect) -> Any:
        if value is None:
            return None
        return self._adapter.dump_python(value, mode="json", by_alias=True)

    def process_result_value(self, value: Any, _dialect: Dialect) -> ModelT | None:
        if value is None:
            return None
        return self._adapter.validate_python(value)


Base = declarative_base()


class DbWorkflowDefinition(Base):
    __tablename__ = "workflow_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    machine_config: Mapped[MachineConfig] = mapped_column(
        PydanticType(MachineConfig), nullable=False
    )
    # Derived from machine_config when the row is created; rows are never updated
    states: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    required_states: Mapped[list[str]] = mapped_column(
        JSONDocument, nullable=False, default=list
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    created_by: Mapped[str] = mapped_column(String(256), nullable=False, default="system")

    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_workflow_definition_name_version"),
    )


class DbFormDefinition(Base):
    __tablename__ = "form_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_def_id: Mapped[int] = mapped_column(
        ForeignKey("workflow_definitions.id"), nullable=False
    )
    state: Mapped[str] = mapped_column(String(256), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    # "schema" clashes with pydantic BaseModel.schema; the column name stays "schema"
    form_schema: Mapped[FormSchema] = mapped_column(
        "schema", PydanticType(FormSchema), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    created_by: Mapped[str] = mapped_column(String(256), nullable=False, default="system")

    __table_args__ = (
        UniqueConstraint(
            "workflow_def_id", "state", "version", name="uq_form_definition_state_version"
        ),
    )


class DbWorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_def_id: Mapped[int] = mapped_column(
        ForeignKey("workflow_definitions.id"), nullable=False
    )
    current_state: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, completed
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_workflow_instance_def_state", "workflow_def_id", "current_state"),
    )


class DbFormDataVersion(Base):
    __tablename__ = "form_data_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_instance_id: Mapped[int] = mapped_column(
        ForeignKey("workflow_instances.id"), nullable=False
    )
    form_def_id: Mapped[int] = mapped_column(
        ForeignKey("form_definitions.id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    # JSON Patch from the previous version's data; [] for version 1
    patch: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONDocument, nullable=False, default=list
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    created_by: Mapped[str] = mapped_column(String(256), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "workflow_instance_id",
            "form_def_id",
            "version",
            name="uq_form_data_version_instance_form_version",
        ),
        Index("idx_form_data_version_instance", "workflow_instance_id", "created_at"),
    )
