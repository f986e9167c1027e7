"""Dynamic form schemas and the validators compiled from them.

A form schema is stored as JSON alongside each form definition. Fields are a
closed set of variants discriminated by ``type``; add a variant to support a
new kind of input.

Validation has two modes. Full mode is used when an event is submitted and
requires complete data. Partial mode is used for draft saves: ``required``
and ``minLength`` are skipped, but ``maxLength`` and ``pattern`` still apply
to any value that is supplied, an empty string included. Only a missing key
or ``None`` counts as absent. Drafts may be incomplete but not malformed.
"""

import re
from collections.abc import Mapping
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from formflow.errors import FormValidationError


class FieldBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, pattern=r"^\S+$")
    label: str = Field(min_length=1)
    required: bool = False
    description: str | None = None
    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)


class TextField(FieldBase):
    type: Literal["text"] = "text"
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, v: str | None) -> str | None:
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid pattern {v!r}: {e}") from e
        return v


class TextareaField(FieldBase):
    type: Literal["textarea"] = "textarea"
    rows: int = 3


FormField = Annotated[Union[TextField, TextareaField], Field(discriminator="type")]


class FormSchema(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    fields: list[FormField] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_field_names(self) -> "FormSchema":
        seen: set[str] = set()
        for f in self.fields:
            if f.name in seen:
                raise ValueError(f"duplicate field name {f.name!r}")
            seen.add(f.name)
        return self


class FieldError(BaseModel):
    field: str
    message: str


class ValidationResult(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    errors: list[FieldError] = Field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.success:
            raise FormValidationError(self.errors)


class FormValidator:
    """Validator compiled from a ``FormSchema``."""

    def __init__(self, schema: FormSchema, partial: bool = False) -> None:
        self.schema = schema
        self.partial = partial
        self._patterns = {
            f.name: re.compile(f.pattern)
            for f in schema.fields
            if isinstance(f, TextField) and f.pattern
        }

    def validate(self, data: Mapping[str, Any]) -> ValidationResult:
        """Check every schema field; keys the schema does not know are passed through."""
        errors = []
        for f in self.schema.fields:
            message = self._check(f, data.get(f.name))
            if message is not None:
                errors.append(FieldError(field=f.name, message=message))
        if errors:
            return ValidationResult(success=False, errors=errors)
        return ValidationResult(success=True, data=dict(data))

    def _check(self, f: TextField | TextareaField, value: Any) -> str | None:
        required = f.required and not self.partial
        if value is None:
            return f"{f.label} is required" if required else None
        if not isinstance(value, str):
            return f"{f.label} must be a string"
        if required and value == "":
            return f"{f.label} is required"
        if f.min_length is not None and not self.partial and len(value) < f.min_length:
            return f"{f.label} must be at least {f.min_length} characters long"
        if f.max_length is not None and len(value) > f.max_length:
            return f"{f.label} must be at most {f.max_length} characters long"
        pattern = self._patterns.get(f.name)
        if pattern is not None and pattern.search(value) is None:
            return f"{f.label} has invalid format"
        return None


def compile_schema(schema: FormSchema | Mapping[str, Any], partial: bool = False) -> FormValidator:
    if not isinstance(schema, FormSchema):
        schema = FormSchema.model_validate(schema)
    return FormValidator(schema, partial=partial)


def field_names(schema: FormSchema) -> list[str]:
    return [f.name for f in schema.fields]


def is_superset(data: Mapping[str, Any], schema: FormSchema) -> bool:
    """True when every key of ``data`` is a field of ``schema``.

    Compares names only: type, required and length changes are ignored.
    """
    return set(data).issubset(field_names(schema))


def initial_values(schema: FormSchema) -> dict[str, str]:
    """Empty value for every field, used to seed a blank form."""
    return {f.name: "" for f in schema.fields}
