"""
formflow - versioned forms driven by workflow state machines

Workflow definitions are declarative transition tables; each state carries a
versioned form schema, and every save of an instance's form data is kept as
an append-only version with a JSON Patch against the previous one.
"""

__version__ = "0.1.0"

# Errors
from formflow.errors import (
    FormflowError,
    FormValidationError,
    InvalidConfig,
    InvalidData,
    InvalidPatch,
    InvalidState,
    InvalidStates,
    InvalidTransition,
    MigrationError,
    NoProgress,
    NoSchema,
    NotFound,
    PastCurrentState,
)

# State machine
from formflow.machine import (
    MachineConfig,
    StateNode,
    Step,
    TransitionTarget,
    build_step_machine,
    initial_state,
    is_terminal,
    next_events,
    required_states,
    state_names,
    transition,
)
from formflow.validation import load_machine_config, validate_machine_config

# Forms
from formflow.forms import (
    FieldError,
    FormSchema,
    FormValidator,
    TextareaField,
    TextField,
    ValidationResult,
    compile_schema,
    initial_values,
    is_superset,
)

# JSON Patch
from formflow.patch import apply_delta, compute_delta

# Records
from formflow.model import (
    FormDataVersion,
    FormDefinition,
    ResolvedForm,
    WorkflowDefinition,
    WorkflowInstance,
)

# Database models
from formflow.postgres import (
    Base,
    DbFormDataVersion,
    DbFormDefinition,
    DbWorkflowDefinition,
    DbWorkflowInstance,
    PydanticType,
)

# Services
from formflow.definitions import WorkflowDefinitionService
from formflow.resolver import FormDefinitionResolver
from formflow.store import PatchStore
from formflow.instances import WorkflowInstanceService

# Configuration
from formflow.config import FormflowConfig, load_formflow_toml, make_config

# Simplified setup
from formflow.setup import FormflowResources, create_formflow_services

__all__ = [
    # Version
    "__version__",
    # Errors
    "FormflowError",
    "FormValidationError",
    "InvalidConfig",
    "InvalidData",
    "InvalidPatch",
    "InvalidState",
    "InvalidStates",
    "InvalidTransition",
    "MigrationError",
    "NoProgress",
    "NoSchema",
    "NotFound",
    "PastCurrentState",
    # State machine
    "MachineConfig",
    "StateNode",
    "Step",
    "TransitionTarget",
    "build_step_machine",
    "initial_state",
    "is_terminal",
    "next_events",
    "required_states",
    "state_names",
    "transition",
    "load_machine_config",
    "validate_machine_config",
    # Forms
    "FieldError",
    "FormSchema",
    "FormValidator",
    "TextareaField",
    "TextField",
    "ValidationResult",
    "compile_schema",
    "initial_values",
    "is_superset",
    # JSON Patch
    "apply_delta",
    "compute_delta",
    # Records
    "FormDataVersion",
    "FormDefinition",
    "ResolvedForm",
    "WorkflowDefinition",
    "WorkflowInstance",
    # Database
    "Base",
    "DbFormDataVersion",
    "DbFormDefinition",
    "DbWorkflowDefinition",
    "DbWorkflowInstance",
    "PydanticType",
    # Services
    "WorkflowDefinitionService",
    "FormDefinitionResolver",
    "PatchStore",
    "WorkflowInstanceService",
    # Config
    "FormflowConfig",
    "load_formflow_toml",
    "make_config",
    # Setup
    "FormflowResources",
    "create_formflow_services",
]
