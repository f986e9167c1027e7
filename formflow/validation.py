"""Machine config validator.

Checks a declarative transition table for structural issues that would
otherwise only surface when an instance tries to move. Used when a workflow
definition is stored and by the ``formflow validate`` CLI command.

Example::

    from formflow.validation import validate_machine_config

    errors = validate_machine_config(raw_config)
    if errors:
        for err in errors:
            print(err)
"""

from __future__ import annotations

from typing import Any

import pydantic

from formflow.errors import InvalidConfig
from formflow.machine import MachineConfig, resolve_state, resolve_target, walk


def _parse(raw: MachineConfig | dict[str, Any]) -> tuple[MachineConfig | None, list[str]]:
    if isinstance(raw, MachineConfig):
        return raw, []
    try:
        return MachineConfig.model_validate(raw), []
    except pydantic.ValidationError as exc:
        errors = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "<root>"
            errors.append(f"{loc}: {err['msg']}")
        return None, errors


def _name_errors(states: dict[str, Any], prefix: str) -> list[str]:
    errors = []
    for name, node in states.items():
        if not name or "." in name or name.startswith("#"):
            errors.append(f"{prefix or '<root>'}: invalid state name {name!r}")
            continue
        errors.extend(_name_errors(node.states, f"{prefix}.{name}" if prefix else name))
    return errors


def validate_machine_config(raw: MachineConfig | dict[str, Any]) -> list[str]:
    """Validate a machine config.

    Checks performed:
    - the config parses (states are mappings, targets are strings or ``{"target": ...}``)
    - at least one state is declared
    - state names are non-empty and contain no ``.`` and no leading ``#``
    - no ``parallel`` or ``history`` states
    - final states declare neither events nor child states
    - a compound state's ``initial`` names one of its children
    - the top-level ``initial`` resolves to a declared state
    - every transition target resolves to a declared state

    Returns:
        List of error message strings. Empty list means no issues found.
    """
    config, errors = _parse(raw)
    if config is None:
        return errors

    if not config.states:
        return ["machine config declares no states"]

    errors.extend(_name_errors(config.states, ""))
    if errors:
        return errors

    for path, node in walk(config):
        if node.type in ("parallel", "history"):
            errors.append(f"{path}: {node.type} states are not supported")
        if node.is_final and node.on:
            errors.append(f"{path}: final state declares events {sorted(node.on)}")
        if node.is_final and node.states:
            errors.append(f"{path}: final state declares child states")
        if node.type == "compound" and not node.states:
            errors.append(f"{path}: compound state declares no child states")
        if node.initial is not None and node.initial not in node.states:
            errors.append(f"{path}: initial state {node.initial!r} is not a child state")
        for event, declared in node.on.items():
            target = declared if isinstance(declared, str) else declared.target
            if resolve_target(config, path, target) is None:
                errors.append(
                    f"{path}: target {target!r} of event {event!r} is not a declared state"
                )

    if config.initial is not None and resolve_state(config, config.initial) is None:
        errors.append(f"initial state {config.initial!r} is not a declared state")

    return errors


def load_machine_config(raw: MachineConfig | dict[str, Any]) -> MachineConfig:
    """Parse and validate a machine config, raising ``InvalidConfig`` with every problem found."""
    errors = validate_machine_config(raw)
    if errors:
        raise InvalidConfig(f"Invalid machine config: {'; '.join(errors)}", errors=errors)
    config, _ = _parse(raw)
    assert config is not None
    return config
