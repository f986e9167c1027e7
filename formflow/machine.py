"""Declarative transition tables and the pure functions that run them.

A machine config is plain data: named states, each with named outgoing
events that map to a target state, plus an ``initial`` state. Compound
states nest further states; their leaves are addressed with dotted paths
such as ``review.market.pending``.

Nothing here touches storage or keeps state between calls::

    config = MachineConfig.model_validate(
        {
            "initial": "form1",
            "states": {"form1": {"on": {"NEXT": "form2"}}, "form2": {"type": "final"}},
        }
    )
    next_events(config, "form1")            # ["NEXT"]
    transition(config, "form1", "NEXT")     # "form2"
"""

from collections.abc import Iterator
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from formflow.errors import InvalidConfig, InvalidState, InvalidTransition

StateType = Literal["atomic", "compound", "parallel", "final", "history"]


class TransitionTarget(BaseModel):
    model_config = ConfigDict(extra="allow")

    target: str


class StateNode(BaseModel):
    # entry/exit/meta and friends are tolerated and ignored
    model_config = ConfigDict(extra="allow")

    type: StateType | None = None
    initial: str | None = None
    on: dict[str, str | TransitionTarget] = Field(default_factory=dict)
    states: dict[str, "StateNode"] = Field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.type == "final"

    @property
    def is_compound(self) -> bool:
        return bool(self.states)


class MachineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    initial: str | None = None
    states: dict[str, StateNode] = Field(default_factory=dict)


StateNode.model_rebuild()


class Step(BaseModel):
    """One step of a linear workflow built with ``build_step_machine``."""

    name: str
    move: Literal["forward", "backward", "both", "terminal"] = "forward"
    form_def_id: int | None = None


def _ordered(states: dict[str, StateNode], initial: str | None) -> list[str]:
    names = list(states)
    if initial in states:
        names.remove(initial)
        names.insert(0, initial)
    return names


def _walk(
    states: dict[str, StateNode], initial: str | None, prefix: tuple[str, ...]
) -> Iterator[tuple[str, StateNode]]:
    for name in _ordered(states, initial):
        node = states[name]
        path = prefix + (name,)
        yield ".".join(path), node
        if node.states:
            yield from _walk(node.states, node.initial, path)


def walk(config: MachineConfig) -> Iterator[tuple[str, StateNode]]:
    """Yield ``(path, node)`` for every declared state, initial first, parents before children."""
    yield from _walk(config.states, config.initial, ())


def state_names(config: MachineConfig) -> list[str]:
    """Every declared state path in traversal order."""
    return [path for path, _ in walk(config)]


def required_states(config: MachineConfig) -> list[str]:
    """Non-final leaf states in traversal order; these are the states that need a form."""
    return [
        path for path, node in walk(config) if not node.is_compound and not node.is_final
    ]


def lookup(config: MachineConfig, path: str) -> list[StateNode] | None:
    """Return the chain of nodes from the root down to ``path``, or None."""
    if not path:
        return None
    nodes: list[StateNode] = []
    states = config.states
    for part in path.split("."):
        node = states.get(part)
        if node is None:
            return None
        nodes.append(node)
        states = node.states
    return nodes


def _enter(config: MachineConfig, path: str) -> tuple[list[str], list[StateNode]] | None:
    nodes = lookup(config, path)
    if nodes is None:
        return None
    parts = path.split(".")
    node = nodes[-1]
    while node.states:
        child = node.initial if node.initial in node.states else next(iter(node.states))
        node = node.states[child]
        parts.append(child)
        nodes.append(node)
    return parts, nodes


def resolve_target(config: MachineConfig, source: str, target: str) -> str | None:
    """Resolve a transition target declared on the state at ``source``.

    Plain names are siblings of the source, ``.child`` addresses a child of
    the source and ``#a.b`` is absolute from the root. Returns the dotted
    path of the target, or None when it is not declared.
    """
    if target.startswith("#"):
        path = target[1:]
    elif target.startswith("."):
        path = f"{source}{target}"
    else:
        parent = source.rpartition(".")[0]
        path = f"{parent}.{target}" if parent else target
    if lookup(config, path) is None:
        return None
    return path


def resolve_state(config: MachineConfig, state: str) -> str | None:
    """Resolve a state value to the leaf it denotes (compound states enter their initial child)."""
    entered = _enter(config, state)
    if entered is None:
        return None
    return ".".join(entered[0])


def initial_state(config: MachineConfig) -> str:
    if not config.states:
        raise InvalidConfig("Machine config declares no states")
    initial = config.initial if config.initial else next(iter(config.states))
    resolved = resolve_state(config, initial)
    if resolved is None:
        raise InvalidConfig(f"Initial state {initial!r} is not a declared state")
    return resolved


def next_events(config: MachineConfig, current_state: str) -> list[str]:
    """Distinct event names available from ``current_state``; empty for a terminal state.

    Events declared on ancestors of a nested state are available too. A final
    state contributes none of its own, even if its config declares ``on``.
    """
    entered = _enter(config, current_state)
    if entered is None:
        raise InvalidState(
            f"State {current_state!r} is not declared by the machine config",
            state=current_state,
        )
    events: list[str] = []
    for node in reversed(entered[1]):
        if node.is_final:
            continue
        for event in node.on:
            if event not in events:
                events.append(event)
    return events


def is_terminal(config: MachineConfig, state: str) -> bool:
    return not next_events(config, state)


def transition(config: MachineConfig, current_state: str, event: str) -> str:
    """Return the state reached by sending ``event`` in ``current_state``."""
    entered = _enter(config, current_state)
    if entered is None:
        raise InvalidTransition(
            f"State {current_state!r} does not resolve against the machine config",
            state=current_state,
            event=event,
        )
    parts, nodes = entered
    # innermost declaration wins
    for depth in range(len(nodes) - 1, -1, -1):
        node = nodes[depth]
        if node.is_final or event not in node.on:
            continue
        declared = node.on[event]
        target = declared if isinstance(declared, str) else declared.target
        source = ".".join(parts[: depth + 1])
        path = resolve_target(config, source, target)
        if path is None:
            raise InvalidTransition(
                f"Target {target!r} of event {event!r} is not a declared state",
                state=current_state,
                event=event,
            )
        resolved = resolve_state(config, path)
        assert resolved is not None
        return resolved
    raise InvalidTransition(
        f"Event {event!r} is not valid from state {current_state!r}",
        state=current_state,
        event=event,
    )


def build_step_machine(steps: list[Step]) -> MachineConfig:
    """Build a linear machine: ``NEXT`` moves forward, ``BACK`` moves backward."""
    if not steps:
        raise InvalidConfig("At least one step is required")
    names = [step.name for step in steps]
    if len(set(names)) != len(names):
        raise InvalidConfig(f"Step names must be unique, got {names}")
    states: dict[str, StateNode] = {}
    for idx, step in enumerate(steps):
        on: dict[str, str | TransitionTarget] = {}
        has_prev = idx > 0
        has_next = idx < len(steps) - 1
        if step.move in ("forward", "both") and has_next:
            on["NEXT"] = steps[idx + 1].name
        if step.move in ("backward", "both") and has_prev:
            on["BACK"] = steps[idx - 1].name
        if not on or step.move == "terminal":
            states[step.name] = StateNode(type="final")
        else:
            states[step.name] = StateNode(on=on)
    return MachineConfig(initial=steps[0].name, states=states)
