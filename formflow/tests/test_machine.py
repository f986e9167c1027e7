"""
Unit tests for formflow.machine module.
"""
import pytest

from formflow.errors import InvalidConfig, InvalidState, InvalidTransition
from formflow.machine import (
    MachineConfig,
    Step,
    build_step_machine,
    initial_state,
    is_terminal,
    next_events,
    required_states,
    resolve_target,
    state_names,
    transition,
)
from formflow.tests.conftest import LINEAR_CONFIG, NESTED_CONFIG, TWO_STEP_CONFIG


@pytest.fixture
def linear() -> MachineConfig:
    return MachineConfig.model_validate(LINEAR_CONFIG)


@pytest.fixture
def nested() -> MachineConfig:
    return MachineConfig.model_validate(NESTED_CONFIG)


class TestTraversal:
    """Tests for state_names and required_states."""

    def test_linear_required_states(self, linear):
        """Every non-final leaf is required, in declaration order."""
        assert required_states(linear) == ["form1", "form2", "form3"]

    def test_final_state_not_required(self):
        """Final states need no form."""
        config = MachineConfig.model_validate(TWO_STEP_CONFIG)
        assert required_states(config) == ["form1"]
        assert state_names(config) == ["form1", "form2"]

    def test_initial_comes_first(self):
        """Traversal starts from the initial state regardless of declaration order."""
        config = MachineConfig.model_validate(
            {
                "initial": "b",
                "states": {"a": {"on": {"GO": "b"}}, "b": {"on": {"GO": "a"}}},
            }
        )
        assert required_states(config) == ["b", "a"]

    def test_nested_paths(self, nested):
        """Compound states contribute dotted leaf paths; parents precede children."""
        assert state_names(nested) == [
            "draft",
            "review",
            "review.legal",
            "review.market",
            "review.market.pending",
            "done",
        ]
        assert required_states(nested) == [
            "draft",
            "review.legal",
            "review.market.pending",
        ]


class TestInitialState:
    """Tests for initial_state."""

    def test_declared_initial(self, linear):
        assert initial_state(linear) == "form1"

    def test_first_declared_when_no_initial(self):
        """Without ``initial`` the first declared state is used."""
        config = MachineConfig.model_validate({"states": {"start": {"on": {"GO": "end"}}, "end": {}}})
        assert initial_state(config) == "start"

    def test_descends_into_compound_initial(self):
        config = MachineConfig.model_validate(
            {"initial": "outer", "states": {"outer": {"initial": "inner", "states": {"inner": {}}}}}
        )
        assert initial_state(config) == "outer.inner"

    def test_no_states(self):
        with pytest.raises(InvalidConfig):
            initial_state(MachineConfig())

    def test_unknown_initial(self):
        config = MachineConfig.model_validate({"initial": "missing", "states": {"a": {}}})
        with pytest.raises(InvalidConfig):
            initial_state(config)


class TestNextEvents:
    """Tests for next_events and is_terminal."""

    def test_events_of_state(self, linear):
        assert set(next_events(linear, "form1")) == {"NEXT", "SAVE"}
        assert set(next_events(linear, "form2")) == {"NEXT", "BACK"}

    def test_final_state_has_no_events(self):
        config = MachineConfig.model_validate(TWO_STEP_CONFIG)
        assert next_events(config, "form2") == []
        assert is_terminal(config, "form2")
        assert not is_terminal(config, "form1")

    def test_final_state_ignores_declared_events(self):
        """A final state that declares events anyway still offers none."""
        config = MachineConfig.model_validate(
            {"states": {"a": {"on": {"GO": "b"}}, "b": {"type": "final", "on": {"GO": "a"}}}}
        )
        assert next_events(config, "b") == []
        assert is_terminal(config, "b")

    def test_ancestor_events_included(self, nested):
        """Events declared on a compound parent are available from its children."""
        assert set(next_events(nested, "review.legal")) == {"APPROVE", "CANCEL"}
        assert set(next_events(nested, "review.market.pending")) == {
            "APPROVE",
            "REJECT",
            "CANCEL",
        }

    def test_events_are_distinct(self, nested):
        events = next_events(nested, "review.market.pending")
        assert len(events) == len(set(events))

    def test_unknown_state(self, linear):
        with pytest.raises(InvalidState):
            next_events(linear, "nowhere")


class TestTransition:
    """Tests for transition."""

    def test_forward_and_back(self, linear):
        assert transition(linear, "form1", "NEXT") == "form2"
        assert transition(linear, "form2", "BACK") == "form1"

    def test_self_transition(self, linear):
        assert transition(linear, "form1", "SAVE") == "form1"

    def test_undeclared_event(self, linear):
        with pytest.raises(InvalidTransition) as exc_info:
            transition(linear, "form3", "NEXT")
        assert exc_info.value.state == "form3"
        assert exc_info.value.event == "NEXT"

    def test_unknown_state(self, linear):
        with pytest.raises(InvalidTransition):
            transition(linear, "nowhere", "NEXT")

    def test_final_state_refuses_declared_events(self):
        config = MachineConfig.model_validate(
            {"states": {"a": {"on": {"GO": "b"}}, "b": {"type": "final", "on": {"GO": "a"}}}}
        )
        assert transition(config, "a", "GO") == "b"
        with pytest.raises(InvalidTransition):
            transition(config, "b", "GO")

    def test_enters_compound_initial(self, nested):
        """Entering a compound state lands on its initial leaf."""
        assert transition(nested, "draft", "SUBMIT") == "review.legal"
        assert transition(nested, "review.legal", "APPROVE") == "review.market.pending"

    def test_absolute_targets(self, nested):
        assert transition(nested, "review.market.pending", "APPROVE") == "done"
        assert transition(nested, "review.market.pending", "REJECT") == "review.legal"

    def test_ancestor_transition(self, nested):
        assert transition(nested, "review.market.pending", "CANCEL") == "draft"

    def test_object_target(self):
        config = MachineConfig.model_validate(
            {"states": {"a": {"on": {"GO": {"target": "b", "actions": ["log"]}}}, "b": {}}}
        )
        assert transition(config, "a", "GO") == "b"

    def test_child_target(self):
        config = MachineConfig.model_validate(
            {
                "states": {
                    "a": {
                        "on": {"DIVE": ".deep"},
                        "states": {"top": {}, "deep": {}},
                    }
                }
            }
        )
        assert resolve_target(config, "a", ".deep") == "a.deep"
        assert transition(config, "a.top", "DIVE") == "a.deep"


class TestBuildStepMachine:
    """Tests for build_step_machine."""

    def test_forward_steps(self):
        config = build_step_machine([Step(name="one"), Step(name="two"), Step(name="three")])
        assert config.initial == "one"
        assert transition(config, "one", "NEXT") == "two"
        assert transition(config, "two", "NEXT") == "three"
        assert is_terminal(config, "three")
        assert required_states(config) == ["one", "two"]

    def test_both_directions(self):
        config = build_step_machine(
            [Step(name="one"), Step(name="two", move="both"), Step(name="three", move="backward")]
        )
        assert set(next_events(config, "two")) == {"NEXT", "BACK"}
        assert transition(config, "three", "BACK") == "two"

    def test_terminal_step(self):
        config = build_step_machine([Step(name="one", move="terminal"), Step(name="two")])
        assert config.states["one"].is_final

    def test_empty_steps(self):
        with pytest.raises(InvalidConfig):
            build_step_machine([])

    def test_duplicate_names(self):
        with pytest.raises(InvalidConfig):
            build_step_machine([Step(name="one"), Step(name="one")])
