"""Unit tests for provisioning queue state-machine guardrails."""

import pytest

from licensesync.common.state_machine import validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "processing")
    validate_transition("processing", "pending")


def test_invalid_transition():
    """Skipping the claim must raise so no item is provisioned unclaimed."""

    with pytest.raises(ValueError):
        validate_transition("pending", "completed")


def test_terminal_states_are_final():
    for terminal in ("completed", "failed"):
        with pytest.raises(ValueError):
            validate_transition(terminal, "pending")


def test_failed_reenters_only_through_manual_reset():
    validate_transition("failed", "pending", manual=True)
    with pytest.raises(ValueError):
        validate_transition("completed", "pending", manual=True)
