"""Provisioning queue item state machine enforced by the worker."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "pending", "failed"},
    "completed": set(),
    # Re-entry is only possible through the manual reset.
    "failed": set(),
}

MANUAL_RESET = ("failed", "pending")


def validate_transition(current: str, new: str, manual: bool = False) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if manual and (current, new) == MANUAL_RESET:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
