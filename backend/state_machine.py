from errors import StateError
from models import AdmissionState, LabOrderState

ADMISSION = "admission"
LAB_ORDER = "lab_order"

VALID_TRANSITIONS: dict[str, dict[str, list[str]]] = {
    ADMISSION: {
        # A transfer keeps the stay open; only the location changes.
        AdmissionState.ACTIVE: [AdmissionState.ACTIVE, AdmissionState.DISCHARGED],
    },
    LAB_ORDER: {
        LabOrderState.ORDERED: [LabOrderState.RESULTED, LabOrderState.CANCELLED],
    },
}

INITIAL_STATES: dict[str, str] = {
    ADMISSION: AdmissionState.ACTIVE,
    LAB_ORDER: LabOrderState.ORDERED,
}

TERMINAL_STATES: set[str] = {
    AdmissionState.DISCHARGED,
    LabOrderState.RESULTED,
    LabOrderState.CANCELLED,
}


def _label(state) -> str:
    return getattr(state, "value", state)


def validate_transition(kind: str, current_state: str, new_state: str) -> bool:
    """Return True if the transition is allowed, raise StateError otherwise."""
    transitions = VALID_TRANSITIONS.get(kind)
    if transitions is None:
        raise ValueError(f"Unknown entity kind: {kind}")

    allowed = transitions.get(current_state)
    if allowed is None:
        raise StateError(f"{kind} is {_label(current_state)}; no further transitions are allowed")

    if new_state not in allowed:
        raise StateError(
            f"Invalid transition: {kind} cannot go from '{_label(current_state)}' to '{_label(new_state)}'. "
            f"Allowed: {[_label(state) for state in allowed]}"
        )

    return True


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES
