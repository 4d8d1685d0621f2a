"""DC purchase order state machine enforced by the order service and processor."""

ORDER_STATUSES: tuple[str, ...] = (
    "created",
    "onramp_started",
    "payment_confirmed",
    "usdc_verified",
    "swapping",
    "minting_dc",
    "delegating",
    "complete",
)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "created": {"onramp_started", "payment_confirmed"},
    "onramp_started": {"payment_confirmed"},
    "payment_confirmed": {"usdc_verified"},
    "usdc_verified": {"swapping"},
    "swapping": {"minting_dc"},
    "minting_dc": {"delegating"},
    "delegating": {"complete"},
    "complete": set(),
}

# Transitions driven by the processor; everything else is entered synchronously.
PROCESS_TRANSITIONS: dict[str, str] = {
    "payment_confirmed": "usdc_verified",
    "usdc_verified": "swapping",
    "swapping": "minting_dc",
    "minting_dc": "delegating",
    "delegating": "complete",
}

NON_TERMINAL_STATUSES: tuple[str, ...] = ORDER_STATUSES[1:-1]
TERMINAL_STATUS = "complete"


def status_position(status: str) -> int:
    """Index of `status` in the forward ordering."""

    if status not in ORDER_STATUSES:
        raise ValueError(f"Unknown order status: {status}")
    return ORDER_STATUSES.index(status)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine.

    Writing the current status again is always allowed: it is how an order holds
    in place with an error attached, or has that error cleared.
    """

    if new == current and new in ALLOWED_TRANSITIONS:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def has_reached(current: str, target: str) -> bool:
    return status_position(current) >= status_position(target)
