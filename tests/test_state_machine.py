"""Unit tests for the DC purchase order state machine guardrails."""

import pytest

from heliumtools.common.state_machine import (
    NON_TERMINAL_STATUSES,
    ORDER_STATUSES,
    PROCESS_TRANSITIONS,
    has_reached,
    validate_transition,
)


def test_forward_transitions_pass():
    validate_transition("created", "onramp_started")
    validate_transition("onramp_started", "payment_confirmed")
    validate_transition("delegating", "complete")


def test_webhook_may_confirm_before_checkout_opened():
    validate_transition("created", "payment_confirmed")


def test_hold_on_same_status_passes():
    """Writing the same status is how errors are attached and cleared."""

    validate_transition("swapping", "swapping")
    validate_transition("complete", "complete")


@pytest.mark.parametrize(
    "current,new",
    [("swapping", "usdc_verified"), ("payment_confirmed", "minting_dc"), ("complete", "created")],
)
def test_backward_or_skipping_transitions_raise(current, new):
    with pytest.raises(ValueError):
        validate_transition(current, new)


def test_unknown_status_raises():
    with pytest.raises(ValueError):
        validate_transition("created", "refunded")


def test_process_transitions_walk_the_pipeline_in_order():
    status = "payment_confirmed"
    walked = [status]
    while status in PROCESS_TRANSITIONS:
        status = PROCESS_TRANSITIONS[status]
        walked.append(status)
    assert walked == list(ORDER_STATUSES[2:])


def test_non_terminal_statuses_exclude_created_and_complete():
    assert "created" not in NON_TERMINAL_STATUSES
    assert "complete" not in NON_TERMINAL_STATUSES
    assert NON_TERMINAL_STATUSES[0] == "onramp_started"
    assert NON_TERMINAL_STATUSES[-1] == "delegating"


def test_has_reached():
    assert has_reached("swapping", "payment_confirmed")
    assert has_reached("payment_confirmed", "payment_confirmed")
    assert not has_reached("onramp_started", "payment_confirmed")
