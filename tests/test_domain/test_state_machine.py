"""Tests for the DealStateMachine domain guard.

These tests verify that:
    1. All valid transitions are allowed.
    2. All invalid transitions are blocked.
    3. Terminal states accept no further events.
    4. The convenience function validate_transition works.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from multisig_escrow.domain.enums import DealStatus
from multisig_escrow.domain.exceptions import InvalidStateTransitionError
from multisig_escrow.domain.state_machine import (
    DealStateMachine,
    validate_transition,
)
from multisig_escrow.services.lifecycle import next_status


class TestHappyPath:
    """created -> completed, buyer creates the deal."""

    def test_full_lifecycle(self) -> None:
        sm = DealStateMachine("created")
        assert sm.status == "created"

        sm.request_seller_wallet()
        assert sm.status == "waiting_for_seller_wallet"

        sm.wallet_provided()
        assert sm.status == "waiting_for_deposit"

        sm.deposit_confirmed()
        assert sm.status == "locked"

        sm.submit_work()
        assert sm.status == "in_progress"

        sm.release_to_seller()
        assert sm.status == "completed"

    def test_seller_created_deal_waits_for_buyer(self) -> None:
        sm = DealStateMachine("created")
        sm.request_buyer_wallet()
        assert sm.status == "waiting_for_buyer_wallet"
        sm.wallet_provided()
        assert sm.status == "waiting_for_deposit"


class TestPayoutOutcomes:
    def test_release_to_seller(self) -> None:
        assert validate_transition("in_progress", "release_to_seller") == "completed"

    @pytest.mark.parametrize("start", ["locked", "in_progress"])
    def test_expire(self, start: str) -> None:
        assert validate_transition(start, "expire_deal") == "expired"

    def test_settle_dispute(self) -> None:
        assert validate_transition("dispute", "settle_dispute") == "resolved"


class TestDisputePath:
    @pytest.mark.parametrize("start", ["locked", "in_progress"])
    def test_dispute_from_funded_states(self, start: str) -> None:
        assert validate_transition(start, "open_dispute") == "dispute"

    @pytest.mark.parametrize(
        "start", ["created", "waiting_for_seller_wallet", "waiting_for_deposit"]
    )
    def test_cannot_dispute_unfunded_deal(self, start: str) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(start, "open_dispute")

    def test_dispute_cannot_release_directly(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("dispute", "release_to_seller")


class TestCancellation:
    @pytest.mark.parametrize(
        "start",
        [
            "created",
            "waiting_for_seller_wallet",
            "waiting_for_buyer_wallet",
            "waiting_for_deposit",
        ],
    )
    def test_cancel_before_funding(self, start: str) -> None:
        assert validate_transition(start, "cancel_deal") == "cancelled"

    @pytest.mark.parametrize("start", ["locked", "in_progress", "dispute"])
    def test_cannot_cancel_funded_deal(self, start: str) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition(start, "cancel_deal")


class TestInvalidTransitions:
    def test_cannot_skip_deposit(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("waiting_for_deposit", "release_to_seller")

    def test_deposit_only_from_waiting(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("created", "deposit_confirmed")

    def test_no_release_before_work_is_submitted(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("locked", "release_to_seller")

    def test_submit_work_only_once(self) -> None:
        with pytest.raises(TransitionNotAllowed):
            validate_transition("in_progress", "submit_work")

    @pytest.mark.parametrize("terminal", ["completed", "resolved", "expired", "cancelled"])
    def test_terminal_states_are_final(self, terminal: str) -> None:
        sm = DealStateMachine(terminal)
        assert sm.get_allowed_events() == []
        assert DealStatus(terminal).is_terminal

    def test_unknown_status_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            DealStateMachine("funded")

    def test_unknown_event_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition("locked", "teleport")


class TestAllowedEvents:
    def test_locked_allowed_events(self) -> None:
        sm = DealStateMachine("locked")
        assert set(sm.get_allowed_events()) == {
            "submit_work",
            "expire_deal",
            "open_dispute",
        }

    def test_waiting_for_deposit_allowed_events(self) -> None:
        sm = DealStateMachine("waiting_for_deposit")
        assert set(sm.get_allowed_events()) == {"deposit_confirmed", "cancel_deal"}


class TestNextStatus:
    def test_returns_enum(self) -> None:
        assert next_status("locked", "submit_work") is DealStatus.IN_PROGRESS

    def test_illegal_transition_is_domain_error(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            next_status("completed", "expire_deal")
        assert exc_info.value.current_state == "completed"
        assert exc_info.value.code == "INVALID_STATE_TRANSITION"

    def test_unknown_event_is_domain_error(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            next_status("locked", "nope")
