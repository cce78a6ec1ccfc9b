"""Deal State Machine Guard.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what a monitor, the API or the payout orchestrator asks for, an
illegal transition (e.g., waiting_for_deposit -> completed) raises
TransitionNotAllowed.

The state machine is instantiated per-deal and validates transitions before
the repository's conditional status update is issued.

Transition table:
    created                   -> waiting_for_seller_wallet (request_seller_wallet)
    created                   -> waiting_for_buyer_wallet  (request_buyer_wallet)
    waiting_for_*_wallet      -> waiting_for_deposit       (wallet_provided)
    waiting_for_deposit       -> locked                    (deposit_confirmed)
    locked                    -> in_progress               (submit_work)
    in_progress               -> completed                 (release_to_seller)
    locked | in_progress      -> expired                   (expire_deal)
    locked | in_progress      -> dispute                   (open_dispute)
    dispute                   -> resolved                  (settle_dispute)
    created .. deposit        -> cancelled                 (cancel_deal)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class DealStateMachine(StateMachine):
    """State machine that guards deal lifecycle transitions.

    Usage:
        sm = DealStateMachine(current_status="locked")
        sm.submit_work()  # transitions to in_progress
        sm.status         # "in_progress"
    """

    # --- States ---
    created = State(initial=True)
    waiting_for_seller_wallet = State()
    waiting_for_buyer_wallet = State()
    waiting_for_deposit = State()
    locked = State()
    in_progress = State()
    dispute = State()
    completed = State(final=True)
    resolved = State(final=True)
    expired = State(final=True)
    cancelled = State(final=True)

    # --- Events / Transitions ---

    # Wallet collection
    request_seller_wallet = created.to(waiting_for_seller_wallet)
    request_buyer_wallet = created.to(waiting_for_buyer_wallet)
    wallet_provided = (
        waiting_for_seller_wallet.to(waiting_for_deposit)
        | waiting_for_buyer_wallet.to(waiting_for_deposit)
    )

    # Funding (DepositMonitor only)
    deposit_confirmed = waiting_for_deposit.to(locked)

    # Work
    submit_work = locked.to(in_progress)

    # Payout outcomes
    release_to_seller = in_progress.to(completed)
    expire_deal = locked.to(expired) | in_progress.to(expired)

    # Disputes
    open_dispute = locked.to(dispute) | in_progress.to(dispute)
    settle_dispute = dispute.to(resolved)

    # Cancellation before funding
    cancel_deal = (
        created.to(cancelled)
        | waiting_for_seller_wallet.to(cancelled)
        | waiting_for_buyer_wallet.to(cancelled)
        | waiting_for_deposit.to(cancelled)
    )

    def __init__(self, current_status: str = "created") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current DealStatus value (e.g., "locked").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches DealStatus enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.id for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = DealStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
