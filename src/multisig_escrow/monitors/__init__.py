"""Scheduled sweeps that drive time- and ledger-based transitions."""

from multisig_escrow.monitors.deadline_monitor import DeadlineMonitor
from multisig_escrow.monitors.deposit_monitor import DepositMonitor
from multisig_escrow.monitors.scheduler import EscrowScheduler

__all__ = ["DeadlineMonitor", "DepositMonitor", "EscrowScheduler"]
