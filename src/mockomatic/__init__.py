"""Mockomatic - Allocation Core

Balances candidates and examiners across the slots of a timed mock exam
session and assigns them to stations with a constraint model.
"""

__version__ = "1.0.0"

from .allocation import AllocationOutcome, allocate_session
from .balancer import (
    EvenSplit,
    FillPlan,
    FillRequest,
    apply_fill_plan,
    balance_parity,
    distribute,
    even_split,
    fill_any_priority,
    fill_by_slot,
    fill_by_time,
    fill_slot_fixed_time,
)
from .config import DEFAULT_SETTINGS, SolverOptions
from .errors import (
    AllocationError,
    CapacityExceeded,
    ImbalanceUnresolved,
    Infeasible,
    InternalConsistency,
)
from .solver import SlotSolution, StationAllocationModel, solve_slot
from .store import InMemoryStore
from .tasks import AllocationRunManager

__all__ = [
    "AllocationOutcome",
    "allocate_session",
    "EvenSplit",
    "FillPlan",
    "FillRequest",
    "apply_fill_plan",
    "balance_parity",
    "distribute",
    "even_split",
    "fill_any_priority",
    "fill_by_slot",
    "fill_by_time",
    "fill_slot_fixed_time",
    "DEFAULT_SETTINGS",
    "SolverOptions",
    "AllocationError",
    "CapacityExceeded",
    "ImbalanceUnresolved",
    "Infeasible",
    "InternalConsistency",
    "SlotSolution",
    "StationAllocationModel",
    "solve_slot",
    "InMemoryStore",
    "AllocationRunManager",
]
