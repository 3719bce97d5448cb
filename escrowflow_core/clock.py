"""
Slot clocks for EscrowFlow.

The engine only needs ``current_slot()``, a monotonically non-decreasing
integer used for auto-release deadlines and record timestamps.

  - ``ManualClock``       externally advanced counter (tests, simulations)
  - ``SystemSlotClock``   wall-clock time divided into fixed-length slots
  - ``StoreBackedClock``  manual counter persisted in the escrow store
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from escrowflow_core.storage import EscrowStore


@runtime_checkable
class Clock(Protocol):
    def current_slot(self) -> int: ...


class ManualClock:
    """A slot counter that only moves when told to."""

    def __init__(self, slot: int = 0):
        if slot < 0:
            raise ValueError("slot must be non-negative")
        self._slot = slot

    def current_slot(self) -> int:
        return self._slot

    def advance(self, slots: int = 1) -> int:
        if slots < 0:
            raise ValueError("clock cannot move backwards")
        self._slot += slots
        return self._slot

    def set_slot(self, slot: int) -> int:
        if slot < self._slot:
            raise ValueError(f"clock cannot move backwards ({self._slot} -> {slot})")
        self._slot = slot
        return self._slot


class SystemSlotClock:
    """Slots of ``slot_ms`` milliseconds counted from ``genesis`` (unix seconds)."""

    def __init__(
        self,
        slot_ms: int = 400,
        genesis: float = 0.0,
        time_fn: Callable[[], float] = time.time,
    ):
        if slot_ms <= 0:
            raise ValueError("slot_ms must be positive")
        self.slot_ms = slot_ms
        self.genesis = genesis
        self._time = time_fn
        self._last = 0

    def current_slot(self) -> int:
        elapsed_ms = (self._time() - self.genesis) * 1000.0
        slot = max(0, int(elapsed_ms // self.slot_ms))
        # Never report an earlier slot than before, even if the wall clock steps back.
        self._last = max(self._last, slot)
        return self._last


class StoreBackedClock:
    """Manual slot counter kept in the store's ``meta`` table."""

    META_KEY = "manual_slot"

    def __init__(self, store: EscrowStore):
        self.store = store

    def current_slot(self) -> int:
        value = self.store.get_meta(self.META_KEY)
        return int(value) if value is not None else 0

    def advance(self, slots: int = 1) -> int:
        if slots < 0:
            raise ValueError("clock cannot move backwards")
        slot = self.current_slot() + slots
        self.store.set_meta(self.META_KEY, str(slot))
        return slot
