"""
Inventory allocation across a store's locations.
Splits the quantity available for one variant over eligible locations
according to an allocation strategy.
"""

import math
from fractions import Fraction

import structlog

from app.errors import InsufficientInventoryError, ValidationError
from app.models.database import Location, find_primary_location
from app.models.sync import AllocationStrategy

logger = structlog.get_logger()


class AllocationEngine:
    """Computes location -> quantity mappings for a single variant."""

    def allocate(
        self,
        master_quantity: int,
        locations: list[Location],
        committed_elsewhere: int = 0,
        strategy: AllocationStrategy = AllocationStrategy.BALANCED,
        requested: int | None = None,
        weights: dict[str, float] | None = None,
    ) -> dict[str, int]:
        """
        Allocate inventory for one variant to one store's locations.

        Args:
            master_quantity: Total quantity on the canonical variant
            locations: The target store's locations
            committed_elsewhere: Quantity already committed to other stores
            strategy: Allocation strategy
            requested: Quantity wanted for this store (defaults to everything available)
            weights: location_id -> weight, required for weighted strategies

        Returns:
            Mapping of eligible location id to quantity. Quantities are
            non-negative and sum to at most the requested quantity, less
            when location capacities cannot hold it all.

        Raises:
            ValidationError: Negative quantities, unknown strategy input or missing weights
            InsufficientInventoryError: Commitments or the request exceed the master quantity
        """
        if master_quantity < 0:
            raise ValidationError("Master quantity must not be negative")
        if committed_elsewhere < 0:
            raise ValidationError("Committed quantity must not be negative")
        if requested is not None and requested < 0:
            raise ValidationError("Requested quantity must not be negative")

        available = master_quantity - committed_elsewhere
        if available < 0:
            raise InsufficientInventoryError(
                f"Already committed {committed_elsewhere} of {master_quantity} units",
                available=0,
                requested=requested or 0,
            )
        if requested is None:
            requested = available
        if requested > available:
            raise InsufficientInventoryError(
                f"Requested {requested} units but only {available} available",
                available=available,
                requested=requested,
            )

        eligible = [loc for loc in locations if loc.is_active and loc.ships_inventory]
        if not eligible:
            if requested:
                logger.warning("No eligible locations for allocation", requested=requested)
            return {}

        strategy = AllocationStrategy(strategy)
        if strategy == AllocationStrategy.BALANCED:
            allocation = self._balanced(requested, eligible)
        elif strategy == AllocationStrategy.PRIORITY:
            allocation = self._priority(requested, locations, eligible)
        else:
            allocation = self._weighted(requested, eligible, weights, strategy)

        logger.debug(
            "Computed allocation",
            strategy=strategy.value,
            requested=requested,
            allocated=sum(allocation.values()),
        )
        return allocation

    def _balanced(self, quantity: int, eligible: list[Location]) -> dict[str, int]:
        ordered = sorted(eligible, key=lambda loc: loc.id)
        return distribute(quantity, [(loc.id, Fraction(1), loc.capacity) for loc in ordered])

    def _priority(
        self, quantity: int, locations: list[Location], eligible: list[Location]
    ) -> dict[str, int]:
        primary = find_primary_location(locations)
        ordered = list(eligible)
        if primary is not None and primary in ordered:
            ordered.remove(primary)
            ordered.insert(0, primary)

        allocation = {loc.id: 0 for loc in eligible}
        remaining = quantity
        for loc in ordered:
            if remaining <= 0:
                break
            grant = remaining if loc.capacity is None else min(remaining, loc.capacity)
            allocation[loc.id] = grant
            remaining -= grant
        return allocation

    def _weighted(
        self,
        quantity: int,
        eligible: list[Location],
        weights: dict[str, float] | None,
        strategy: AllocationStrategy,
    ) -> dict[str, int]:
        if not weights:
            raise ValidationError(f"Strategy {strategy.value!r} requires location weights")
        if any(w < 0 or not math.isfinite(w) for w in weights.values()):
            raise ValidationError("Location weights must be finite and not negative")

        slots = [(loc.id, Fraction(weights.get(loc.id, 0.0)), loc.capacity) for loc in eligible]
        if quantity and not any(weight > 0 for _, weight, _ in slots):
            raise ValidationError("No eligible location has a positive weight")
        return distribute(quantity, slots)


def distribute(
    total: int, slots: list[tuple[str, Fraction, int | None]]
) -> dict[str, int]:
    """
    Split an integer total proportionally to weight with the largest
    remainder method, honoring per-slot capacities.

    Slots whose proportional share reaches their capacity are filled to
    capacity and the rest is re-split over the others. Ties in fractional
    parts go to the earlier slot. Result sums to min(total, total capacity
    of positive-weight slots).
    """
    result = {slot_id: 0 for slot_id, _, _ in slots}
    remaining = total
    open_slots = [s for s in slots if s[1] > 0 and (s[2] is None or s[2] > 0)]

    while remaining > 0 and open_slots:
        weight_sum = sum(weight for _, weight, _ in open_slots)
        shares = {slot_id: remaining * weight / weight_sum for slot_id, weight, _ in open_slots}

        saturated = [s for s in open_slots if s[2] is not None and shares[s[0]] >= s[2]]
        if saturated:
            for slot_id, _, capacity in saturated:
                result[slot_id] = capacity
                remaining -= capacity
            open_slots = [s for s in open_slots if s not in saturated]
            continue

        floors = {slot_id: math.floor(share) for slot_id, share in shares.items()}
        for slot_id, value in floors.items():
            result[slot_id] += value
        leftover = remaining - sum(floors.values())
        by_remainder = sorted(
            range(len(open_slots)),
            key=lambda i: (-(shares[open_slots[i][0]] - floors[open_slots[i][0]]), i),
        )
        for i in by_remainder[:leftover]:
            result[open_slots[i][0]] += 1
        remaining = 0

    return result
