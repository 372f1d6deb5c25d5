from fractions import Fraction

import pytest

from app.errors import InsufficientInventoryError, ValidationError
from app.models.database import Location
from app.models.sync import AllocationStrategy
from app.services.allocation_engine import AllocationEngine, distribute


@pytest.fixture
def engine():
    return AllocationEngine()


def test_balanced_even_split(engine):
    locations = [Location(id="A", capacity=60), Location(id="B", capacity=60)]
    assert engine.allocate(100, locations) == {"A": 50, "B": 50}


def test_balanced_remainder_goes_to_lowest_ids(engine):
    locations = [Location(id="b"), Location(id="c"), Location(id="a")]
    assert engine.allocate(5, locations) == {"a": 2, "b": 2, "c": 1}


def test_balanced_overflows_past_capacity(engine):
    locations = [Location(id="A", capacity=20), Location(id="B")]
    assert engine.allocate(100, locations) == {"A": 20, "B": 80}


def test_balanced_sum_capped_by_total_capacity(engine):
    locations = [Location(id="A", capacity=10), Location(id="B", capacity=15)]
    allocation = engine.allocate(100, locations)
    assert allocation == {"A": 10, "B": 15}
    assert sum(allocation.values()) == min(100, 25)


def test_request_exceeding_available_raises(engine):
    locations = [Location(id="A"), Location(id="B")]
    with pytest.raises(InsufficientInventoryError) as excinfo:
        engine.allocate(30, locations, committed_elsewhere=25, requested=10)
    assert excinfo.value.available == 5
    assert excinfo.value.requested == 10


def test_commitments_above_master_quantity_raise(engine):
    with pytest.raises(InsufficientInventoryError):
        engine.allocate(10, [Location(id="A")], committed_elsewhere=11)


def test_defaults_to_everything_remaining(engine):
    allocation = engine.allocate(30, [Location(id="A")], committed_elsewhere=25)
    assert allocation == {"A": 5}


def test_inactive_and_non_shipping_locations_excluded(engine):
    locations = [
        Location(id="A"),
        Location(id="B", is_active=False),
        Location(id="C", ships_inventory=False),
    ]
    assert engine.allocate(9, locations) == {"A": 9}


def test_no_eligible_locations(engine):
    assert engine.allocate(9, [Location(id="A", is_active=False)]) == {}


def test_negative_inputs_rejected(engine):
    with pytest.raises(ValidationError):
        engine.allocate(-1, [Location(id="A")])
    with pytest.raises(ValidationError):
        engine.allocate(10, [Location(id="A")], requested=-2)


def test_priority_fills_primary_first(engine):
    locations = [
        Location(id="b"),
        Location(id="a", fulfills_online_orders=True, capacity=5),
        Location(id="c"),
    ]
    allocation = engine.allocate(8, locations, strategy=AllocationStrategy.PRIORITY)
    assert allocation == {"a": 5, "b": 3, "c": 0}


def test_priority_without_online_location_uses_first_active(engine):
    locations = [Location(id="x", is_active=False), Location(id="y"), Location(id="z")]
    allocation = engine.allocate(8, locations, strategy=AllocationStrategy.PRIORITY)
    assert allocation == {"y": 8, "z": 0}


def test_weighted_largest_remainder(engine):
    locations = [Location(id="A"), Location(id="B"), Location(id="C")]
    allocation = engine.allocate(
        7,
        locations,
        strategy=AllocationStrategy.DEMAND_BASED,
        weights={"A": 0.5, "B": 0.3, "C": 0.2},
    )
    assert allocation == {"A": 4, "B": 2, "C": 1}


def test_weighted_equal_weights_tie_break(engine):
    locations = [Location(id="A"), Location(id="B"), Location(id="C")]
    allocation = engine.allocate(
        10, locations, strategy=AllocationStrategy.GEOGRAPHIC, weights={"A": 1, "B": 1, "C": 1}
    )
    assert allocation == {"A": 4, "B": 3, "C": 3}


def test_weighted_requires_weights(engine):
    with pytest.raises(ValidationError):
        engine.allocate(10, [Location(id="A")], strategy=AllocationStrategy.DEMAND_BASED)


def test_weighted_rejects_all_zero_weights(engine):
    with pytest.raises(ValidationError):
        engine.allocate(
            10, [Location(id="A")], strategy=AllocationStrategy.DEMAND_BASED, weights={"A": 0}
        )


@pytest.mark.parametrize("bad", [float("inf"), float("-inf"), float("nan"), -1.0])
def test_weighted_rejects_non_finite_or_negative_weights(engine, bad):
    with pytest.raises(ValidationError, match="finite"):
        engine.allocate(
            10,
            [Location(id="A"), Location(id="B")],
            strategy=AllocationStrategy.GEOGRAPHIC,
            weights={"A": 1.0, "B": bad},
        )


def test_distribute_is_exact_and_non_negative():
    for total in range(0, 40):
        result = distribute(total, [("a", Fraction(3), None), ("b", Fraction(5), 7), ("c", Fraction(1), None)])
        assert sum(result.values()) == total
        assert all(q >= 0 for q in result.values())
        assert result["b"] <= 7
