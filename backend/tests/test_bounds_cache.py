from __future__ import annotations

import math

import pytest

from geo.aoi import ViewportBounds
from geo.bounds_cache import BoundsCache


def _b(n: float, s: float, e: float, w: float) -> ViewportBounds:
    return ViewportBounds(north=n, south=s, east=e, west=w)


def test_empty_cache_covers_nothing():
    cache = BoundsCache()
    assert cache.last_loaded is None
    assert cache.is_covered(_b(50.1, 50.0, 14.5, 14.4)) is False


def test_contained_bounds_are_covered_and_edges_are_inclusive():
    cache = BoundsCache()
    loaded = _b(50.2, 50.0, 14.6, 14.2)
    cache.record_loaded(loaded)

    assert cache.is_covered(loaded)
    assert cache.is_covered(_b(50.1, 50.05, 14.5, 14.3))
    # Touching the stored edge is still covered.
    assert cache.is_covered(_b(50.2, 50.1, 14.6, 14.5))


@pytest.mark.parametrize(
    "requested",
    [
        _b(50.21, 50.0, 14.6, 14.2),
        _b(50.2, 49.99, 14.6, 14.2),
        _b(50.2, 50.0, 14.61, 14.2),
        _b(50.2, 50.0, 14.6, 14.19),
        _b(51.0, 50.5, 15.0, 14.7),
    ],
)
def test_any_side_outside_is_not_covered(requested: ViewportBounds):
    cache = BoundsCache()
    cache.record_loaded(_b(50.2, 50.0, 14.6, 14.2))
    assert cache.is_covered(requested) is False


def test_covered_agrees_with_containment_on_a_grid():
    loaded = _b(10.0, -10.0, 20.0, -20.0)
    cache = BoundsCache()
    cache.record_loaded(loaded)

    steps = [-25.0, -20.0, -5.0, 0.0, 5.0, 20.0, 25.0]
    for s in steps:
        for n in steps:
            if n < s:
                continue
            for w in steps:
                for e in steps:
                    if e < w:
                        continue
                    req = _b(n, s, e, w)
                    expected = n <= 10.0 and s >= -10.0 and e <= 20.0 and w >= -20.0
                    assert cache.is_covered(req) is expected, req


def test_degenerate_stored_bounds_cover_nothing():
    cache = BoundsCache()
    cache.record_loaded(_b(50.0, 50.0, 14.5, 14.4))
    assert cache.is_covered(_b(50.0, 50.0, 14.45, 14.44)) is False

    cache.record_loaded(_b(math.inf, 50.0, 14.5, 14.4))
    assert cache.is_covered(_b(50.1, 50.0, 14.5, 14.4)) is False


def test_record_overwrites_and_reset_clears():
    cache = BoundsCache()
    cache.record_loaded(_b(50.2, 50.0, 14.6, 14.2))
    cache.record_loaded(_b(1.0, 0.0, 1.0, 0.0))
    assert cache.is_covered(_b(50.1, 50.05, 14.5, 14.3)) is False
    assert cache.is_covered(_b(0.5, 0.2, 0.5, 0.2))

    cache.reset()
    assert cache.last_loaded is None
    assert cache.is_covered(_b(0.5, 0.2, 0.5, 0.2)) is False


def test_bounds_reject_inverted_sides():
    with pytest.raises(ValueError):
        _b(49.0, 50.0, 14.5, 14.4)
    # Antimeridian crossing is not representable as a single rectangle.
    with pytest.raises(ValueError):
        _b(10.0, 0.0, -170.0, 170.0)


def test_from_corners_and_padding_clamp():
    b = ViewportBounds.from_corners(50.2, 14.6, 50.0, 14.2)
    assert b == _b(50.2, 50.0, 14.6, 14.2)

    p = b.padded(0.5)
    assert p.north == pytest.approx(50.3)
    assert p.south == pytest.approx(49.9)
    assert p.east == pytest.approx(14.8)
    assert p.west == pytest.approx(14.0)
    assert p.contains(b)

    world = _b(89.0, -89.0, 179.0, -179.0).padded(0.5)
    assert world == _b(90.0, -90.0, 180.0, -180.0)


def test_dict_round_trip_keeps_values():
    b = _b(50.2, 50.0, 14.6, 14.2)
    assert ViewportBounds.from_dict(b.to_dict()) == b
