from geo.aoi import ViewportBounds
from geo.index import RecordIndex
from geo.ops import distance_m, is_finite_coord, radius_bbox_deg
from layers.types import SpatialRecord


def test_distance_is_geodesic_meters():
    # One degree of latitude is ~111 km.
    d = distance_m(50.0, 14.4, 51.0, 14.4)
    assert 110_000.0 < d < 112_000.0
    assert distance_m(50.0, 14.4, 50.0, 14.4) == 0.0


def test_radius_box_contains_the_circle():
    min_lon, min_lat, max_lon, max_lat = radius_bbox_deg(50.0, 14.4, 1_000.0)
    assert min_lon < 14.4 < max_lon
    assert min_lat < 50.0 < max_lat
    assert distance_m(50.0, 14.4, max_lat, 14.4) >= 999.0
    assert distance_m(50.0, 14.4, 50.0, max_lon) >= 999.0


def test_finite_coordinate_check():
    assert is_finite_coord(50.0, 14.4)
    assert not is_finite_coord(float("nan"), 14.4)
    assert not is_finite_coord(50.0, float("-inf"))
    assert not is_finite_coord("north", 14.4)


def test_index_queries_are_inclusive_and_sorted_by_id():
    recs = [
        SpatialRecord(id="c", lat=50.1, lon=14.1),
        SpatialRecord(id="a", lat=50.0, lon=14.0),
        SpatialRecord(id="b", lat=50.2, lon=14.2),
        SpatialRecord(id="bad", lat=float("nan"), lon=14.1),
    ]
    index = RecordIndex(records=recs)
    got = index.in_bounds(ViewportBounds(north=50.2, south=50.0, east=14.2, west=14.0))
    assert [r.id for r in got] == ["a", "b", "c"]
    assert index.in_bounds(ViewportBounds(north=1.0, south=0.0, east=1.0, west=0.0)) == []


def test_index_nearby_orders_by_distance():
    recs = [
        SpatialRecord(id="far", lat=50.0, lon=14.41),
        SpatialRecord(id="near", lat=50.0, lon=14.401),
        SpatialRecord(id="outside", lat=50.0, lon=14.5),
    ]
    index = RecordIndex(records=recs)
    got = index.nearby(50.0, 14.4, 1_000.0)
    assert [r.id for r, _d in got] == ["near", "far"]
    assert got[0][1] < got[1][1] <= 1_000.0
    assert RecordIndex(records=[]).nearby(50.0, 14.4, 1_000.0) == []
