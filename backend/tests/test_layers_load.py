import json

from layers.loaders import load_geojson_records, records_to_geojson
from layers.types import SpatialRecord


def test_load_geojson_points_and_multipoints(tmp_path):
    p = tmp_path / "records.geojson"
    p.write_text(
        json.dumps(
            {
                "type": "FeatureCollection",
                "features": [
                    {
                        "type": "Feature",
                        "id": "node/1",
                        "geometry": {"type": "Point", "coordinates": [14.42, 50.08]},
                        "properties": {"category": "pub", "name": "U Zlatého tygra"},
                    },
                    {
                        "type": "Feature",
                        "geometry": {"type": "Point", "coordinates": [14.43, 50.09]},
                        "properties": {"id": "node/2"},
                    },
                    {
                        "type": "Feature",
                        "geometry": {
                            "type": "MultiPoint",
                            "coordinates": [[14.40, 50.07], [14.41, 50.06]],
                        },
                        "properties": {"category": "stop"},
                    },
                    {"type": "Feature", "geometry": None, "properties": {}},
                    {
                        "type": "Feature",
                        "geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1]]},
                        "properties": {},
                    },
                ],
            }
        ),
        encoding="utf-8",
    )

    recs = load_geojson_records(p)

    assert [r.id for r in recs] == ["node/1", "node/2", "rec-2-0", "rec-2-1"]
    first = recs[0]
    assert (first.lat, first.lon) == (50.08, 14.42)
    assert first.category == "pub"
    assert first.attributes == {"name": "U Zlatého tygra"}
    assert recs[1].category == ""
    assert recs[2].category == "stop"


def test_records_export_loads_back(tmp_path):
    recs = [SpatialRecord(id="a", lat=50.0, lon=14.0, category="pub", attributes={"x": 1})]
    p = tmp_path / "out.geojson"
    p.write_text(json.dumps(records_to_geojson(recs)), encoding="utf-8")
    assert load_geojson_records(p) == recs
