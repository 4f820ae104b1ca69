"""
Tests for sweep geometry: bounding boxes, grid generation, geohash, distance.
"""

import math

import pytest

from services.registry.pipeline.geo import (
    TERRITORIES,
    BoundingBox,
    encode_geohash,
    generate_grid,
    get_territory,
    grid_size,
    haversine_m,
    parse_coordinates,
    radius_km_for_box,
)


class TestBoundingBox:
    def test_parse_south_west_north_east(self):
        bbox = BoundingBox.parse("49.3, 10.9, 49.6, 11.3")
        assert (bbox.lat_min, bbox.lng_min, bbox.lat_max, bbox.lng_max) == (49.3, 10.9, 49.6, 11.3)

    @pytest.mark.parametrize("value", ["1,2,3", "a,b,c,d", "50,10,49,11", "49,11,50,10"])
    def test_parse_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            BoundingBox.parse(value)

    def test_contains_boundary(self):
        bbox = BoundingBox(lat_min=49.0, lat_max=50.0, lng_min=10.0, lng_max=11.0)
        assert bbox.contains(49.0, 10.0)
        assert bbox.contains(50.0, 11.0)
        assert not bbox.contains(50.01, 10.5)


class TestGenerateGrid:
    def test_row_major_order(self):
        bbox = BoundingBox(lat_min=0.0, lat_max=1.0, lng_min=0.0, lng_max=1.5)
        cells = list(generate_grid(bbox, 0.5))
        assert [(c.row, c.col) for c in cells] == [
            (0, 0), (0, 1), (0, 2),
            (1, 0), (1, 1), (1, 2),
        ]

    def test_cells_tile_the_box_exactly(self):
        bbox = TERRITORIES["de"].bbox
        step = 0.75
        cells = list(generate_grid(bbox, step))

        assert len(cells) == grid_size(bbox, step)

        # Total area equals the box area (no gaps, no overlap)
        area = sum(
            (c.bbox.lat_max - c.bbox.lat_min) * (c.bbox.lng_max - c.bbox.lng_min) for c in cells
        )
        box_area = (bbox.lat_max - bbox.lat_min) * (bbox.lng_max - bbox.lng_min)
        assert math.isclose(area, box_area, rel_tol=1e-9)

        # Outer edges coincide with the box
        assert min(c.bbox.lat_min for c in cells) == bbox.lat_min
        assert max(c.bbox.lat_max for c in cells) == bbox.lat_max
        assert min(c.bbox.lng_min for c in cells) == bbox.lng_min
        assert max(c.bbox.lng_max for c in cells) == bbox.lng_max

    def test_adjacent_cells_share_edges(self):
        bbox = BoundingBox(lat_min=47.2, lat_max=48.3, lng_min=5.8, lng_max=7.1)
        cells = {(c.row, c.col): c for c in generate_grid(bbox, 0.5)}

        for (row, col), cell in cells.items():
            right = cells.get((row, col + 1))
            if right:
                assert cell.bbox.lng_max == right.bbox.lng_min
            above = cells.get((row + 1, col))
            if above:
                assert cell.bbox.lat_max == above.bbox.lat_min

    def test_boundary_cells_are_clipped(self):
        bbox = BoundingBox(lat_min=0.0, lat_max=1.2, lng_min=0.0, lng_max=0.5)
        cells = list(generate_grid(bbox, 0.5))
        assert len(cells) == 3
        assert cells[-1].bbox.lat_min == 1.0
        assert cells[-1].bbox.lat_max == 1.2

    def test_exact_multiple_has_no_sliver_cell(self):
        bbox = BoundingBox(lat_min=0.0, lat_max=1.0, lng_min=0.0, lng_max=1.0)
        assert len(list(generate_grid(bbox, 0.5))) == 4

    def test_step_larger_than_box_gives_single_cell(self):
        bbox = BoundingBox(lat_min=49.3, lat_max=49.6, lng_min=10.9, lng_max=11.3)
        cells = list(generate_grid(bbox, 0.75))
        assert len(cells) == 1
        assert cells[0].bbox == bbox

    def test_rejects_non_positive_step(self):
        bbox = BoundingBox(lat_min=0.0, lat_max=1.0, lng_min=0.0, lng_max=1.0)
        with pytest.raises(ValueError):
            list(generate_grid(bbox, 0))

    def test_cell_label_and_overpass_bbox(self):
        bbox = BoundingBox(lat_min=49.0, lat_max=49.5, lng_min=11.0, lng_max=11.5)
        cell = next(generate_grid(bbox, 0.5))
        assert cell.overpass_bbox() == "49.0,11.0,49.5,11.5"
        assert str(cell) == "cell[0,0](49.0,11.0,49.5,11.5)"
        assert cell.center == (49.25, 11.25)


class TestGeohash:
    def test_known_value(self):
        assert encode_geohash(57.64911, 10.40744, precision=11) == "u4pruydqqvj"

    def test_default_precision_is_nine(self):
        gh = encode_geohash(49.4521, 11.0767)
        assert len(gh) == 9
        assert gh.startswith("u0")

    def test_prefix_property(self):
        assert encode_geohash(57.64911, 10.40744, precision=5) == "u4pru"


class TestDistance:
    def test_zero_distance(self):
        assert haversine_m(49.4521, 11.0767, 49.4521, 11.0767) == 0.0

    def test_one_millidegree_latitude(self):
        assert haversine_m(49.4521, 11.0767, 49.4531, 11.0767) == pytest.approx(111.2, abs=0.5)

    def test_scenario_points_within_80m(self):
        assert haversine_m(49.4521, 11.0767, 49.45213, 11.07671) < 80

    def test_radius_for_box(self):
        bbox = BoundingBox(lat_min=49.0, lat_max=50.0, lng_min=11.0, lng_max=12.0)
        # max(111, 85) / 2 rounded up
        assert radius_km_for_box(bbox) == 56


class TestParseCoordinates:
    def test_numeric_strings(self):
        assert parse_coordinates("49.4521", "11.0767") == (49.4521, 11.0767)

    @pytest.mark.parametrize("lat, lng", [
        (None, 11.0),
        ("", "11.0"),
        ("n/a", "11.0"),
        (49.0, {"lon": 11.0}),
        (91.0, 11.0),
        (49.0, -180.5),
        ("nan", "11.0"),
    ])
    def test_unusable_values(self, lat, lng):
        assert parse_coordinates(lat, lng) is None


class TestTerritories:
    def test_germany(self):
        de = get_territory("DE")
        assert de.country_code == "DE"
        assert de.bbox == BoundingBox(lat_min=47.2, lat_max=55.1, lng_min=5.8, lng_max=15.1)

    def test_unknown_territory(self):
        with pytest.raises(ValueError, match="Unknown territory"):
            get_territory("xx")
