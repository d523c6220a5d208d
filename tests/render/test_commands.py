"""Behavior-driven tests for surface commands and the recording surface."""

import pytest

from routefilm.animation.camera import CameraPose
from routefilm.render.commands import (
    AddLayer,
    AddSource,
    JumpTo,
    RecordingSurface,
    SetSourceData,
    geojson_features,
    geometry_coordinates,
)

LINE = {"type": "LineString", "coordinates": [[11.56, 48.14], [11.58, 48.15]]}


class TestGeojsonFeatures:
    """Test reading source data as features."""

    def test_feature_collection_yields_its_features(self):
        """Should return the features of a collection in order."""
        first = {"type": "Feature", "properties": {"title": "Start"}, "geometry": None}
        second = {"type": "Feature", "properties": {"title": "Finish"}, "geometry": None}

        assert geojson_features({"type": "FeatureCollection", "features": [first, second]}) == [first, second]

    def test_empty_collection(self):
        """Should treat a collection without features as empty."""
        assert geojson_features({"type": "FeatureCollection"}) == []

    def test_feature_is_wrapped(self):
        """Should return a single feature as a one-element list."""
        feature = {"type": "Feature", "properties": {}, "geometry": LINE}

        assert geojson_features(feature) == [feature]

    def test_bare_geometry_becomes_a_feature(self):
        """Should wrap a bare geometry in a feature without properties."""
        (feature,) = geojson_features(LINE)

        assert feature == {"type": "Feature", "properties": {}, "geometry": LINE}


class TestGeometryCoordinates:
    """Test flattening geometries to coordinate lists."""

    def test_point_is_one_coordinate(self):
        """Should return a point as a single coordinate."""
        assert geometry_coordinates({"type": "Point", "coordinates": [11.5, 48.1]}) == [(11.5, 48.1)]

    def test_line_keeps_order(self):
        """Should return every vertex of a line in order."""
        assert geometry_coordinates(LINE) == [(11.56, 48.14), (11.58, 48.15)]

    @pytest.mark.parametrize("geometry", [{}, {"type": "LineString", "coordinates": []}, {"type": "Point"}])
    def test_missing_coordinates_are_empty(self, geometry):
        """Should return nothing for geometries without coordinates."""
        assert geometry_coordinates(geometry) == []


class TestRecordingSurface:
    """Test the in-memory surface used for dry runs."""

    def test_keeps_latest_state(self):
        """Should keep the last data per source, every layer and the camera."""
        surface = RecordingSurface()
        pose = CameraPose((11.57, 48.14), bearing=10.0, pitch=45.0, zoom=14.0)

        surface.apply(
            [
                AddSource("route", LINE),
                AddLayer("route", "route", "line"),
                SetSourceData("route", {"type": "Point", "coordinates": [11.57, 48.14]}),
                JumpTo(pose),
            ]
        )

        assert surface.sources["route"]["type"] == "Point"
        assert set(surface.layers) == {"route"}
        assert surface.camera == pose

    def test_command_history_is_bounded(self):
        """Should keep only the most recent commands on long runs."""
        surface = RecordingSurface(history=3)
        poses = [CameraPose((11.5 + i / 100, 48.1), bearing=0.0, pitch=0.0, zoom=14.0) for i in range(4)]

        surface.apply([AddSource("point", LINE)])
        surface.apply([JumpTo(pose) for pose in poses])

        assert list(surface.commands) == [JumpTo(pose) for pose in poses[1:]]
        assert surface.sources["point"] == LINE
        assert surface.camera == poses[-1]

    def test_unbounded_history(self):
        """Should keep every command when no limit is set."""
        surface = RecordingSurface(history=None)

        surface.apply([SetSourceData("point", LINE)] * 1500)

        assert len(surface.commands) == 1500
