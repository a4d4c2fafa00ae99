"""Tests for the routing resolver.

The resolver is pure, so these tests need no database.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

from lot_tracker.models import LifecycleStage, StationCapability
from lot_tracker.services.exceptions import RoutingUndefined
from lot_tracker.services.routing import (
    DEFAULT_ROUTING_CONFIG,
    RouteTarget,
    RoutingConfig,
    is_mazak_item,
    normalize_station,
    resolve_route,
    resolve_route_or_raise,
)


class TestNormalizeStation:
    def test_trims_and_upper_cases(self):
        assert normalize_station("  bh11 ") == "BH11"

    def test_drops_station_label(self):
        assert normalize_station("Station BH16") == "BH16"

    def test_none_becomes_empty(self):
        assert normalize_station(None) == ""


class TestFinishingGroup:
    """Finishing group stations always route to manual finishing."""

    @pytest.mark.parametrize("station", ["BH16", "BH18", "BH31"])
    def test_routes_to_nabewerking(self, station):
        target = resolve_route(station, "FL-Flange-100")
        assert target == RouteTarget("NABEWERKING", LifecycleStage.NABEWERKING)

    def test_item_is_ignored(self):
        assert resolve_route("BH16", "Bracket") == resolve_route("BH16", "FL-Flange")


class TestPrimaryGroup:
    """Primary group output depends on the item descriptor."""

    @pytest.mark.parametrize("station", ["BH11", "BH12", "BH15", "BH17"])
    def test_fl_item_routes_to_mazak(self, station):
        target = resolve_route(station, "FL-Flange-100")
        assert target.station == "MAZAK"
        assert target.stage == LifecycleStage.MAZAK

    def test_fl_prefix_is_case_insensitive(self):
        assert resolve_route("BH11", "fl-flange").station == "MAZAK"

    @pytest.mark.parametrize("item", ["Bracket 200", "", None, "XFL-100"])
    def test_other_items_route_to_nabewerking(self, item):
        target = resolve_route("BH12", item)
        assert target == RouteTarget("NABEWERKING", LifecycleStage.NABEWERKING)

    def test_station_label_is_normalised(self):
        assert resolve_route("station bh15", "FL-1").station == "MAZAK"


class TestPostProcessingAndInspection:
    @pytest.mark.parametrize("station", ["MAZAK", "NABEWERKING"])
    def test_post_processing_routes_to_final_inspection(self, station):
        target = resolve_route(station, "anything")
        assert target == RouteTarget("BM01", LifecycleStage.EINDINSPECTIE)

    def test_final_inspection_is_terminal(self):
        target = resolve_route("BM01", "FL-Flange-100")
        assert target == RouteTarget("GEREED", LifecycleStage.FINISHED)
        assert target.is_terminal

    def test_intermediate_targets_are_not_terminal(self):
        assert not resolve_route("MAZAK").is_terminal


class TestUnresolved:
    @pytest.mark.parametrize("station", ["BH99", "", "GEREED", "AFKEUR"])
    def test_unknown_station_resolves_to_none(self, station):
        assert resolve_route(station, "FL-1") is None

    def test_or_raise_raises_routing_undefined(self):
        with pytest.raises(RoutingUndefined) as exc_info:
            resolve_route_or_raise(" bh99 ", "FL-1")
        assert exc_info.value.station == "BH99"

    def test_or_raise_returns_target(self):
        assert resolve_route_or_raise("BH16").station == "NABEWERKING"


class TestRoutingConfig:
    def test_package_imports_in_fresh_interpreter(self):
        src = Path(__file__).resolve().parents[1]
        env = dict(os.environ, PYTHONPATH=str(src))
        result = subprocess.run(
            [sys.executable, "-c", "import lot_tracker.services, lot_tracker.main"],
            env=env,
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0, result.stderr

    def test_default_config_keys_are_normalised(self):
        assert set(DEFAULT_ROUTING_CONFIG.capabilities) == {
            "BH11", "BH12", "BH15", "BH17", "BH16", "BH18", "BH31",
            "MAZAK", "NABEWERKING", "BM01",
        }

    def test_default_config_capabilities(self):
        assert DEFAULT_ROUTING_CONFIG.capability_of("BH11") == StationCapability.PRIMARY_FORMING
        assert DEFAULT_ROUTING_CONFIG.capability_of("bh31") == StationCapability.FINISHING_DIRECT
        assert DEFAULT_ROUTING_CONFIG.stations_with(StationCapability.FINAL_INSPECTION) == ["BM01"]

    def test_injected_station_is_routed(self):
        config = RoutingConfig.from_groups(
            finishing_direct=["BH16"],
            primary_forming=["BH40"],
            post_processing=["MAZAK", "NABEWERKING"],
            final_inspection=["BM01"],
        )
        assert resolve_route("BH40", "FL-1", config).station == "MAZAK"
        assert resolve_route("BH11", "FL-1", config) is None

    def test_custom_mazak_prefix(self):
        config = RoutingConfig.from_groups(primary_forming=["BH11"], mazak_item_prefix="XX")
        assert resolve_route("BH11", "XX-part", config).station == "MAZAK"
        assert resolve_route("BH11", "FL-part", config).station == "NABEWERKING"

    def test_capabilities_are_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_ROUTING_CONFIG.capabilities["BH99"] = StationCapability.PRIMARY_FORMING

    def test_is_mazak_item(self):
        assert is_mazak_item("FL-1")
        assert not is_mazak_item(None)
