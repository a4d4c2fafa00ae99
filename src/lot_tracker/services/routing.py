"""
Routing resolver - decides where a unit goes after an approved quality check.

The routing topology is small and fixed:

    finishing group (BH16, BH18, BH31)      -> NABEWERKING  (Nabewerking)
    primary group (BH11, BH12, BH15, BH17)
        item starts with "FL"               -> MAZAK        (Mazak)
        any other item                      -> NABEWERKING  (Nabewerking)
    MAZAK, NABEWERKING                      -> BM01         (Eindinspectie)
    BM01                                    -> GEREED       (Finished, terminal)

Which station plays which role is injected through RoutingConfig, so a plant
can add a forming station without touching the resolver. Everything in this
module is pure: no database access, no side effects.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple, Optional

from ..models.enums import LifecycleStage, StationCapability
from ..utils.constants import (
    FINISHING_GROUP_STATIONS,
    MAZAK_ITEM_PREFIX,
    POST_PROCESSING_STATIONS,
    PRIMARY_GROUP_STATIONS,
    STATION_FINAL_INSPECTION,
    STATION_FINISHED,
    STATION_MAZAK,
    STATION_NABEWERKING,
)
from .exceptions import RoutingUndefined

STATION_PREFIX = "STATION "


class RouteTarget(NamedTuple):
    """Next station and lifecycle stage for a unit."""

    station: str
    stage: LifecycleStage

    @property
    def is_terminal(self) -> bool:
        return self.stage == LifecycleStage.FINISHED


@dataclass(frozen=True)
class RoutingConfig:
    """
    Station capabilities used by the resolver.

    Attributes:
        capabilities: Read-only mapping of normalised station id -> capability
        mazak_item_prefix: Item prefix that sends primary-group output to the Mazak
    """

    capabilities: Mapping[str, StationCapability] = field(default_factory=dict)
    mazak_item_prefix: str = MAZAK_ITEM_PREFIX

    def __post_init__(self):
        normalised = {
            normalize_station(station): StationCapability(capability)
            for station, capability in dict(self.capabilities).items()
        }
        object.__setattr__(self, "capabilities", MappingProxyType(normalised))

    def capability_of(self, station: str) -> Optional[StationCapability]:
        return self.capabilities.get(normalize_station(station))

    def stations_with(self, capability: StationCapability) -> list:
        return sorted(s for s, c in self.capabilities.items() if c == capability)

    @classmethod
    def from_groups(
        cls,
        finishing_direct: Iterable[str] = (),
        primary_forming: Iterable[str] = (),
        post_processing: Iterable[str] = (),
        final_inspection: Iterable[str] = (),
        mazak_item_prefix: str = MAZAK_ITEM_PREFIX,
    ) -> "RoutingConfig":
        """Build a config from station lists, one list per capability."""
        capabilities = {}
        for stations, capability in (
            (finishing_direct, StationCapability.FINISHING_DIRECT),
            (primary_forming, StationCapability.PRIMARY_FORMING),
            (post_processing, StationCapability.POST_PROCESSING),
            (final_inspection, StationCapability.FINAL_INSPECTION),
        ):
            for station in stations:
                capabilities[station] = capability
        return cls(capabilities=capabilities, mazak_item_prefix=mazak_item_prefix)


def normalize_station(station: Optional[str]) -> str:
    """
    Normalise a station id for routing lookups.

    Trims whitespace, upper-cases and drops a leading "Station " label, so
    "station bh11 " and "BH11" resolve identically.
    """
    if station is None:
        return ""
    value = station.strip().upper()
    if value.startswith(STATION_PREFIX):
        value = value[len(STATION_PREFIX):].strip()
    return value


def is_mazak_item(item: Optional[str], prefix: str = MAZAK_ITEM_PREFIX) -> bool:
    """True when the item descriptor starts with the Mazak prefix (any case)."""
    if not item:
        return False
    return item.upper().startswith(prefix.upper())


DEFAULT_ROUTING_CONFIG = RoutingConfig.from_groups(
    finishing_direct=FINISHING_GROUP_STATIONS,
    primary_forming=PRIMARY_GROUP_STATIONS,
    post_processing=POST_PROCESSING_STATIONS,
    final_inspection=[STATION_FINAL_INSPECTION],
)


def resolve_route(
    current_station: str,
    item: Optional[str] = None,
    config: Optional[RoutingConfig] = None,
) -> Optional[RouteTarget]:
    """
    Resolve the next station and lifecycle stage for an approved unit.

    Args:
        current_station: Station the unit is at
        item: Item descriptor (only matters for primary-group stations)
        config: Routing config (defaults to the plant layout)

    Returns:
        RouteTarget, or None when no rule matches the station
    """
    config = config or DEFAULT_ROUTING_CONFIG
    capability = config.capability_of(current_station)

    if capability == StationCapability.FINISHING_DIRECT:
        return RouteTarget(STATION_NABEWERKING, LifecycleStage.NABEWERKING)

    if capability == StationCapability.PRIMARY_FORMING:
        if is_mazak_item(item, config.mazak_item_prefix):
            return RouteTarget(STATION_MAZAK, LifecycleStage.MAZAK)
        return RouteTarget(STATION_NABEWERKING, LifecycleStage.NABEWERKING)

    if capability == StationCapability.POST_PROCESSING:
        return RouteTarget(STATION_FINAL_INSPECTION, LifecycleStage.EINDINSPECTIE)

    if capability == StationCapability.FINAL_INSPECTION:
        return RouteTarget(STATION_FINISHED, LifecycleStage.FINISHED)

    return None


def resolve_route_or_raise(
    current_station: str,
    item: Optional[str] = None,
    config: Optional[RoutingConfig] = None,
) -> RouteTarget:
    """
    Like resolve_route(), but raise when no rule matches.

    Raises:
        RoutingUndefined: If the station has no routing rule
    """
    target = resolve_route(current_station, item, config)
    if target is None:
        raise RoutingUndefined(normalize_station(current_station), item)
    return target
