# File: src/parkcore/infrastructure/factories.py
"""
Factories for building garages

1. SpotFactory - Creates single spots from keyword arguments or config rows
2. GarageLayoutBuilder - Builds a full floors x bays x spots layout
3. create_parking_service - Wires storage, configuration and events together
"""

from typing import Any, Dict, Iterable, List, Optional
import logging

from ..domain.models import Spot, SpotType, SpotFeature, SpotStatus
from .config import GarageConfig, LayoutConfig, SpotDefinition, ConfigProvider


logger = logging.getLogger(__name__)


class SpotFactory:
    """Factory for creating parking spots"""

    def create(
        self,
        floor: int,
        bay: int,
        spot_number: int,
        spot_type=SpotType.STANDARD,
        features: Optional[Iterable] = None,
        status=SpotStatus.AVAILABLE,
    ) -> Spot:
        return Spot(
            floor=floor,
            bay=bay,
            spot_number=spot_number,
            spot_type=SpotType.parse(spot_type),
            status=SpotStatus(status),
            features=[SpotFeature(f) for f in (features or ())],
        )

    def create_from_definition(self, definition: SpotDefinition) -> Spot:
        return self.create(
            definition.floor, definition.bay, definition.spot_number,
            definition.spot_type, definition.features, definition.status,
        )

    def create_from_dict(self, data: Dict[str, Any]) -> Spot:
        return self.create_from_definition(SpotDefinition.model_validate(data))


class GarageLayoutBuilder:
    """
    Builds the spot list for a garage

    Generated spots come first; explicit definitions replace generated
    spots at the same location or add new ones.
    """

    def __init__(self, spot_factory: Optional[SpotFactory] = None):
        self.spot_factory = spot_factory or SpotFactory()

    def build(self, layout: LayoutConfig) -> List[Spot]:
        spots: Dict[str, Spot] = {}

        for floor in range(1, layout.floors + 1):
            for bay in range(1, layout.bays_per_floor + 1):
                spot_type = layout.bay_spot_types.get(bay, layout.default_spot_type)
                for number in range(1, layout.spots_per_bay + 1):
                    features = []
                    if bay in layout.ev_charging_bays:
                        features.append(SpotFeature.EV_CHARGING)
                    if floor == 1 and number in layout.handicap_spot_numbers:
                        features.append(SpotFeature.HANDICAP)
                    spot = self.spot_factory.create(floor, bay, number, spot_type, features)
                    spots[spot.id] = spot

        for definition in layout.spots:
            spot = self.spot_factory.create_from_definition(definition)
            spots[spot.id] = spot

        logger.info(f"Built garage layout with {len(spots)} spots")
        return list(spots.values())

    def build_from_config(self, config: GarageConfig) -> List[Spot]:
        return self.build(config.layout)


def populate_inventory(inventory, spots: Iterable[Spot]) -> int:
    """Add spots that the inventory does not hold yet; returns how many were added"""
    existing = {spot.id for spot in inventory.get_all()}
    added = 0
    for spot in spots:
        if spot.id not in existing:
            inventory.add(spot)
            added += 1
    return added


def create_parking_service(
    config_provider: Optional[ConfigProvider] = None,
    storage=None,
    event_bus=None,
    clock=None,
):
    """
    Build a ParkingService with its collaborators

    Without a storage argument the garage lives in memory and is populated
    from the configured layout.
    """
    from ..application.parking_service import ParkingService
    from .messaging import EventBus
    from .repositories import InMemoryStorage

    config_provider = config_provider or ConfigProvider()
    if storage is None:
        storage = InMemoryStorage()
    with storage.unit_of_work() as uow:
        populate_inventory(uow.spots, GarageLayoutBuilder().build_from_config(config_provider.config))

    return ParkingService(
        unit_of_work_factory=storage.unit_of_work,
        config=config_provider,
        event_bus=event_bus if event_bus is not None else EventBus(),
        clock=clock,
    )
