# File: src/parkcore/infrastructure/config.py
"""
Garage configuration

The configuration file (JSON or YAML) is validated by pydantic models and turned
into the frozen domain policies. ConfigProvider keeps the current policies
and can re-read the file at runtime; engines ask the provider on every
call, so a reload takes effect without rebuilding the service.
"""

from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging
import os
import threading

from pydantic import BaseModel, ConfigDict, Field, field_validator
import yaml

from ..domain.models import VehicleType, RateType, SpotType, SpotFeature, SpotStatus
from ..domain.policies import AssignmentPreferences, RateTable, BillingPolicy


ENV_PREFIX = "PARKCORE_"

logger = logging.getLogger(__name__)


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=False)


# ============================================================================
# SECTIONS
# ============================================================================

class SpotDefinition(ConfigModel):
    """One explicitly configured spot"""
    floor: int = Field(..., ge=1)
    bay: int = Field(..., ge=1)
    spot_number: int = Field(..., ge=1)
    spot_type: SpotType = SpotType.STANDARD
    features: List[SpotFeature] = Field(default_factory=list)
    status: SpotStatus = SpotStatus.AVAILABLE

    @field_validator("status")
    @classmethod
    def not_occupied(cls, value: SpotStatus) -> SpotStatus:
        if value == SpotStatus.OCCUPIED:
            raise ValueError("Spots cannot be configured as occupied")
        return value


class LayoutConfig(ConfigModel):
    """
    Generated grid of floors x bays x spots plus explicit extra spots

    Bays default to standard spots unless listed in bay_spot_types.
    """
    floors: int = Field(0, ge=0)
    bays_per_floor: int = Field(6, ge=1)
    spots_per_bay: int = Field(10, ge=1)
    default_spot_type: SpotType = SpotType.STANDARD
    bay_spot_types: Dict[int, SpotType] = Field(default_factory=dict)
    ev_charging_bays: List[int] = Field(default_factory=list)
    handicap_spot_numbers: List[int] = Field(default_factory=list)
    spots: List[SpotDefinition] = Field(default_factory=list)


class AssignmentConfig(ConfigModel):
    prefer_lower_floors: bool = True
    floor_base_score: float = Field(100, ge=0)
    floor_penalty_per_level: float = Field(10, ge=0)
    max_floor_penalty: float = Field(100, ge=0)
    bay_preference_bonus: float = Field(10, ge=0)
    preferred_bays: Dict[int, float] = Field(
        default_factory=lambda: {1: 3, 5: 3, 6: 3, 2: 2, 3: 2, 4: 2}
    )
    default_bay_weight: float = Field(1, ge=0)
    spot_number_base: float = Field(50, ge=0)
    exact_type_match_bonus: float = Field(25, ge=0)
    ev_charging_bonus: float = Field(10, ge=0)
    handicap_penalty: float = Field(5, ge=0)

    def to_policy(self) -> AssignmentPreferences:
        return AssignmentPreferences(**self.model_dump())


class RatesConfig(ConfigModel):
    currency: str = Field("USD", min_length=3, max_length=3)
    hourly: Dict[VehicleType, Decimal] = Field(default_factory=lambda: {
        VehicleType.COMPACT: Decimal("4.00"),
        VehicleType.STANDARD: Decimal("5.00"),
        VehicleType.OVERSIZED: Decimal("7.00"),
    })
    multipliers: Dict[RateType, Decimal] = Field(default_factory=lambda: {
        RateType.HOURLY: Decimal("1.0"),
        RateType.DAILY: Decimal("0.8"),
        RateType.MONTHLY: Decimal("0.6"),
    })
    hour_caps: Dict[RateType, int] = Field(default_factory=lambda: {
        RateType.DAILY: 8,
        RateType.MONTHLY: 24,
    })

    @field_validator("hourly")
    @classmethod
    def all_vehicle_types_priced(cls, value):
        missing = [vt.value for vt in VehicleType if vt not in value]
        if missing:
            raise ValueError(f"missing hourly rate for {missing}")
        return value

    def to_policy(self) -> RateTable:
        return RateTable(
            hourly_rates=self.hourly,
            rate_type_multipliers=self.multipliers,
            billable_hour_caps=self.hour_caps,
            currency=self.currency,
        )


class BillingConfig(ConfigModel):
    grace_period_minutes: int = Field(15, ge=0)
    apply_grace_period_by_default: bool = True
    minimum_billable_hours: int = Field(1, ge=0)
    round_up_partial_hours: bool = True

    def to_policy(self) -> BillingPolicy:
        return BillingPolicy(**self.model_dump())


class GarageConfig(ConfigModel):
    """Top level configuration document"""
    name: str = "Main Garage"
    database_url: str = "sqlite:///parkcore.db"
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    assignment: AssignmentConfig = Field(default_factory=AssignmentConfig)
    rates: RatesConfig = Field(default_factory=RatesConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None, environ=None) -> 'GarageConfig':
        """Read a JSON or YAML file (if given) and apply PARKCORE_* environment overrides"""
        if path is None:
            config = cls()
        elif Path(path).suffix.lower() in (".yaml", ".yml"):
            config = cls.model_validate(yaml.safe_load(Path(path).read_text()) or {})
        else:
            config = cls.model_validate_json(Path(path).read_text())
        return config.with_env_overrides(os.environ if environ is None else environ)

    def with_env_overrides(self, environ) -> 'GarageConfig':
        data = self.model_dump()
        url = environ.get(f"{ENV_PREFIX}DATABASE_URL")
        if url:
            data["database_url"] = url
        grace = environ.get(f"{ENV_PREFIX}GRACE_PERIOD_MINUTES")
        if grace:
            data["billing"]["grace_period_minutes"] = int(grace)
        return type(self).model_validate(data)


# ============================================================================
# PROVIDER
# ============================================================================

class ConfigProvider:
    """
    Holds the current policies and swaps them on reload

    Readers always get one consistent set of policies: reload builds new
    objects and replaces them in a single assignment.
    """

    def __init__(self, config: Optional[GarageConfig] = None,
                 path: Optional[Union[str, Path]] = None, environ=None):
        self.path = Path(path) if path else None
        self._environ = environ
        self._lock = threading.Lock()
        self._state = None
        self._apply(config if config is not None else GarageConfig.load(self.path, environ))

    def _apply(self, config: GarageConfig) -> None:
        state = (
            config,
            config.assignment.to_policy(),
            config.rates.to_policy(),
            config.billing.to_policy(),
        )
        with self._lock:
            self._state = state

    def reload(self, config: Optional[GarageConfig] = None) -> GarageConfig:
        """Re-read the file (or take the given config) and publish new policies"""
        if config is None:
            config = GarageConfig.load(self.path, self._environ)
        self._apply(config)
        logger.info(
            f"Configuration reloaded: grace={config.billing.grace_period_minutes}m, "
            f"currency={config.rates.currency}"
        )
        return config

    @property
    def config(self) -> GarageConfig:
        return self._state[0]

    def get_preferences(self) -> AssignmentPreferences:
        return self._state[1]

    def get_rate_table(self) -> RateTable:
        return self._state[2]

    def get_billing_policy(self) -> BillingPolicy:
        return self._state[3]
