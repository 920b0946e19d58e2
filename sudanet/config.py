"""
Configuration for the Sudan ET drought analysis.

All tunables of a run live in a frozen :class:`AnalysisConfig` that is passed
explicitly into each stage. Values can be loaded from a YAML file and
overridden from the command line.
"""

import logging
from dataclasses import dataclass, field, fields, asdict, replace as _replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

# MOD16A2GF stores 8-day sums in 0.1 kg/m^2; 0.1 / 8 gives mm/day
MODIS_ET_SCALE_FACTOR = 0.1 / 8

ET_PALETTE = (
    '#ffffcc', '#c7e9b4', '#7fcdbb',
    '#41b6c4', '#1d91c0', '#225ea8', '#0c2c84'
)
DROUGHT_PALETTE = ('#d73027', '#fc8d59', '#fee090', '#e0f3f8')


@dataclass(frozen=True)
class DroughtThresholds:
    """
    SETI thresholds separating the drought severity classes.

    An anomaly is assigned the first class whose threshold it satisfies
    (``<=``) in extreme, severe, moderate order; anything above ``moderate``
    is class 4 (no drought).
    """

    extreme: float = -2.0
    severe: float = -1.5
    moderate: float = -1.0

    def __post_init__(self):
        if not self.extreme < self.severe < self.moderate:
            raise ValueError(
                "Drought thresholds must satisfy extreme < severe < moderate, "
                f"got extreme={self.extreme}, severe={self.severe}, "
                f"moderate={self.moderate}"
            )


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Parameters of one analysis run.

    Parameters
    ----------
    start_year, end_year : int
        Inclusive range of calendar years reported in the annual statistics.
    scale : float
        Working resolution in meters.
    thresholds : DroughtThresholds
        SETI drought class boundaries.
    country : str
        ``ADM0_NAME`` used to select the national and admin-1 boundaries.
    et_asset, et_band, et_scale_factor
        Raw ET collection, its band and the factor converting it to mm/day.
    precip_asset, precip_band, precip_scale_factor
        Raw daily precipitation collection, its band and the mm factor.
    boundary_asset, admin1_asset : str
        GEE FeatureCollections holding level-0 and level-1 boundaries.
    output_prefix : str
        Prefix of every exported file name.
    crs : str
        CRS of downloaded rasters and boundaries.
    """

    start_year: int = 2000
    end_year: int = 2023
    scale: float = 500.0
    thresholds: DroughtThresholds = field(default_factory=DroughtThresholds)
    country: str = 'Sudan'
    et_asset: str = 'MODIS/061/MOD16A2GF'
    et_band: str = 'ET'
    et_scale_factor: float = MODIS_ET_SCALE_FACTOR
    precip_asset: str = 'UCSB-CHG/CHIRPS/DAILY'
    precip_band: str = 'precipitation'
    precip_scale_factor: float = 1.0
    boundary_asset: str = 'FAO/GAUL/2015/level0'
    admin1_asset: str = 'FAO/GAUL/2015/level1'
    output_prefix: str = 'Sudan'
    crs: str = 'EPSG:4326'

    def __post_init__(self):
        if self.start_year > self.end_year:
            raise ValueError(
                f"start_year ({self.start_year}) must be <= end_year ({self.end_year})"
            )
        if self.scale <= 0:
            raise ValueError(f"scale must be positive, got {self.scale}")

    def replace(self, **overrides) -> 'AnalysisConfig':
        """
        Return a copy with the non-None ``overrides`` applied.

        Threshold keys ``extreme``, ``severe`` and ``moderate`` are accepted
        and merged into :attr:`thresholds`.
        """
        overrides = {k: v for k, v in overrides.items() if v is not None}
        threshold_keys = {'extreme', 'severe', 'moderate'}
        threshold_overrides = {
            k: overrides.pop(k) for k in list(overrides) if k in threshold_keys
        }
        if threshold_overrides:
            overrides['thresholds'] = _replace(self.thresholds, **threshold_overrides)
        return _replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisConfig':
        """Build a config from a plain mapping such as a parsed YAML file."""
        data = dict(data)
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        thresholds = data.pop('thresholds', None)
        if thresholds is not None and not isinstance(thresholds, DroughtThresholds):
            if not isinstance(thresholds, dict):
                raise ValueError("'thresholds' must be a mapping")
            thresholds = DroughtThresholds(**{k.lower(): float(v) for k, v in thresholds.items()})
        if thresholds is not None:
            data['thresholds'] = thresholds
        return cls(**data)


def load_config(path: Optional[Union[str, Path]] = None) -> AnalysisConfig:
    """
    Load an :class:`AnalysisConfig` from a YAML file.

    Parameters
    ----------
    path : str or Path, optional
        YAML file containing a mapping of config fields. ``None`` returns
        the defaults.

    Returns
    -------
    AnalysisConfig
        Validated configuration.
    """
    if path is None:
        return AnalysisConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open('r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected YAML mapping at {path}")

    logger.debug(f"Loaded configuration from {path}")
    return AnalysisConfig.from_dict(data)
