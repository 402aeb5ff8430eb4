"""
Configuration for flight-curve estimation and count imputation.

Both stages take a dataclass that normalizes and validates its values in
``__post_init__`` so that bad settings fail before any data is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, FrozenSet, Iterable, Optional, Union

from abundlib.core import InputContractError, ModelFamily

log = logging.getLogger(__name__)

# The only supported flight-curve estimation method
REGIONAL_GAM = "regional_gam"


def _normalize_years(years: Optional[Iterable[int]]) -> Optional[FrozenSet[int]]:
    if years is None:
        return None
    if isinstance(years, (int, str)):
        years = [years]
    return frozenset(int(y) for y in years)


def _require_non_negative(name: str, value: int) -> None:
    if value < 0:
        raise InputContractError(f"{name} must be >= 0, got {value}")


@dataclass
class FlightCurveConfig:
    """Settings for :func:`abundlib.flight_curve.estimate_curves`.

    Parameters
    ----------
    max_sites_per_fit : int
        Maximum number of sites used to fit one year's curve; larger site
        sets are randomly subsampled.
    min_visits : int
        Minimum number of non-anchor visits with a count for a site to be used.
    min_occurrences : int
        Minimum number of positive counts for a site to be used.
    min_sites : int
        Minimum number of qualifying sites needed to fit a curve.
    max_retries : int
        Maximum number of fit attempts per year.
    model_family : str or ModelFamily
        ``"poisson"``, ``"nb"`` or ``"quasipoisson"``.
    restrict_to_complete_seasons : bool
        Only use site-years with a complete sampled season.
    years : iterable of int, optional
        Years to estimate; all years present when None.
    fast_mode : bool
        Stop the penalized IRLS loop at a looser tolerance (large-data mode).
    auto_fast_mode_threshold : bool
        Turn fast mode off when fewer than ``fast_mode_site_threshold``
        sites are fitted.
    retain_models : bool
        Keep fitted models keyed by (species, year).
    retain_working_data : bool
        Keep the per-year working datasets.
    method : str
        Curve estimation method; only ``"regional_gam"`` is available.
    spline_df : int
        Dimension of the cubic B-spline basis for the season smooth.
    smoothing_penalty : float
        Weight of the second-derivative roughness penalty on the season
        smooth (days rescaled to the unit interval).
    max_iterations : int
        Iteration cap passed to the solver.
    fast_mode_site_threshold : int
        Site count below which the automatic threshold disables fast mode.
    seed : int, optional
        Seed for site subsampling when no random generator is supplied.
    """

    max_sites_per_fit: int = 100
    min_visits: int = 3
    min_occurrences: int = 2
    min_sites: int = 1
    max_retries: int = 3
    model_family: Union[str, ModelFamily] = ModelFamily.POISSON
    restrict_to_complete_seasons: bool = True
    years: Optional[FrozenSet[int]] = None
    fast_mode: bool = True
    auto_fast_mode_threshold: bool = True
    retain_models: bool = True
    retain_working_data: bool = True
    method: str = REGIONAL_GAM
    spline_df: int = 10
    smoothing_penalty: float = 1e-3
    max_iterations: int = 100
    fast_mode_site_threshold: int = 100
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self.model_family = ModelFamily.coerce(self.model_family)
        self.years = _normalize_years(self.years)
        if str(self.method).lower().replace("-", "_") not in (REGIONAL_GAM, "regionalgam"):
            raise InputContractError(
                f"Unsupported flight curve method {self.method!r}; "
                f"only {REGIONAL_GAM!r} is available"
            )
        self.method = REGIONAL_GAM
        if self.max_sites_per_fit < 1:
            raise InputContractError(
                f"max_sites_per_fit must be >= 1, got {self.max_sites_per_fit}"
            )
        if self.max_retries < 1:
            raise InputContractError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.spline_df < 4:
            raise InputContractError(f"spline_df must be >= 4, got {self.spline_df}")
        if self.smoothing_penalty <= 0:
            raise InputContractError(
                f"smoothing_penalty must be > 0, got {self.smoothing_penalty}"
            )
        for name in ("min_visits", "min_occurrences", "min_sites"):
            _require_non_negative(name, getattr(self, name))


@dataclass
class ImputationConfig:
    """Settings for :func:`abundlib.imputation.impute`.

    Parameters
    ----------
    model_family : str or ModelFamily
        Only ``"quasipoisson"`` is supported for imputation; the negative
        binomial is rejected.
    restrict_to_complete_seasons : bool
        Only impute site-years with a complete sampled season.
    years : iterable of int, optional
        Years to impute; all years present when None. The returned table
        is restricted to these years.
    use_nearest_phenology : bool
        Borrow the flight curve of the nearest complete year when a year's
        curve is missing.
    retain_models : bool
        Keep the per-year site regressions keyed by (species, year).
    max_iterations : int
        Iteration cap passed to the GLM solver.
    nm_floor : float
        Replacement for in-season NM values of exactly zero.
    search_horizon : int
        Largest year offset searched for a substitute flight curve.
    """

    model_family: Union[str, ModelFamily] = ModelFamily.QUASIPOISSON
    restrict_to_complete_seasons: bool = True
    years: Optional[FrozenSet[int]] = None
    use_nearest_phenology: bool = True
    retain_models: bool = True
    max_iterations: int = 100
    nm_floor: float = 1e-6
    search_horizon: int = 5

    def __post_init__(self) -> None:
        self.model_family = ModelFamily.coerce(self.model_family)
        if self.model_family is ModelFamily.NEGATIVE_BINOMIAL:
            raise InputContractError(
                "Negative binomial distribution is not supported for count "
                "imputation; use quasipoisson instead"
            )
        self.years = _normalize_years(self.years)
        if self.nm_floor <= 0:
            raise InputContractError(f"nm_floor must be > 0, got {self.nm_floor}")
        _require_non_negative("search_horizon", self.search_horizon)


def resolve_config(config: Optional[Any], cls: type, overrides: dict) -> Any:
    """Build a config of type ``cls`` from an instance and/or keyword overrides."""
    valid = {f.name for f in fields(cls)}
    unknown = set(overrides) - valid
    if unknown:
        raise InputContractError(
            f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}"
        )
    if config is None:
        return cls(**overrides)
    if not isinstance(config, cls):
        raise InputContractError(
            f"Expected {cls.__name__}, got {type(config).__name__}"
        )
    if overrides:
        log.debug("Overriding %s fields: %s", cls.__name__, sorted(overrides))
        return replace(config, **overrides)
    return config
