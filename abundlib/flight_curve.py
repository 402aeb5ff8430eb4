"""
abundlib.flight_curve - Regional flight curve estimation.

Fits one smooth seasonal activity curve per species-year from counts pooled
over monitoring sites, and normalizes it so that the expected relative
abundance (NM) sums to one over the season.

Workflow
--------
1. Keep sites with enough visits and positive counts in the year.
2. Subsample sites when there are more than ``max_sites_per_fit``.
3. Fit ``COUNT ~ s(day) + site`` with the chosen family, retrying with a
   fresh subsample when the solver fails.
4. Predict every (site, day), zero the out-of-season days and divide by the
   site total.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from abundlib.config import FlightCurveConfig, resolve_config
from abundlib.core import (
    ANCHOR,
    COMPLT_SEASON,
    COUNT,
    CURVE_COLUMNS,
    DATE,
    DAY_SINCE,
    FITTED,
    M_SEASON,
    M_YEAR,
    NM,
    SITE_ID,
    SITE_SUM,
    SPECIES,
    WEEK,
    WEEK_DAY,
    FitFailure,
    FitSuccess,
    add_trimmed_day,
    select_years,
    species_of,
    validate_season_table,
)
from abundlib.smoothing import fit_seasonal_smooth

log = logging.getLogger(__name__)

# Columns kept in the per-year working dataset
_WORKING_COLUMNS = [
    SPECIES,
    SITE_ID,
    DATE,
    WEEK,
    WEEK_DAY,
    DAY_SINCE,
    M_YEAR,
    M_SEASON,
    COUNT,
    ANCHOR,
]

# Number of decimals kept in the normalized curve
NM_DECIMALS = 5

STATUS_FITTED = "fitted"
STATUS_FAILED = "failed"
STATUS_INSUFFICIENT = "insufficient_sites"


@dataclass
class CurveFit:
    """Outcome of fitting the flight curve for a single species-year.

    Parameters
    ----------
    curve : pd.DataFrame
        One row per day with the normalized relative abundance NM (all
        missing when the fit failed).
    fit : FitSuccess or FitFailure
        Tagged solver outcome of the last attempt.
    data : pd.DataFrame
        Working dataset of the last attempt with FITTED, SITE_SUM and NM.
    """

    curve: pd.DataFrame
    fit: Union[FitSuccess, FitFailure]
    data: pd.DataFrame

    @property
    def ok(self) -> bool:
        return self.fit.ok and self.curve[NM].notna().all()


@dataclass
class FlightCurveResult:
    """Multi-year flight curves for one species.

    Parameters
    ----------
    curve : pd.DataFrame
        Concatenated per-year curves (see :data:`abundlib.core.CURVE_COLUMNS`).
    models : dict, optional
        Fit outcome per ``(species, year)``; None for years without enough
        sites. None when models were not retained.
    data : pd.DataFrame, optional
        Concatenated working datasets; None when not retained.
    status : dict
        Year -> ``"fitted"``, ``"failed"`` or ``"insufficient_sites"``.
    messages : list of str
        Diagnostics for non-fatal conditions.
    """

    curve: pd.DataFrame
    models: Optional[Dict[Tuple[Any, int], Any]] = None
    data: Optional[pd.DataFrame] = None
    status: Dict[int, str] = field(default_factory=dict)
    messages: List[str] = field(default_factory=list)

    @property
    def years(self) -> List[int]:
        return sorted(self.status)

    def complete_years(self) -> List[int]:
        """Years whose curve has no missing NM."""
        if self.curve.empty:
            return []
        missing = self.curve.groupby(M_YEAR)[NM].apply(lambda s: s.isna().any())
        return sorted(int(y) for y, m in missing.items() if not m)

    def curve_for(self, year: int) -> pd.DataFrame:
        """Curve rows of a single year."""
        return self.curve[self.curve[M_YEAR] == year].reset_index(drop=True)


# ---------------------------------------------------------------------------
# Site selection
# ---------------------------------------------------------------------------


def qualifying_sites(dataset_y: pd.DataFrame, min_visits: int, min_occurrences: int) -> list:
    """
    Sites with at least ``min_visits`` counted visits and ``min_occurrences``
    positive counts in the year. Anchor rows are not visits.
    """
    visits = dataset_y[dataset_y[COUNT].notna() & (dataset_y[ANCHOR] == 0)]
    n_visits = visits.groupby(SITE_ID).size()
    n_occur = visits[visits[COUNT] > 0].groupby(SITE_ID).size()
    n_occur = n_occur.reindex(n_visits.index, fill_value=0)
    keep = n_visits[(n_visits >= min_visits) & (n_occur >= min_occurrences)].index
    return list(keep)


def sample_sites(
    dataset_y: pd.DataFrame, max_sites: int, rng: np.random.Generator
) -> pd.DataFrame:
    """Uniform random subset of ``max_sites`` sites, without replacement."""
    sites = pd.unique(dataset_y[SITE_ID])
    if len(sites) <= max_sites:
        return dataset_y.copy()
    chosen = rng.choice(sites, size=max_sites, replace=False)
    return dataset_y[dataset_y[SITE_ID].isin(chosen)].copy()


def _missing_curve(rows: pd.DataFrame) -> pd.DataFrame:
    curve = rows.copy()
    curve[NM] = np.nan
    curve = curve.drop_duplicates(subset=[SPECIES, DAY_SINCE])
    return curve[list(CURVE_COLUMNS)].sort_values(DAY_SINCE).reset_index(drop=True)


def _normalize(data: pd.DataFrame, fitted: np.ndarray) -> Optional[str]:
    """Fill FITTED, SITE_SUM and NM in place; return a reason on degeneracy."""
    data[FITTED] = fitted
    data.loc[data[M_SEASON] == 0, FITTED] = 0.0
    if not np.isfinite(data[FITTED].to_numpy()).all():
        return "non-finite fitted values"
    data[SITE_SUM] = data.groupby(SITE_ID)[FITTED].transform("sum")
    with np.errstate(divide="ignore", invalid="ignore"):
        data[NM] = (data[FITTED] / data[SITE_SUM]).round(NM_DECIMALS)
    if not np.isfinite(data[NM].to_numpy()).all():
        return "non-finite normalized curve"
    return None


# ---------------------------------------------------------------------------
# CurveFitter
# ---------------------------------------------------------------------------


def fit_flight_curve(
    dataset_y: pd.DataFrame,
    config: Optional[FlightCurveConfig] = None,
    rng: Optional[np.random.Generator] = None,
) -> CurveFit:
    """
    Fit the regional flight curve of one species-year.

    Parameters
    ----------
    dataset_y : pd.DataFrame
        Filtered counts of the species-year over all qualifying sites, with
        a TRIMDAYNO column.
    config : FlightCurveConfig, optional
        Sample cap, family, retry budget and solver mode.
    rng : np.random.Generator, optional
        Random source for site subsampling (seeded from ``config.seed``
        when omitted).

    Returns
    -------
    CurveFit
        Per-day curve, tagged fit outcome and working dataset.
    """
    config = config or FlightCurveConfig()
    if rng is None:
        rng = np.random.default_rng(config.seed)

    species = species_of(dataset_y)
    year = int(dataset_y[M_YEAR].iloc[0])
    outcome: Union[FitSuccess, FitFailure] = FitFailure("not attempted", trials=0)
    working = dataset_y

    for trial in range(1, config.max_retries + 1):
        working = sample_sites(dataset_y, config.max_sites_per_fit, rng)
        n_sites = working[SITE_ID].nunique()

        fast = config.fast_mode
        if config.auto_fast_mode_threshold and n_sites < config.fast_mode_site_threshold:
            fast = False

        log.info(
            "Fitting the regional GAM for species %s and year %d with %d sites, "
            "using %s -> trial %d",
            species,
            year,
            n_sites,
            "fast mode" if fast else "standard mode",
            trial,
        )
        outcome = fit_seasonal_smooth(
            working,
            config.model_family,
            spline_df=config.spline_df,
            max_iterations=config.max_iterations,
            fast=fast,
            penalty=config.smoothing_penalty,
        )
        outcome.trials = trial
        if outcome.ok:
            break
        log.debug("Trial %d for %s %d failed: %s", trial, species, year, outcome.reason)

    if outcome.ok:
        reason = _normalize(working, outcome.fitted)
        if reason is not None:
            outcome = FitFailure(reason, trials=outcome.trials)

    if not outcome.ok:
        log.warning(
            "Error in fitting the regional GAM for species %s and year %d; %s after %d trial(s)",
            species,
            year,
            outcome.reason,
            outcome.trials,
        )
        working[FITTED] = np.nan
        working[NM] = np.nan

    curve = working.drop_duplicates(subset=[SPECIES, DAY_SINCE])
    curve = curve[list(CURVE_COLUMNS)].sort_values(DAY_SINCE).reset_index(drop=True)
    return CurveFit(curve=curve, fit=outcome, data=working.reset_index(drop=True))


# ---------------------------------------------------------------------------
# CurveEstimator
# ---------------------------------------------------------------------------


def estimate_curves(
    season_table: pd.DataFrame,
    config: Optional[FlightCurveConfig] = None,
    rng: Optional[Union[np.random.Generator, int]] = None,
    **options: Any,
) -> FlightCurveResult:
    """
    Compute the annual flight curves of a species across all requested years.

    Parameters
    ----------
    season_table : pd.DataFrame
        Complete per-site time series of counts and season flags for one
        species (column names are case-insensitive).
    config : FlightCurveConfig, optional
        Estimation settings; keyword ``options`` override its fields.
    rng : np.random.Generator or int, optional
        Random source (or seed) shared by all years' site subsampling.

    Returns
    -------
    FlightCurveResult
        Curve table for every year plus optional models and working data.

    Raises
    ------
    InputContractError
        If required columns are missing or the configuration is invalid.
    """
    config = resolve_config(config, FlightCurveConfig, options)
    table = validate_season_table(season_table)
    if rng is None or isinstance(rng, (int, np.integer)):
        rng = np.random.default_rng(config.seed if rng is None else int(rng))

    if config.restrict_to_complete_seasons:
        table = table[table[COMPLT_SEASON] == 1]

    curves: List[pd.DataFrame] = []
    data: List[pd.DataFrame] = []
    models: Dict[Tuple[Any, int], Any] = {}
    result = FlightCurveResult(curve=pd.DataFrame(columns=list(CURVE_COLUMNS)))

    for year in select_years(table, config.years):
        year_rows = table[table[M_YEAR] == year]
        dataset_y = add_trimmed_day(year_rows[_WORKING_COLUMNS].copy())
        species = species_of(dataset_y)

        sites = qualifying_sites(dataset_y, config.min_visits, config.min_occurrences)
        if not sites or len(sites) < config.min_sites:
            msg = (
                f"Not enough sites with observations for estimating the flight curve "
                f"for species {species} in {year} ({len(sites)} < {max(config.min_sites, 1)})"
            )
            log.warning(msg)
            result.messages.append(msg)
            result.status[year] = STATUS_INSUFFICIENT
            curves.append(_missing_curve(dataset_y))
            models[(species, year)] = None
            continue

        dataset_y = dataset_y[dataset_y[SITE_ID].isin(sites)].copy()
        fitted = fit_flight_curve(dataset_y, config, rng)
        if fitted.ok:
            result.status[year] = STATUS_FITTED
        else:
            msg = (
                f"Flight curve for species {species} in {year} could not be estimated: "
                f"{fitted.fit.reason}"
            )
            result.messages.append(msg)
            result.status[year] = STATUS_FAILED

        curves.append(fitted.curve)
        models[(species, year)] = fitted.fit
        data.append(fitted.data)

    if curves:
        result.curve = pd.concat(curves, ignore_index=True)
    if config.retain_models:
        result.models = models
    if config.retain_working_data:
        result.data = pd.concat(data, ignore_index=True) if data else pd.DataFrame()

    log.info(
        "Estimated flight curves for %d year(s): %d fitted",
        len(result.status),
        sum(1 for s in result.status.values() if s == STATUS_FITTED),
    )
    return result
