"""
abundlib.imputation - Site-level count imputation against the flight curve.

Each site-year is fitted by a GLM whose offset is the regional flight curve,
so that a site's expected daily count is its abundance scaled by the shared
seasonal shape. Missing counts are replaced by the fitted values.

Sites that never recorded the species in a year are not modelled: their
expected counts are zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from abundlib.config import ImputationConfig, resolve_config
from abundlib.core import (
    COMPLT_SEASON,
    COUNT,
    COUNT_IMPUTED,
    DATE,
    DAY_SINCE,
    FITTED,
    LEAP_DAY_TAIL,
    M_SEASON,
    M_YEAR,
    NM,
    SITE_ID,
    SPECIES,
    TRIMDAYNO,
    FitFailure,
    InputContractError,
    ModelFamily,
    SiteRegressionResult,
    check_columns,
    normalize_columns,
    select_years,
    validate_season_table,
)
from abundlib.flight_curve import FlightCurveResult
from abundlib.phenology import resolve_phenology
from abundlib.smoothing import fit_offset_glm

log = logging.getLogger(__name__)

IMPUTED_COLUMNS = [TRIMDAYNO, NM, FITTED, COUNT_IMPUTED]


@dataclass
class ImputationResult:
    """Imputed season table for one species.

    Parameters
    ----------
    imputed : pd.DataFrame
        Season table extended with TRIMDAYNO, NM, FITTED and COUNT_IMPUTED.
    models : dict, optional
        :class:`~abundlib.core.SiteRegressionResult` per ``(species, year)``;
        None when models were not retained.
    donor_years : dict
        Target year -> year whose flight curve was borrowed.
    messages : list of str
        Diagnostics for non-fatal conditions.
    """

    imputed: pd.DataFrame
    models: Optional[Dict[Tuple[Any, int], SiteRegressionResult]] = None
    donor_years: Dict[int, int] = field(default_factory=dict)
    messages: List[str] = field(default_factory=list)


def split_sites(rows_y: pd.DataFrame) -> Tuple[list, list]:
    """(nonzero, zero) sites by the sum of their observed counts in the year."""
    totals = rows_y.groupby(SITE_ID)[COUNT].sum()
    return list(totals[totals > 0].index), list(totals[totals == 0].index)


# ---------------------------------------------------------------------------
# SiteRegressionFitter
# ---------------------------------------------------------------------------


def fit_site_regression(
    rows_y: pd.DataFrame,
    family: Union[str, ModelFamily] = ModelFamily.QUASIPOISSON,
    max_iterations: int = 100,
) -> Tuple[pd.DataFrame, SiteRegressionResult]:
    """
    Fit the per-site GLM with the flight curve as offset for one year.

    Only sites with at least one positive count enter the model; the fitted
    values of all-zero sites are set to 0 without fitting.

    Parameters
    ----------
    rows_y : pd.DataFrame
        Season rows of one species-year with NM (no missing NM on the rows
        to be fitted).
    family : str or ModelFamily
        ``"quasipoisson"`` (offset ``log(NM)``) or ``"nb"`` (offset ``NM``).
        Either way the model has one coefficient per site and no separate
        intercept; a single site reduces to one constant term.
    max_iterations : int
        GLM iteration cap.

    Returns
    -------
    tuple
        (rows with FITTED filled in, :class:`SiteRegressionResult`)
    """
    family = ModelFamily.coerce(family)
    rows = rows_y.copy()
    if FITTED not in rows.columns:
        rows[FITTED] = np.nan
    nonzero, zero = split_sites(rows)
    rows.loc[rows[SITE_ID].isin(zero), FITTED] = 0.0

    if not nonzero:
        return rows, SiteRegressionResult(
            fit=None, zero_sites=tuple(zero), family=family, reason="no site with observations"
        )

    mask = rows[SITE_ID].isin(nonzero)
    subset = rows[mask]
    nm = subset[NM].to_numpy(dtype=float)
    if family is ModelFamily.NEGATIVE_BINOMIAL:
        offset = nm
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            offset = np.log(nm)

    outcome = fit_offset_glm(subset, offset, family, max_iterations=max_iterations)
    if outcome.ok and np.isinf(outcome.fitted).any():
        outcome = FitFailure("non-finite fitted values", trials=outcome.trials)

    if outcome.ok:
        rows.loc[mask, FITTED] = outcome.fitted
    else:
        year = int(rows[M_YEAR].iloc[0])
        log.warning(
            "Computation of abundance indices for year %d failed (%s); "
            "verify the data provided for that year",
            year,
            outcome.reason,
        )
        rows.loc[mask, FITTED] = np.nan
        if COUNT_IMPUTED in rows.columns:
            rows.loc[mask, COUNT_IMPUTED] = np.nan

    return rows, SiteRegressionResult(
        fit=outcome,
        nonzero_sites=tuple(nonzero),
        zero_sites=tuple(zero),
        family=family,
        reason="" if outcome.ok else outcome.reason,
    )


# ---------------------------------------------------------------------------
# AbundanceImputer
# ---------------------------------------------------------------------------


def _curve_frame(curve_table: Union[FlightCurveResult, pd.DataFrame]) -> pd.DataFrame:
    if isinstance(curve_table, FlightCurveResult):
        curve_table = curve_table.curve
    if not isinstance(curve_table, pd.DataFrame):
        raise InputContractError(
            f"Flight curve must be a DataFrame or FlightCurveResult, got "
            f"{type(curve_table).__name__}"
        )
    curve = normalize_columns(curve_table)
    check_columns(curve, (SPECIES, DATE, M_YEAR, TRIMDAYNO, NM))
    curve[M_YEAR] = curve[M_YEAR].astype(int)
    curve[NM] = pd.to_numeric(curve[NM], errors="coerce")
    return curve


def _check_species(table: pd.DataFrame, curve: pd.DataFrame) -> Any:
    counted = set(pd.unique(table[SPECIES]))
    if len(counted) > 1:
        raise InputContractError(
            f"Count data must hold a single species, got {sorted(map(str, counted))}"
        )
    curved = set(pd.unique(curve[SPECIES]))
    if counted and curved and counted != curved:
        raise InputContractError(
            "Species in count data and flight curve must be the same "
            f"({sorted(map(str, counted))} vs {sorted(map(str, curved))})"
        )
    return next(iter(counted), None)


def impute(
    season_table: pd.DataFrame,
    curve_table: Union[FlightCurveResult, pd.DataFrame],
    config: Optional[ImputationConfig] = None,
    **options: Any,
) -> ImputationResult:
    """
    Impute missing site counts from the regional flight curve.

    Parameters
    ----------
    season_table : pd.DataFrame
        Complete per-site time series of counts for one species.
    curve_table : FlightCurveResult or pd.DataFrame
        Flight curves of the same species, as returned by
        :func:`abundlib.flight_curve.estimate_curves`.
    config : ImputationConfig, optional
        Imputation settings; keyword ``options`` override its fields.

    Returns
    -------
    ImputationResult
        Season table with NM, FITTED and COUNT_IMPUTED, plus optional models.

    Raises
    ------
    InputContractError
        Missing columns, species mismatch or an unsupported model family.
    """
    config = resolve_config(config, ImputationConfig, options)
    table = validate_season_table(season_table)
    curve = _curve_frame(curve_table)
    species = _check_species(table, curve)

    if config.restrict_to_complete_seasons:
        table = table[table[COMPLT_SEASON] == 1]

    day_curve = curve[[DATE, TRIMDAYNO, NM]].drop_duplicates(subset=[DATE])
    joined = table.merge(day_curve, on=DATE, how="left")
    joined = joined.sort_values([M_YEAR, DATE, SITE_ID]).reset_index(drop=True)

    out = table.copy()
    for col in IMPUTED_COLUMNS:
        out[col] = np.nan
    out = out.set_index([SITE_ID, DAY_SINCE])

    result = ImputationResult(imputed=out)
    models: Dict[Tuple[Any, int], SiteRegressionResult] = {}

    for year in select_years(table, config.years):
        rows_y = joined[joined[M_YEAR] == year].copy()

        if config.use_nearest_phenology:
            resolution = resolve_phenology(rows_y, curve, horizon=config.search_horizon)
            rows_y = resolution.rows
            if resolution.needed:
                result.messages.append(resolution.message)
            if resolution.donor_year is not None:
                result.donor_years[year] = resolution.donor_year

        unusable = rows_y[NM].isna() & (rows_y[TRIMDAYNO] != LEAP_DAY_TAIL)
        if unusable.any():
            msg = f"No GLM will be fitted for {species} in {year}: flight curve is missing"
            log.warning(msg)
            result.messages.append(msg)
        else:
            log.info(
                "Computing abundance indices for %s in %d across %d sites",
                species,
                year,
                rows_y[SITE_ID].nunique(),
            )

        rows_y.loc[rows_y[M_SEASON] == 0, COUNT] = np.nan
        rows_y.loc[(rows_y[M_SEASON] != 0) & (rows_y[NM] == 0), NM] = config.nm_floor
        nonzero, zero = split_sites(rows_y)

        if nonzero and not unusable.any():
            rows_y, site_result = fit_site_regression(
                rows_y, config.model_family, max_iterations=config.max_iterations
            )
            if not site_result.ok:
                result.messages.append(
                    f"Computation of abundance indices for {species} in {year} failed: "
                    f"{site_result.reason}"
                )
        else:
            rows_y[FITTED] = np.nan
            site_result = SiteRegressionResult(
                fit=None,
                nonzero_sites=tuple(nonzero),
                zero_sites=tuple(zero),
                family=config.model_family,
                reason=f"No GLM fitted for {year}",
            )

        rows_y.loc[rows_y[SITE_ID].isin(zero), FITTED] = 0.0
        rows_y[COUNT_IMPUTED] = rows_y[COUNT].where(rows_y[COUNT].notna(), rows_y[FITTED])
        rows_y.loc[rows_y[M_SEASON] == 0, COUNT_IMPUTED] = 0.0

        update = rows_y.set_index([SITE_ID, DAY_SINCE])[IMPUTED_COLUMNS]
        out.loc[update.index, IMPUTED_COLUMNS] = update.to_numpy(dtype=float)
        models[(species, year)] = site_result

    out = out.reset_index()[list(table.columns) + IMPUTED_COLUMNS]
    if config.years is not None:
        out = out[out[M_YEAR].isin(config.years)]
    result.imputed = out.reset_index(drop=True)
    if config.retain_models:
        result.models = models
    return result
