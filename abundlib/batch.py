"""
abundlib.batch - Multi-species batch processing of abundance indices
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .config import FlightCurveConfig, ImputationConfig
from .core import SPECIES, validate_season_table
from .flight_curve import STATUS_FITTED, estimate_curves
from .imputation import impute
from .index import aggregate

log = logging.getLogger(__name__)


def run_species(
    season_table: pd.DataFrame,
    curve_config: Optional[FlightCurveConfig] = None,
    imputation_config: Optional[ImputationConfig] = None,
    by_week: bool = True,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, Any]:
    """
    Run the full pipeline for a single species.

    All flight curves are estimated before any year is imputed, so that the
    phenology fallback sees every year's curve.

    Returns
    -------
    dict
        ``curve`` (FlightCurveResult), ``imputation`` (ImputationResult) and
        ``index`` (DataFrame of abundance indices).
    """
    curves = estimate_curves(season_table, curve_config, rng=rng)
    imputation = impute(season_table, curves, imputation_config)
    index = aggregate(imputation, by_week=by_week)
    return {"curve": curves, "imputation": imputation, "index": index}


def run_multi_species(
    season_table: pd.DataFrame,
    curve_config: Optional[FlightCurveConfig] = None,
    imputation_config: Optional[ImputationConfig] = None,
    by_week: bool = True,
    workers: int = 1,
    seed: Optional[int] = None,
) -> Dict[Any, Dict[str, Any]]:
    """
    Run the abundance index pipeline for every species in a season table.

    Parameters
    ----------
    season_table : pd.DataFrame
        Season counts of one or more species.
    curve_config : FlightCurveConfig, optional
        Settings for flight curve estimation.
    imputation_config : ImputationConfig, optional
        Settings for count imputation.
    by_week : bool
        Weekly (default) or daily abundance index.
    workers : int
        Number of parallel workers; 1 runs species sequentially.
    seed : int, optional
        Seed from which an independent random stream per species is spawned.

    Returns
    -------
    dict
        Mapping species to the output of :func:`run_species`, or to
        ``{"error": message}`` when that species failed.
    """
    table = validate_season_table(season_table)
    subsets = {sp: df.copy() for sp, df in table.groupby(SPECIES, sort=True)}
    streams = np.random.SeedSequence(seed).spawn(len(subsets))
    rngs = {sp: np.random.default_rng(s) for sp, s in zip(subsets, streams)}

    results: Dict[Any, Dict[str, Any]] = {}

    def _run(species: Any) -> Dict[str, Any]:
        return run_species(
            subsets[species], curve_config, imputation_config, by_week, rng=rngs[species]
        )

    if workers <= 1:
        for species in subsets:
            try:
                results[species] = _run(species)
            except Exception as e:
                log.error("Abundance index failed for species %s: %s", species, e)
                results[species] = {"error": str(e)}
        return results

    from concurrent.futures import ThreadPoolExecutor, as_completed

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_species = {executor.submit(_run, sp): sp for sp in subsets}

        for future in as_completed(future_to_species):
            species = future_to_species[future]
            try:
                results[species] = future.result()
            except Exception as e:
                log.error("Abundance index failed for species %s: %s", species, e)
                results[species] = {"error": str(e)}

    return {sp: results[sp] for sp in subsets}


def batch_summary_table(
    results: Dict[Any, Dict[str, Any]],
    columns: Sequence[str] = ("Years", "Fitted", "Substituted", "Site-years"),
) -> pd.DataFrame:
    """
    Generate a summary table of multi-species results.

    Parameters
    ----------
    results : dict
        Output from :func:`run_multi_species`.
    columns : sequence of str
        Summary columns to include.

    Returns
    -------
    pd.DataFrame
        One row per species.
    """
    rows = []
    for species, result in results.items():
        if "error" in result:
            row = {"Species": species, "Error": result["error"]}
        else:
            status = result["curve"].status
            values = {
                "Years": len(status),
                "Fitted": sum(1 for s in status.values() if s == STATUS_FITTED),
                "Substituted": len(result["imputation"].donor_years),
                "Site-years": int(result["index"]["ABUNDANCE_INDEX"].notna().sum()),
            }
            row = {"Species": species}
            row.update({c: values[c] for c in columns if c in values})

        rows.append(row)

    return pd.DataFrame(rows)
