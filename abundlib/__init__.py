"""
abundlib - Python library for regional abundance indices from count monitoring

Includes:
- Regional flight curve estimation per year (GAM on pooled site counts)
  with site subsampling and retry on solver failure
- Nearest-year phenology substitution for years without a usable curve
- Site-level GLM imputation of missing counts with the flight curve as offset
- Yearly abundance index (butterfly-day) per site
- Multi-species batch processing
"""

import logging

import numpy as np

from .batch import batch_summary_table, run_multi_species, run_species
from .config import FlightCurveConfig, ImputationConfig
from .core import (
    AbundanceError,
    FitFailure,
    FitSuccess,
    InputContractError,
    MissingColumnsError,
    ModelFamily,
    SiteRegressionResult,
    validate_season_table,
)
from .flight_curve import FlightCurveResult, estimate_curves, fit_flight_curve
from .imputation import ImputationResult, fit_site_regression, impute
from .index import aggregate, butterfly_day
from .phenology import candidate_years, resolve_phenology

logging.getLogger(__name__).addHandler(logging.NullHandler())


def compute_abundance_index(
    season_table,
    curve_config: FlightCurveConfig = None,
    imputation_config: ImputationConfig = None,
    by_week: bool = True,
    seed: int = None,
) -> dict:
    """
    Complete abundance index computation for one species.

    Parameters
    ----------
    season_table : pd.DataFrame
        Per-site season counts of a single species.
    curve_config : FlightCurveConfig, optional
        Flight curve settings.
    imputation_config : ImputationConfig, optional
        Imputation settings.
    by_week : bool
        Weekly (default) or daily index.
    seed : int, optional
        Seed for site subsampling.
    """
    return run_species(
        season_table,
        curve_config,
        imputation_config,
        by_week=by_week,
        rng=np.random.default_rng(seed),
    )


__version__ = "0.1.0"
__author__ = "abundlib"

__all__ = [
    # Core
    "ModelFamily",
    "FitSuccess",
    "FitFailure",
    "SiteRegressionResult",
    "validate_season_table",
    # Errors
    "AbundanceError",
    "InputContractError",
    "MissingColumnsError",
    # Configuration
    "FlightCurveConfig",
    "ImputationConfig",
    # Flight curve
    "FlightCurveResult",
    "estimate_curves",
    "fit_flight_curve",
    # Phenology
    "candidate_years",
    "resolve_phenology",
    # Imputation
    "ImputationResult",
    "fit_site_regression",
    "impute",
    # Index
    "aggregate",
    "butterfly_day",
    # Batch
    "run_species",
    "run_multi_species",
    "batch_summary_table",
    # Convenience
    "compute_abundance_index",
]
