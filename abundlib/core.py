"""
abundlib.core - Core data structures, column contract and error taxonomy
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

import numpy as np
import pandas as pd

# Season-count table column contract (normalized to upper case at entry)
SPECIES = "SPECIES"
SITE_ID = "SITE_ID"
DATE = "DATE"
WEEK = "WEEK"
WEEK_DAY = "WEEK_DAY"
DAY_SINCE = "DAY_SINCE"
M_YEAR = "M_YEAR"
M_SEASON = "M_SEASON"
COUNT = "COUNT"
ANCHOR = "ANCHOR"
COMPLT_SEASON = "COMPLT_SEASON"

# Derived columns
TRIMDAYNO = "TRIMDAYNO"
NM = "NM"
FITTED = "FITTED"
SITE_SUM = "SITE_SUM"
COUNT_IMPUTED = "COUNT_IMPUTED"
ABUNDANCE_INDEX = "ABUNDANCE_INDEX"

SEASON_COLUMNS: Tuple[str, ...] = (
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
    COMPLT_SEASON,
)

CURVE_COLUMNS: Tuple[str, ...] = (
    SPECIES,
    DATE,
    WEEK,
    WEEK_DAY,
    DAY_SINCE,
    M_YEAR,
    M_SEASON,
    TRIMDAYNO,
    NM,
)

# Trimmed day number of the leap-day tail; a missing NM there does not
# block imputation.
LEAP_DAY_TAIL = 366


class ModelFamily(Enum):
    """Error distribution of the count regressions."""

    POISSON = "poisson"
    NEGATIVE_BINOMIAL = "nb"
    QUASIPOISSON = "quasipoisson"

    @classmethod
    def coerce(cls, value: Any) -> ModelFamily:
        """Return a ModelFamily from an enum member or its string name."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        aliases = {"negative_binomial": "nb", "negbin": "nb", "quasi_poisson": "quasipoisson"}
        name = aliases.get(name, name)
        for member in cls:
            if member.value == name:
                return member
        raise InputContractError(
            f"Unknown model family {value!r}; expected one of "
            f"{', '.join(m.value for m in cls)}"
        )


# =============================================================================
# ERRORS
# =============================================================================


class AbundanceError(Exception):
    """Base class for abundlib errors."""


class InputContractError(AbundanceError, ValueError):
    """Raised for fatal input problems.

    Missing columns, species mismatch between joined tables, an
    unsupported model family or an invalid configuration value.
    """


class MissingColumnsError(InputContractError):
    """Raised when a table lacks required columns.

    Parameters
    ----------
    missing : iterable of str
        Names of the absent columns.
    """

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            "Input table is missing required column(s): " + ", ".join(self.missing)
        )


# =============================================================================
# TAGGED FIT RESULTS
# =============================================================================


@dataclass
class FitSuccess:
    """A regression fit that produced usable fitted values."""

    model: Any
    fitted: np.ndarray
    trials: int = 1

    @property
    def ok(self) -> bool:
        return True


@dataclass
class FitFailure:
    """A regression fit that did not produce usable fitted values."""

    reason: str
    trials: int = 1

    @property
    def ok(self) -> bool:
        return False


@dataclass
class SiteRegressionResult:
    """Outcome of the per-site regression for one species-year.

    Parameters
    ----------
    fit : FitSuccess, FitFailure or None
        Solver outcome; None when no model was attempted.
    nonzero_sites : tuple
        Sites with at least one positive observed count.
    zero_sites : tuple
        Sites whose observed counts are all zero.
    family : ModelFamily
        Error distribution used for the fit.
    """

    fit: Optional[Any]
    nonzero_sites: Tuple[Any, ...] = ()
    zero_sites: Tuple[Any, ...] = ()
    family: ModelFamily = ModelFamily.QUASIPOISSON
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.fit is not None and self.fit.ok


# =============================================================================
# TABLE HELPERS
# =============================================================================


def normalize_columns(table: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of ``table`` with upper-cased column names."""
    out = table.copy()
    out.columns = [str(c).upper() for c in out.columns]
    return out


def check_columns(table: pd.DataFrame, required: Iterable[str]) -> None:
    """Raise :class:`MissingColumnsError` if ``table`` lacks any ``required`` column."""
    missing = set(required) - set(table.columns)
    if missing:
        raise MissingColumnsError(missing)


def validate_season_table(season_table: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize and validate a season-count table.

    Parameters
    ----------
    season_table : pd.DataFrame
        Per-site daily/weekly counts with season flags. Column names are
        matched case-insensitively.

    Returns
    -------
    pd.DataFrame
        Copy with upper-case column names and integer year/season flags.

    Raises
    ------
    InputContractError
        If the input is not a DataFrame or a required column is absent.
    """
    if not isinstance(season_table, pd.DataFrame):
        raise InputContractError(
            f"Season table must be a pandas DataFrame, got {type(season_table).__name__}"
        )
    table = normalize_columns(season_table)
    check_columns(table, SEASON_COLUMNS)
    for col in (M_YEAR, M_SEASON, ANCHOR, COMPLT_SEASON):
        table[col] = table[col].astype(int)
    table[COUNT] = pd.to_numeric(table[COUNT], errors="coerce")
    return table


def species_of(table: pd.DataFrame) -> Any:
    """Return the species of a single-species table (first row)."""
    if table.empty:
        return None
    return table[SPECIES].iloc[0]


def select_years(table: pd.DataFrame, years: Optional[Iterable[int]]) -> list:
    """Years present in ``table`` (in order of first appearance), optionally filtered."""
    present = [int(y) for y in pd.unique(table[M_YEAR])]
    if years is None:
        return present
    wanted = {int(y) for y in years}
    return [y for y in present if y in wanted]


def add_trimmed_day(table: pd.DataFrame) -> pd.DataFrame:
    """Re-base DAY_SINCE within the (single species-year) slice to start at 1."""
    table[TRIMDAYNO] = table[DAY_SINCE] - table[DAY_SINCE].min() + 1
    return table
