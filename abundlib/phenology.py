"""
abundlib.phenology - Nearest-year flight curve substitution.

When the flight curve of a year is missing or incomplete, the curve of the
closest year with a complete curve (within a bounded horizon) is used
instead, matched on the trimmed day number.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import pandas as pd

from abundlib.core import DAY_SINCE, M_YEAR, NM, TRIMDAYNO

log = logging.getLogger(__name__)

# Largest year offset searched for a substitute curve
DEFAULT_HORIZON = 5


@dataclass
class PhenologyResolution:
    """Outcome of a phenology check for one year.

    Parameters
    ----------
    rows : pd.DataFrame
        The year's rows, with NM replaced by the donor's curve when one
        was found.
    year : int
        Target year.
    donor_year : int, optional
        Year whose curve was borrowed; None if none was needed or found.
    needed : bool
        True if the target year's own curve was incomplete.
    message : str
        Diagnostic for substitution or failure; empty otherwise.
    """

    rows: pd.DataFrame
    year: int
    donor_year: Optional[int] = None
    needed: bool = False
    message: str = ""

    @property
    def resolved(self) -> bool:
        return not self.needed or self.donor_year is not None


def candidate_offsets(horizon: int = DEFAULT_HORIZON) -> List[int]:
    """Search order of year offsets: -1, +1, -2, +2, ... up to ``horizon``."""
    offsets: List[int] = []
    for k in range(1, horizon + 1):
        offsets.extend((-k, k))
    return offsets


def candidate_years(
    year: int, available_years: Iterable[int], horizon: int = DEFAULT_HORIZON
) -> List[int]:
    """
    Donor years to try for ``year``, nearest first and earlier before later.

    Only years strictly between the first and last year with any curve are
    eligible.
    """
    available = [int(y) for y in available_years]
    if not available:
        return []
    lo, hi = min(available), max(available)
    return [year + z for z in candidate_offsets(horizon) if lo < year + z < hi]


def is_complete_curve(curve: pd.DataFrame) -> bool:
    """True if ``curve`` has rows and none of them has a missing NM."""
    return not curve.empty and bool(curve[NM].notna().all())


def _fill_trimmed_day(rows: pd.DataFrame) -> pd.DataFrame:
    trimmed = rows[DAY_SINCE] - rows[DAY_SINCE].min() + 1
    if TRIMDAYNO in rows.columns:
        rows[TRIMDAYNO] = rows[TRIMDAYNO].fillna(trimmed)
    else:
        rows[TRIMDAYNO] = trimmed
    return rows


def resolve_phenology(
    rows_y: pd.DataFrame,
    curve_table: pd.DataFrame,
    horizon: int = DEFAULT_HORIZON,
) -> PhenologyResolution:
    """
    Borrow the nearest complete flight curve for a year with missing NM.

    Parameters
    ----------
    rows_y : pd.DataFrame
        Season rows of one year joined with their flight curve (TRIMDAYNO and
        NM may be missing).
    curve_table : pd.DataFrame
        Flight curves of all years of the species.
    horizon : int
        Largest year offset searched.

    Returns
    -------
    PhenologyResolution
        The (possibly updated) rows and the donor year. Only NM, and a
        missing TRIMDAYNO, are changed.
    """
    year = int(rows_y[M_YEAR].iloc[0])
    if rows_y[NM].notna().all():
        return PhenologyResolution(rows=rows_y, year=year)

    years = pd.unique(curve_table[M_YEAR]) if not curve_table.empty else []
    for candidate in candidate_years(year, years, horizon):
        donor = curve_table.loc[curve_table[M_YEAR] == candidate, [TRIMDAYNO, NM]]
        donor = donor.drop_duplicates(subset=[TRIMDAYNO])
        if not is_complete_curve(donor):
            continue

        rows = _fill_trimmed_day(rows_y.copy())
        rows[NM] = rows[TRIMDAYNO].map(donor.set_index(TRIMDAYNO)[NM]).astype(float)
        msg = f"Used the flight curve of {candidate} to compute abundance indices for year {year}"
        log.warning(msg)
        return PhenologyResolution(
            rows=rows, year=year, donor_year=int(candidate), needed=True, message=msg
        )

    msg = f"No reliable flight curve available within a {horizon} year horizon of {year}"
    log.warning(msg)
    return PhenologyResolution(rows=rows_y.copy(), year=year, needed=True, message=msg)
