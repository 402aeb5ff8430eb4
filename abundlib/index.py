"""
abundlib.index - Yearly abundance index per site.

Reduces the imputed daily series to one value per site-year, either by
summing one representative weekday per week or every in-season day.
"""

from __future__ import annotations

import logging
from typing import Union

import pandas as pd

from abundlib.core import (
    ABUNDANCE_INDEX,
    COMPLT_SEASON,
    FITTED,
    M_SEASON,
    M_YEAR,
    SITE_ID,
    WEEK,
    WEEK_DAY,
    check_columns,
    normalize_columns,
)
from abundlib.imputation import ImputationResult

log = logging.getLogger(__name__)

# Day of the ISO week standing for the whole week (Thursday)
REPRESENTATIVE_WEEKDAY = 4


def aggregate(
    imputed_table: Union[ImputationResult, pd.DataFrame],
    by_week: bool = True,
    value_column: str = FITTED,
) -> pd.DataFrame:
    """
    Sum imputed daily values into an abundance index per site and year.

    Parameters
    ----------
    imputed_table : ImputationResult or pd.DataFrame
        Output of :func:`abundlib.imputation.impute`.
    by_week : bool
        If True (default) sum one value per ISO week, taken on
        :data:`REPRESENTATIVE_WEEKDAY`; otherwise sum every in-season day.
    value_column : str
        Column to sum (default FITTED).

    Returns
    -------
    pd.DataFrame
        Columns SITE_ID, M_YEAR, ABUNDANCE_INDEX; one row per site-year of
        complete, in-season data. A site-year with a missing value among the
        summed rows has a missing index.
    """
    if isinstance(imputed_table, ImputationResult):
        imputed_table = imputed_table.imputed
    table = normalize_columns(imputed_table)
    value_column = value_column.upper()
    check_columns(table, (SITE_ID, M_YEAR, WEEK, WEEK_DAY, M_SEASON, COMPLT_SEASON, value_column))

    keep = (table[COMPLT_SEASON] == 1) & (table[M_SEASON] != 0)
    if by_week:
        keep &= table[WEEK_DAY] == REPRESENTATIVE_WEEKDAY
    rows = table[keep]

    if rows.empty:
        return pd.DataFrame(columns=[SITE_ID, M_YEAR, ABUNDANCE_INDEX])

    keys = [rows[SITE_ID], rows[M_YEAR]]
    index = rows[value_column].groupby(keys).sum()
    missing = rows[value_column].isna().groupby(keys).any()
    index = index.where(~missing)

    out = index.rename(ABUNDANCE_INDEX).reset_index()
    log.info(
        "Aggregated %d site-year abundance indices (%s)",
        len(out),
        "weekly" if by_week else "daily",
    )
    return out


def butterfly_day(
    imputed_table: Union[ImputationResult, pd.DataFrame], by_week: bool = True
) -> pd.DataFrame:
    """Alias of :func:`aggregate` named after the butterfly-day index."""
    return aggregate(imputed_table, by_week=by_week)
