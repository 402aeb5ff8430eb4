"""Shared fixtures: synthetic butterfly transect season tables."""

from __future__ import annotations

from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

# Monitoring window (day of year) and active season within it
WINDOW = (80, 260)
SEASON = (91, 250)


def make_season_table(
    species: str = "Pieris rapae",
    sites: dict = None,
    years=(2015,),
    peak: int = 170,
    width: float = 20.0,
    visit_every: int = 7,
    zero_sites=(),
    complete: int = 1,
    seed: int = 0,
) -> pd.DataFrame:
    """
    Build a season-count table with one row per site and day of the window.

    Counts are Poisson draws from a bell-shaped flight curve scaled by the
    site's abundance, recorded every ``visit_every`` days in season; days
    just outside the season are zero-count anchors.
    """
    rng = np.random.default_rng(seed)
    if sites is None:
        sites = {"S1": 20.0, "S2": 10.0, "S3": 5.0}
    origin = date(min(years), 1, 1)

    rows = []
    for year in years:
        for i, (site, abundance) in enumerate(sites.items()):
            for doy in range(WINDOW[0], WINDOW[1] + 1):
                day = date(year, 1, 1) + timedelta(days=doy - 1)
                in_season = SEASON[0] <= doy <= SEASON[1]
                anchor = not in_season and doy in (SEASON[0] - 1, SEASON[1] + 1)
                count = np.nan
                if anchor:
                    count = 0.0
                elif in_season and (doy - SEASON[0] + i) % visit_every == 0:
                    lam = abundance * np.exp(-((doy - peak) ** 2) / (2 * width**2))
                    count = 0.0 if site in zero_sites else float(rng.poisson(lam))
                iso = day.isocalendar()
                rows.append(
                    {
                        "SPECIES": species,
                        "SITE_ID": site,
                        "DATE": pd.Timestamp(day),
                        "WEEK": iso[1],
                        "WEEK_DAY": iso[2],
                        "DAY_SINCE": (day - origin).days + 1,
                        "M_YEAR": year,
                        "M_SEASON": 1 if in_season else 0,
                        "COUNT": count,
                        "ANCHOR": int(anchor),
                        "COMPLT_SEASON": complete,
                    }
                )
    return pd.DataFrame(rows)


@pytest.fixture
def season_factory():
    """Factory building synthetic season tables."""
    return make_season_table


@pytest.fixture
def season_table() -> pd.DataFrame:
    """Three sites, one year."""
    return make_season_table()


@pytest.fixture
def curve_factory():
    """Factory building hand-made flight curve tables (no fitting)."""

    def _make(years, missing_years=(), species="Pieris rapae", n_days=10):
        rows = []
        shape = np.arange(1, n_days + 1, dtype=float)
        for year in years:
            nm = shape ** (1 + year % 3) / (shape ** (1 + year % 3)).sum()
            for d in range(n_days):
                rows.append(
                    {
                        "SPECIES": species,
                        "DATE": pd.Timestamp(date(year, 6, 1) + timedelta(days=d)),
                        "M_YEAR": year,
                        "DAY_SINCE": d + 1,
                        "TRIMDAYNO": d + 1,
                        "NM": np.nan if year in missing_years else round(nm[d], 5),
                    }
                )
        return pd.DataFrame(rows)

    return _make
