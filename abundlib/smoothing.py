"""
abundlib.smoothing - Boundary to the statistical solvers.

The seasonal smooth is a penalized cubic B-spline in the trimmed day number,
fitted as a GAM (statsmodels ``GLMGam``, penalized IRLS) with a fixed site
effect. The site regression is a GLM with the flight curve as offset; its
negative binomial variant estimates the dispersion with the statsmodels
count model. Neither function raises for numerical trouble: each returns a
:class:`~abundlib.core.FitSuccess` or a :class:`~abundlib.core.FitFailure`.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import PatsyError, dmatrix
from statsmodels.gam.api import BSplines, GLMGam
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from abundlib.core import COUNT, SITE_ID, TRIMDAYNO, FitFailure, FitSuccess, ModelFamily

log = logging.getLogger(__name__)

# Lower bound on an estimated negative binomial dispersion
MIN_NB_ALPHA = 1e-8

# Deviance tolerance of the penalized IRLS loop (standard / fast mode)
PIRLS_TOL = 1e-8
FAST_PIRLS_TOL = 1e-6

# Exceptions a solver may raise on degenerate data; anything else propagates
SOLVER_ERRORS = (
    np.linalg.LinAlgError,
    ValueError,
    FloatingPointError,
    ZeroDivisionError,
    OverflowError,
    PerfectSeparationError,
    PatsyError,
)

FitResult = Union[FitSuccess, FitFailure]


def glm_family(family: ModelFamily, alpha: Optional[float] = None) -> sm.families.Family:
    """statsmodels family object for a :class:`ModelFamily`.

    ``alpha`` is the negative binomial dispersion and is required for that
    family.
    """
    if family is ModelFamily.NEGATIVE_BINOMIAL:
        if alpha is None:
            raise ValueError("negative binomial family needs a dispersion")
        return sm.families.NegativeBinomial(alpha=alpha)
    return sm.families.Poisson()


def glm_scale(family: ModelFamily) -> Optional[str]:
    """Dispersion estimate: Pearson chi-square for quasi-Poisson, fixed otherwise."""
    return "X2" if family is ModelFamily.QUASIPOISSON else None


def estimate_nb_alpha(y: np.ndarray, mu: np.ndarray, max_iterations: int = 100) -> float:
    """
    Maximum likelihood NB2 dispersion of counts ``y`` around fixed means ``mu``.

    The means enter as an offset of an intercept-only negative binomial count
    model, so the intercept stays near zero and only the dispersion is free.
    """
    mu = np.maximum(np.asarray(mu, dtype=float), np.finfo(float).tiny)
    model = sm.NegativeBinomial(np.asarray(y, dtype=float), np.ones((len(mu), 1)), offset=np.log(mu))
    result = model.fit(disp=0, maxiter=max_iterations)
    alpha = float(np.asarray(result.params)[-1])
    if not np.isfinite(alpha):
        raise FloatingPointError("non-finite negative binomial dispersion")
    return max(alpha, MIN_NB_ALPHA)


def unit_days(days: pd.Series) -> np.ndarray:
    """Day numbers rescaled linearly onto [0, 1]."""
    x = np.asarray(days, dtype=float)
    lo, hi = float(np.min(x)), float(np.max(x))
    if hi == lo:
        return np.zeros_like(x)
    return (x - lo) / (hi - lo)


def season_smoother(u: np.ndarray, spline_df: int) -> BSplines:
    """
    Cubic B-spline smoother over days already rescaled to [0, 1].

    The boundary knots sit at 0 and 1 whatever part of the interval ``u``
    covers, so every day of the season can be predicted. The basis has
    ``df - 1`` columns (the constant is left to the linear part), with
    ``df`` capped by the number of distinct days.
    """
    u = np.asarray(u, dtype=float)
    df = max(4, min(spline_df, len(np.unique(u))))
    return BSplines(
        u,
        df=df,
        degree=3,
        variable_names=["day"],
        knot_kwds=[{"lower_bound": 0.0, "upper_bound": 1.0}],
    )


def site_design(sites: pd.Series, intercept: bool) -> np.ndarray:
    """
    Site effect design matrix.

    With ``intercept`` an intercept plus treatment contrasts (a single site
    gives the intercept alone); otherwise one indicator column per site.
    """
    formula = "C(site)" if intercept else "0 + C(site)"
    return np.asarray(dmatrix(formula, {"site": sites.astype(str).to_numpy()}))


def _gam_fit(y, linear, smoother, family, alpha, max_iterations, tol, start_params=None):
    model = GLMGam(y, exog=linear, smoother=smoother, alpha=alpha, family=family)
    return model.fit(start_params=start_params, maxiter=max_iterations, tol=tol)


def _checked(result, fitted: np.ndarray, label: str) -> FitResult:
    """FitSuccess unless the coefficients are non-finite."""
    if not np.isfinite(np.asarray(result.params, dtype=float)).all():
        return FitFailure("non-finite coefficients")
    if not getattr(result, "converged", True):
        log.debug("%s stopped before the convergence tolerance was met", label)
    return FitSuccess(model=result, fitted=fitted)


def fit_seasonal_smooth(
    data: pd.DataFrame,
    family: ModelFamily,
    spline_df: int = 10,
    max_iterations: int = 100,
    fast: bool = False,
    penalty: float = 1e-3,
) -> FitResult:
    """
    Fit ``COUNT ~ s(TRIMDAYNO) [+ SITE_ID]`` and predict for every row.

    Parameters
    ----------
    data : pd.DataFrame
        Working dataset with COUNT, TRIMDAYNO and SITE_ID columns. Rows with a
        missing COUNT do not enter the fit but are predicted.
    family : ModelFamily
        Error distribution. The negative binomial dispersion is estimated
        from a Poisson fit of the same smooth, which is then refitted.
    spline_df : int
        Spline basis dimension.
    max_iterations : int
        Penalized IRLS iteration cap.
    fast : bool
        Stop the penalized IRLS loop at a looser deviance tolerance
        (large-data mode).
    penalty : float
        Weight of the second-derivative roughness penalty.

    Returns
    -------
    FitSuccess or FitFailure
        Fitted values are on the response scale, aligned with ``data`` rows.
    """
    observed = data[COUNT].notna().to_numpy()
    if observed.sum() == 0:
        return FitFailure("no observed counts")

    tol = FAST_PIRLS_TOL if fast else PIRLS_TOL
    try:
        u = unit_days(data[TRIMDAYNO])
        smoother = season_smoother(u[observed], spline_df)
        linear = site_design(data[SITE_ID], intercept=True)
        y = data[COUNT].to_numpy(dtype=float)[observed]

        result = _gam_fit(
            y, linear[observed], smoother, sm.families.Poisson(), penalty, max_iterations, tol
        )
        if family is ModelFamily.NEGATIVE_BINOMIAL:
            alpha = estimate_nb_alpha(y, result.mu, max_iterations)
            log.debug("Negative binomial dispersion of the season smooth: %.4g", alpha)
            result = _gam_fit(
                y,
                linear[observed],
                smoother,
                glm_family(family, alpha),
                penalty,
                max_iterations,
                tol,
                start_params=result.params,
            )
        with np.errstate(over="ignore"):
            fitted = np.asarray(result.predict(exog=linear, exog_smooth=u), dtype=float)
    except SOLVER_ERRORS as exc:
        log.debug("Seasonal smooth solver error: %s", exc)
        return FitFailure(f"{type(exc).__name__}: {exc}")

    return _checked(result, fitted, "Seasonal smooth")


def fit_offset_glm(
    data: pd.DataFrame,
    offset: np.ndarray,
    family: ModelFamily,
    max_iterations: int = 100,
) -> FitResult:
    """
    Fit a count GLM with a fixed offset and one coefficient per site.

    The design has one indicator per site and no separate intercept, so a
    single site reduces to one constant column. The negative binomial
    variant is a count model whose dispersion is estimated jointly with the
    site coefficients.

    Parameters
    ----------
    data : pd.DataFrame
        Rows of the sites to fit (COUNT and SITE_ID columns).
    offset : np.ndarray
        Offset on the linear-predictor scale, aligned with ``data``.
    family : ModelFamily
        Error distribution.
    max_iterations : int
        Solver iteration cap.

    Returns
    -------
    FitSuccess or FitFailure
        Fitted values on the response scale for every row of ``data``.
    """
    offset = np.asarray(offset, dtype=float)
    y = data[COUNT].to_numpy(dtype=float)
    usable = ~np.isnan(y) & np.isfinite(offset)
    if usable.sum() == 0:
        return FitFailure("no observed counts with a finite offset")

    try:
        X = site_design(data[SITE_ID], intercept=False)
        if family is ModelFamily.NEGATIVE_BINOMIAL:
            model = sm.NegativeBinomial(y[usable], X[usable], offset=offset[usable])
            result = model.fit(disp=0, maxiter=max_iterations)
        else:
            model = sm.GLM(y[usable], X[usable], family=glm_family(family), offset=offset[usable])
            result = model.fit(maxiter=max_iterations, scale=glm_scale(family))
        with np.errstate(over="ignore", invalid="ignore"):
            fitted = np.asarray(result.predict(X, offset=offset), dtype=float)
    except SOLVER_ERRORS as exc:
        log.debug("Offset GLM solver error: %s", exc)
        return FitFailure(f"{type(exc).__name__}: {exc}")

    return _checked(result, fitted, "Offset GLM")
