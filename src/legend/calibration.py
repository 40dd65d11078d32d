"""
Empirical calibration of effect estimates using negative controls.

Systematic error is modelled as a normal null distribution of log rate
ratios, N(mean, sd^2), fitted by maximum likelihood on the negative-control
estimates while accounting for each estimate's own standard error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import optimize, stats

logger = logging.getLogger(__name__)

MIN_NEGATIVE_CONTROLS = 5


@dataclass(frozen=True)
class NullDistribution:
    mean: float
    sd: float


def fit_null(log_rr: np.ndarray, se_log_rr: np.ndarray) -> NullDistribution | None:
    """
    Fit the empirical null distribution.

    Args:
        log_rr: Negative-control log rate ratios
        se_log_rr: Their standard errors

    Returns:
        NullDistribution, or None when fewer than ``MIN_NEGATIVE_CONTROLS``
        finite estimates are available
    """
    log_rr = np.asarray(log_rr, dtype=float)
    se_log_rr = np.asarray(se_log_rr, dtype=float)
    finite = np.isfinite(log_rr) & np.isfinite(se_log_rr) & (se_log_rr > 0)
    log_rr, se_log_rr = log_rr[finite], se_log_rr[finite]
    if len(log_rr) < MIN_NEGATIVE_CONTROLS:
        return None

    def negative_log_likelihood(theta: np.ndarray) -> float:
        mean, log_sd = theta
        scale = np.sqrt(np.exp(log_sd) ** 2 + se_log_rr**2)
        return -float(np.sum(stats.norm.logpdf(log_rr, loc=mean, scale=scale)))

    start = np.array([float(np.mean(log_rr)), np.log(0.1)])
    fit = optimize.minimize(negative_log_likelihood, start, method="Nelder-Mead")
    mean, log_sd = fit.x
    return NullDistribution(mean=float(mean), sd=float(np.exp(log_sd)))


def calibrate_p(null: NullDistribution, log_rr: np.ndarray, se_log_rr: np.ndarray) -> np.ndarray:
    """Two-sided p-values against the empirical null."""
    log_rr = np.asarray(log_rr, dtype=float)
    se_log_rr = np.asarray(se_log_rr, dtype=float)
    z = (log_rr - null.mean) / np.sqrt(null.sd**2 + se_log_rr**2)
    return 2 * stats.norm.sf(np.abs(z))


def calibrate_estimates(
    null: NullDistribution, log_rr: np.ndarray, se_log_rr: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Shift by the null mean and widen by the null spread.

    Returns:
        Tuple[calibrated_log_rr, calibrated_se_log_rr]
    """
    log_rr = np.asarray(log_rr, dtype=float)
    se_log_rr = np.asarray(se_log_rr, dtype=float)
    return log_rr - null.mean, np.sqrt(se_log_rr**2 + null.sd**2)


def calibrate_results(results: pd.DataFrame, negative_control_ids: list[int]) -> pd.DataFrame:
    """
    Add calibrated columns per (analysis, target, comparator) group.

    Groups with too few negative-control estimates get missing calibrated
    values.
    """
    results = results.copy()
    for column in (
        "calibrated_p",
        "calibrated_rr",
        "calibrated_ci_95_lb",
        "calibrated_ci_95_ub",
        "calibrated_log_rr",
        "calibrated_se_log_rr",
    ):
        results[column] = np.nan

    z = stats.norm.ppf(0.975)
    for key, group in results.groupby(["analysis_id", "target_id", "comparator_id"]):
        controls = group[group["outcome_id"].isin(negative_control_ids)]
        null = fit_null(controls["log_rr"].to_numpy(), controls["se_log_rr"].to_numpy())
        if null is None:
            logger.warning(f"Too few negative control estimates to calibrate analysis/t/c {key}")
            continue

        log_rr = group["log_rr"].to_numpy()
        se = group["se_log_rr"].to_numpy()
        calibrated_log_rr, calibrated_se = calibrate_estimates(null, log_rr, se)
        results.loc[group.index, "calibrated_p"] = calibrate_p(null, log_rr, se)
        results.loc[group.index, "calibrated_log_rr"] = calibrated_log_rr
        results.loc[group.index, "calibrated_se_log_rr"] = calibrated_se
        results.loc[group.index, "calibrated_rr"] = np.exp(calibrated_log_rr)
        results.loc[group.index, "calibrated_ci_95_lb"] = np.exp(calibrated_log_rr - z * calibrated_se)
        results.loc[group.index, "calibrated_ci_95_ub"] = np.exp(calibrated_log_rr + z * calibrated_se)
    return results
