"""Statistical kernels: quantile normalization, empirical Bayes variance moderation (limma's fitFDist / squeezeVar)
and multiple testing correction."""

import numpy as np
import pandas as pd
from scipy.special import digamma, polygamma
from scipy.stats import rankdata
from statsmodels.stats.multitest import multipletests

from methylator.utils import get_logger

LOGGER = get_logger()


def quantile_normalization(values: np.ndarray) -> np.ndarray:
    """Quantile-normalize the columns (samples) of a matrix: each value is replaced by the value of the target
    distribution at the same rank, the target being the mean of the sorted columns.

    Columns may contain NaN values and may therefore have different numbers of observations: each sorted column is
    interpolated on a common grid before averaging, and each value is mapped back through its relative rank. Ties get
    their average rank. NaN values stay NaN.

    :param values: probes x samples matrix
    :type values: numpy.ndarray

    :return: the normalized matrix, same shape as the input
    :rtype: numpy.ndarray"""
    values = np.asarray(values, dtype='float64')
    normalized = np.full(values.shape, np.nan)

    if values.ndim != 2 or values.size == 0:
        return normalized

    not_na = ~np.isnan(values)
    counts = not_na.sum(axis=0)
    nb_points = counts.max()
    if nb_points == 0:
        return normalized

    grid = np.arange(nb_points, dtype='float64')

    def grid_position(indexes: np.ndarray, count: int) -> np.ndarray:
        # position of the 0-based index of a column of `count` values on the common grid
        if count == 1:
            return np.full(indexes.shape, (nb_points - 1) / 2)
        if count == nb_points:
            return indexes
        return indexes * (nb_points - 1) / (count - 1)

    # target distribution
    sorted_columns = []
    for j in range(values.shape[1]):
        if counts[j] == 0:
            continue
        column_sorted = np.sort(values[not_na[:, j], j])
        column_grid = grid_position(np.arange(counts[j], dtype='float64'), counts[j])
        sorted_columns.append(np.interp(grid, column_grid, column_sorted) if counts[j] != nb_points else column_sorted)
    target = np.mean(sorted_columns, axis=0)

    # map each value to the target through its rank
    for j in range(values.shape[1]):
        if counts[j] == 0:
            continue
        ranks = rankdata(values[not_na[:, j], j], method='average') - 1
        normalized[not_na[:, j], j] = np.interp(grid_position(ranks, counts[j]), grid, target)

    return normalized


def adjust_p_values(p_values: pd.Series | np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjustment of p-values. NaN values are excluded from the correction and stay NaN.

    :param p_values: p-values to adjust
    :type p_values: pandas.Series | numpy.ndarray

    :return: adjusted p-values, in the same order as the input
    :rtype: numpy.ndarray"""
    p_values = np.asarray(p_values, dtype='float64')
    adjusted = np.full(p_values.shape, np.nan)
    idxs = ~np.isnan(p_values)  # any NA causes BH method to crash
    if idxs.sum() > 0:
        adjusted[idxs] = multipletests(p_values[idxs], method='fdr_bh')[1]
    return adjusted


def trigamma_inverse(x: float | np.ndarray) -> float | np.ndarray:
    """Solve trigamma(y) = x for y, using Newton's method (Smyth, 2004).

    :param x: positive value(s)
    :type x: float | numpy.ndarray

    :return: y such that trigamma(y) = x
    :rtype: float | numpy.ndarray"""
    scalar_input = np.isscalar(x)
    x = np.atleast_1d(np.asarray(x, dtype='float64'))
    y = np.full(x.shape, np.nan)

    y[x > 1e7] = 1 / np.sqrt(x[x > 1e7])
    y[x < 1e-6] = 1 / x[x < 1e-6]

    to_solve = (x >= 1e-6) & (x <= 1e7)
    if to_solve.any():
        xs = x[to_solve]
        ys = 0.5 + 1 / xs
        for _ in range(50):
            tri = polygamma(1, ys)
            dif = tri * (1 - tri / xs) / polygamma(2, ys)
            ys = ys + dif
            if np.max(-dif / ys) < 1e-8:
                break
        else:
            LOGGER.warning('trigamma_inverse: iteration limit exceeded')
        y[to_solve] = ys

    return float(y[0]) if scalar_input else y


def fit_f_dist(s2: np.ndarray, df: np.ndarray) -> tuple[float, float]:
    """Estimate the scale and degrees of freedom of the scaled F distribution followed by the residual variances
    (limma's fitFDist, without covariate), by matching the moments of their logarithm.

    Zero variances are floored at 1e-5 times the median variance so that their logarithm is defined.

    :param s2: residual variances, one per probe
    :type s2: numpy.ndarray
    :param df: residual degrees of freedom, one per probe
    :type df: numpy.ndarray

    :return: prior degrees of freedom d0 (possibly infinite) and prior variance s0^2
    :rtype: tuple[float, float]"""
    s2 = np.asarray(s2, dtype='float64')
    df = np.broadcast_to(np.asarray(df, dtype='float64'), s2.shape)

    ok = np.isfinite(s2) & np.isfinite(df) & (df > 1e-15)
    nb_ok = ok.sum()
    if nb_ok < 2:
        LOGGER.warning(f'Only {nb_ok} variance(s) available, no empirical Bayes moderation')
        return 0.0, float(s2[ok][0]) if nb_ok == 1 else np.nan

    s2 = np.maximum(s2[ok], 0)
    df = df[ok]

    median = np.median(s2)
    if median == 0:
        LOGGER.warning('More than half of the residual variances are exactly zero: eBayes unreliable')
        median = 1
    s2 = np.maximum(s2, 1e-5 * median)

    z = np.log(s2)
    e = z - digamma(df / 2) + np.log(df / 2)
    e_mean = np.mean(e)
    e_var = np.var(e, ddof=1) - np.mean(polygamma(1, df / 2))

    if e_var > 0:
        d0 = 2 * trigamma_inverse(e_var)
        s0_squared = np.exp(e_mean + digamma(d0 / 2) - np.log(d0 / 2))
    else:
        d0 = np.inf
        s0_squared = np.exp(e_mean)

    LOGGER.debug(f'eBayes prior: d0 = {d0}, s0^2 = {s0_squared}')
    return float(d0), float(s0_squared)


def squeeze_var(s2: np.ndarray, df: np.ndarray, d0: float, s0_squared: float) -> np.ndarray:
    """Posterior variances: weighted average of the prior variance and the residual variances (limma's squeezeVar).
    An infinite prior degrees of freedom means the posterior is the prior.

    :param s2: residual variances
    :type s2: numpy.ndarray
    :param df: residual degrees of freedom
    :type df: numpy.ndarray
    :param d0: prior degrees of freedom
    :type d0: float
    :param s0_squared: prior variance
    :type s0_squared: float

    :return: posterior variances
    :rtype: numpy.ndarray"""
    s2 = np.asarray(s2, dtype='float64')
    if np.isinf(d0):
        return np.where(np.isnan(s2), np.nan, s0_squared)
    df = np.asarray(df, dtype='float64')
    with np.errstate(invalid='ignore', divide='ignore'):
        return (d0 * s0_squared + df * s2) / (d0 + df)
