"""
Functions used to compute DMP (Differentially Methylated Probes) with a moderated t-test, and DMR (Differentially
Methylated Regions) by kernel smoothing of the probes statistics.
"""

import numpy as np
import pandas as pd

from patsy import dmatrix, DesignInfo, PatsyError
from scipy.stats import combine_pvalues, norm, chi2, t as student_t
from joblib import Parallel, delayed

from methylator.errors import ConfigurationError
from methylator.ratios import RatioSet
from methylator.stats import adjust_p_values, fit_f_dist, squeeze_var
from methylator.utils import get_logger, chromosome_sort_key

LOGGER = get_logger()

VARIANCE_FLOOR = 1e-12
CHUNK_SIZE = 10000
DMR_COLUMNS = ['chromosome', 'start', 'end', 'width', 'nb_probes', 'probe_ids', 'p_value', 'p_value_adjusted',
               'min_smoothed_fdr', 'mean_effect', 'max_effect', 'direction', 'overlapping_genes', 'rank']


########################################################################################################################
# Design matrix and contrasts
########################################################################################################################

def get_design_matrix(sample_sheet: pd.DataFrame, formula: str, reference_value: dict | None = None) -> pd.DataFrame:
    """Build the design matrix of the samples from an R-like formula.

    More info on design matrices and formulas:
        - https://patsy.readthedocs.io/en/latest/overview.html

    :param sample_sheet: samples information, with a sample_name column
    :type sample_sheet: pandas.DataFrame
    :param formula: R-like formula used in the design matrix to describe the statistical model. e.g. '~ group + source'
    :type formula: str
    :param reference_value: reference value for each factor, e.g. {'group': 'control'}. By default, the reference
        level of a factor is the first of its sorted values. Default: None
    :type reference_value: dict | None

    :raises ConfigurationError: if the formula can't be evaluated on the sample sheet, if a sample has a missing value
        for a variable of the formula, or if the design matrix is rank deficient

    :return: the design matrix, indexed by sample name
    :rtype: pandas.DataFrame"""
    sample_info = sample_sheet.set_index('sample_name')

    # the reference level for each factor is the first level of the sorted factor values. If a specific reference value
    # is provided, we sort the levels accordingly
    if reference_value is not None:
        for column_name, value in reference_value.items():
            if column_name not in sample_info.columns:
                raise ConfigurationError(f'reference_value: column {column_name} not found in the sample sheet')
            if value not in set(sample_info[column_name]):
                raise ConfigurationError(f'reference_value: {value} is not a value of column {column_name}')
            order = [value] + sorted(v for v in set(sample_info[column_name].dropna()) if v != value)
            sample_info[column_name] = pd.Categorical(sample_info[column_name], categories=order, ordered=True)

    try:
        design_matrix = dmatrix(formula, sample_info, return_type='dataframe', NA_action='raise')
    except PatsyError as error:
        raise ConfigurationError(f'formula {formula} can\'t be evaluated on the sample sheet: {error}') from error

    design_matrix.index.name = 'sample_name'
    check_design_rank(design_matrix)
    return design_matrix


def check_design_rank(design_matrix: pd.DataFrame) -> None:
    """Check that the design matrix has full column rank and leaves residual degrees of freedom.

    :param design_matrix: design matrix to check
    :type design_matrix: pandas.DataFrame

    :raises ConfigurationError: naming the first column that is a linear combination of the previous ones, or if
        there are not more samples than columns

    :return: None"""
    values = design_matrix.values.astype('float64')
    if values.shape[1] == 0:
        raise ConfigurationError('The design matrix is empty. Please make sure the formula you provided is correct.')

    rank = 0
    for i, column in enumerate(design_matrix.columns):
        new_rank = np.linalg.matrix_rank(values[:, :i + 1])
        if new_rank == rank:
            raise ConfigurationError(f'The design matrix is rank deficient: column {column} is a linear combination of '
                                     f'columns {design_matrix.columns[:i].tolist()}')
        rank = new_rank

    if values.shape[0] <= values.shape[1]:
        raise ConfigurationError(f'{values.shape[0]} samples for {values.shape[1]} design columns: no residual degrees '
                                 f'of freedom to estimate the variance')


def contrast_name(contrast: str | dict | np.ndarray | list, design_columns: list[str]) -> str:
    """Readable name of a contrast: the string itself for string contrasts, the weighted columns otherwise"""
    if isinstance(contrast, str):
        return contrast
    if isinstance(contrast, dict):
        weights = contrast.items()
    else:
        weights = [(c, w) for c, w in zip(design_columns, np.asarray(contrast, dtype='float64').ravel()) if w != 0]
    terms = [column if w == 1 else f'-{column}' if w == -1 else f'{w:g}*{column}' for column, w in weights]
    return ' + '.join(terms).replace('+ -', '- ')


def get_contrast_vector(contrast: str | dict | np.ndarray | list, design_columns: list[str]) -> np.ndarray:
    """Convert a contrast to a vector of weights over the design columns.

    :param contrast: a linear expression of the design columns (e.g. 'group[T.B]', 'group[T.C] - group[T.B]'),
        a dictionary {column: weight}, or an array of weights of the same length as the design columns
    :type contrast: str | dict | numpy.ndarray | list
    :param design_columns: names of the design matrix columns
    :type design_columns: list[str]

    :raises ConfigurationError: if the contrast refers to an unknown column, has the wrong length, or is null

    :return: the contrast weights
    :rtype: numpy.ndarray"""
    design_columns = list(design_columns)

    if isinstance(contrast, str):
        try:
            constraint = DesignInfo(design_columns).linear_constraint(contrast)
        except PatsyError as error:
            raise ConfigurationError(f'contrast {contrast} is not defined on the design columns {design_columns}: '
                                     f'{error}') from error
        if constraint.coefs.shape[0] != 1 or np.any(constraint.constants != 0):
            raise ConfigurationError(f'contrast {contrast} must be a single linear expression of the design columns')
        vector = constraint.coefs[0]

    elif isinstance(contrast, dict):
        unknown = [c for c in contrast if c not in design_columns]
        if len(unknown) > 0:
            raise ConfigurationError(f'contrast columns {unknown} are not defined in design columns {design_columns}')
        vector = np.array([contrast.get(c, 0) for c in design_columns], dtype='float64')

    else:
        vector = np.asarray(contrast, dtype='float64').ravel()
        if len(vector) != len(design_columns):
            raise ConfigurationError(f'contrast length ({len(vector)}) != number of design columns '
                                     f'({len(design_columns)})')

    if not np.all(np.isfinite(vector)) or np.all(vector == 0):
        raise ConfigurationError(f'contrast {contrast} must have finite, not all null, weights')

    return np.asarray(vector, dtype='float64')


def get_contrast_matrix(contrasts, design_columns: list[str]) -> pd.DataFrame:
    """Validate the contrasts and gather them in a matrix (design columns x contrasts). If contrasts is None, one
    contrast is created for each design column but the intercept.

    :param contrasts: a contrast (see `get_contrast_vector`) or a list of contrasts. Default: None
    :param design_columns: names of the design matrix columns
    :type design_columns: list[str]

    :raises ConfigurationError: if a contrast is invalid or if two contrasts have the same name

    :return: the contrast matrix, with contrast names as columns
    :rtype: pandas.DataFrame"""
    design_columns = list(design_columns)
    if contrasts is None:
        contrasts = [c for c in design_columns if c != 'Intercept']
    elif isinstance(contrasts, (str, dict, np.ndarray)):
        contrasts = [contrasts]
    elif isinstance(contrasts, list) and len(contrasts) > 0 and all(np.isscalar(c) and not isinstance(c, str)
                                                                    for c in contrasts):
        contrasts = [contrasts]  # a single contrast given as a list of weights

    if len(contrasts) == 0:
        raise ConfigurationError('No contrast to test')

    vectors = {}
    for contrast in contrasts:
        name = contrast_name(contrast, design_columns)
        if name in vectors:
            raise ConfigurationError(f'contrast {name} is defined twice')
        vectors[name] = get_contrast_vector(contrast, design_columns)

    return pd.DataFrame(vectors, index=design_columns)


########################################################################################################################
# Linear model and moderated t-test
########################################################################################################################

def _fit_complete_rows(values: np.ndarray, design: np.ndarray, contrast_matrix: np.ndarray) -> tuple:
    """Ordinary least squares for probes without missing values, all sharing the same design

    :return: contrast estimates, unscaled standard deviations of the contrasts, residual variances, residual df"""
    nb_samples, nb_columns = design.shape
    xtx_inv = np.linalg.inv(design.T @ design)
    coefficients = values @ design @ xtx_inv
    residuals = values - coefficients @ design.T
    df_residual = nb_samples - nb_columns
    s2 = (residuals ** 2).sum(axis=1) / df_residual
    std_unscaled = np.sqrt(np.einsum('ij,ik,kj->j', contrast_matrix, xtx_inv, contrast_matrix))
    estimates = coefficients @ contrast_matrix
    return (estimates, np.tile(std_unscaled, (len(values), 1)), s2,
            np.full(len(values), df_residual, dtype='float64'))


def _fit_incomplete_row(row: np.ndarray, design: np.ndarray, contrast_matrix: np.ndarray) -> tuple:
    """Ordinary least squares for one probe with missing values, on its observed samples only"""
    nb_contrasts = contrast_matrix.shape[1]
    observed = ~np.isnan(row)
    design_obs = design[observed]
    nb_obs, nb_columns = design_obs.shape

    if nb_obs < nb_columns + 1 or np.linalg.matrix_rank(design_obs) < nb_columns:
        return np.full(nb_contrasts, np.nan), np.full(nb_contrasts, np.nan), np.nan, np.nan

    estimates, std_unscaled, s2, df_residual = _fit_complete_rows(row[observed][None, :], design_obs, contrast_matrix)
    return estimates[0], std_unscaled[0], s2[0], df_residual[0]


def _fit_chunk(values: np.ndarray, design: np.ndarray, contrast_matrix: np.ndarray) -> tuple:
    """Fit a chunk of probes: complete rows at once, rows with missing values one by one"""
    nb_probes, nb_contrasts = len(values), contrast_matrix.shape[1]
    estimates = np.full((nb_probes, nb_contrasts), np.nan)
    std_unscaled = np.full((nb_probes, nb_contrasts), np.nan)
    s2 = np.full(nb_probes, np.nan)
    df_residual = np.full(nb_probes, np.nan)

    complete = ~np.isnan(values).any(axis=1)
    if complete.any():
        fit = _fit_complete_rows(values[complete], design, contrast_matrix)
        estimates[complete], std_unscaled[complete], s2[complete], df_residual[complete] = fit

    for i in np.flatnonzero(~complete):
        estimates[i], std_unscaled[i], s2[i], df_residual[i] = _fit_incomplete_row(values[i], design, contrast_matrix)

    return estimates, std_unscaled, s2, df_residual


def fit_linear_model(values: pd.DataFrame, design_matrix: pd.DataFrame, contrast_matrix: pd.DataFrame,
                     n_jobs: int = 1) -> pd.DataFrame:
    """Fit a linear model for each probe and compute the contrasts estimates.

    Probes without missing values are fitted together. A probe with missing values is fitted on its observed
    samples, with its own residual degrees of freedom; it gets NaN if it has fewer observations than design columns
    + 1, or if the design restricted to its observed samples is rank deficient.

    :param values: probe x sample values (usually M-values)
    :type values: pandas.DataFrame
    :param design_matrix: design matrix, indexed by sample name
    :type design_matrix: pandas.DataFrame
    :param contrast_matrix: contrast weights, design columns x contrasts
    :type contrast_matrix: pandas.DataFrame
    :param n_jobs: number of parallel jobs used to fit the probes by chunks. Default: 1
    :type n_jobs: int

    :return: for each probe, `{contrast}_estimate` and `{contrast}_std_unscaled` (sqrt(c' (X'X)^-1 c)) columns for
        each contrast, the residual variance s2 and the residual degrees of freedom df_residual
    :rtype: pandas.DataFrame"""
    design = design_matrix.loc[values.columns].values.astype('float64')
    contrasts = contrast_matrix.loc[design_matrix.columns].values.astype('float64')
    all_values = values.values.astype('float64')

    chunks = [all_values[i:i + CHUNK_SIZE] for i in range(0, len(all_values), CHUNK_SIZE)]
    if n_jobs == 1 or len(chunks) <= 1:
        results = [_fit_chunk(chunk, design, contrasts) for chunk in chunks]
    else:
        results = Parallel(n_jobs=n_jobs)(delayed(_fit_chunk)(chunk, design, contrasts) for chunk in chunks)

    names = contrast_matrix.columns.tolist()
    if len(results) == 0:
        columns = [f'{n}_{f}' for n in names for f in ['estimate', 'std_unscaled']] + ['s2', 'df_residual']
        return pd.DataFrame(columns=columns, index=values.index, dtype='float64')

    estimates, std_unscaled, s2, df_residual = [np.concatenate(r) for r in zip(*results)]

    fit = pd.DataFrame(index=values.index)
    for i, name in enumerate(names):
        fit[f'{name}_estimate'] = estimates[:, i]
        fit[f'{name}_std_unscaled'] = std_unscaled[:, i]
    fit['s2'] = s2
    fit['df_residual'] = df_residual
    return fit


def moderated_t(fit: pd.DataFrame, contrast_names: list[str]) -> pd.DataFrame:
    """Empirical Bayes moderation of the residual variances (limma's eBayes) and moderated t-test of each contrast.

    The residual variances are shrunk towards a common prior variance s0^2 with d0 prior degrees of freedom, both
    estimated from all the probes. The moderated t statistic of a contrast is its estimate divided by its posterior
    standard error, and follows a Student distribution with df_residual + d0 degrees of freedom (capped at the pooled
    residual degrees of freedom). P-values are two-sided, and adjusted with Benjamini-Hochberg's method for each
    contrast.

    :param fit: linear model fit, as returned by `fit_linear_model()`
    :type fit: pandas.DataFrame
    :param contrast_names: names of the contrasts to test
    :type contrast_names: list[str]

    :return: for each contrast, `{contrast}_estimate`, `{contrast}_t_value`, `{contrast}_p_value` and
        `{contrast}_p_value_adjusted` columns, and the shared s2, s2_post, df_residual, df_total, d0, s0_squared
    :rtype: pandas.DataFrame"""
    s2 = fit['s2'].values
    df_residual = fit['df_residual'].values

    d0, s0_squared = fit_f_dist(s2, df_residual)
    s2_post = np.maximum(squeeze_var(s2, df_residual, d0, s0_squared), VARIANCE_FLOOR)

    df_pooled = np.nansum(df_residual)
    df_total = np.minimum(df_residual + d0, df_pooled)

    LOGGER.info(f'eBayes prior: d0 = {d0:.3f}, s0^2 = {s0_squared:.5f}')

    result = pd.DataFrame(index=fit.index)
    for name in contrast_names:
        estimate = fit[f'{name}_estimate'].values
        with np.errstate(invalid='ignore', divide='ignore'):
            t_value = estimate / (fit[f'{name}_std_unscaled'].values * np.sqrt(s2_post))
        abs_t = np.abs(t_value)
        p_value = np.where(np.isinf(df_total), 2 * norm.sf(abs_t),
                           2 * student_t.sf(abs_t, np.where(np.isinf(df_total), 1, df_total)))
        result[f'{name}_estimate'] = estimate
        result[f'{name}_t_value'] = t_value
        result[f'{name}_p_value'] = p_value
        result[f'{name}_p_value_adjusted'] = adjust_p_values(p_value)

    result['s2'] = s2
    result['s2_post'] = np.where(np.isnan(s2), np.nan, s2_post)
    result['df_residual'] = df_residual
    result['df_total'] = np.where(np.isnan(df_residual), np.nan, df_total)
    result['d0'] = d0
    result['s0_squared'] = s0_squared
    return result


def get_dmp(ratio_set: RatioSet, formula: str, contrasts=None, reference_value: dict | None = None,
            n_jobs: int = 1) -> tuple[pd.DataFrame, list[str]]:
    """Find Differentially Methylated Probes (DMP): for each probe, fit a linear model of the M-values on the design
    described by `formula`, then test each contrast with an empirical Bayes moderated t-test.

    :param ratio_set: normalized and filtered signal
    :type ratio_set: RatioSet
    :param formula: R-like formula used in the design matrix to describe the statistical model. e.g. '~ group + source'
    :type formula: str
    :param contrasts: contrast(s) to test: a linear expression of the design columns ('group[T.B]'), a dict
        {column: weight}, an array of weights, or a list of those. Default: None (one contrast per design column,
        intercept excluded)
    :param reference_value: reference value for each factor. Default: None
    :type reference_value: dict | None
    :param n_jobs: number of parallel jobs. Default: 1
    :type n_jobs: int

    :raises ConfigurationError: if the design matrix is rank deficient or a contrast is not defined

    :return: dataframe with probes as rows and statistics in columns, list of contrast names
    :rtype: tuple[pandas.DataFrame, list[str]]"""
    LOGGER.info('>>> Start get DMP')

    design_matrix = get_design_matrix(ratio_set.sample_sheet, formula, reference_value)
    contrast_matrix = get_contrast_matrix(contrasts, design_matrix.columns)
    contrast_names = contrast_matrix.columns.tolist()
    LOGGER.info(f'design columns: {design_matrix.columns.tolist()}, contrasts: {contrast_names}')

    m_values = ratio_set.m_values()[design_matrix.index.tolist()]
    fit = fit_linear_model(m_values, design_matrix, contrast_matrix, n_jobs)
    dmps = moderated_t(fit, contrast_names)
    dmps.index.name = 'probe_id'

    for name in contrast_names:
        nb_significant = (dmps[f'{name}_p_value_adjusted'] < 0.05).sum()
        LOGGER.info(f' - {nb_significant:,} significant probes for {name} (adjusted p-value < 0.05)')

    LOGGER.info('get DMP done')
    return dmps, contrast_names


def top_table(dmps: pd.DataFrame, contrast: str, ratio_set: RatioSet, group_column: str = 'group',
              reference_group: str | None = None) -> pd.DataFrame:
    """Per-contrast results table, sorted by p-value: probe coordinates, test statistics, mean beta value of each group
    and the difference between groups.

    :param dmps: DMP statistics, as returned by `get_dmp()`
    :type dmps: pandas.DataFrame
    :param contrast: name of the contrast
    :type contrast: str
    :param ratio_set: signal the DMP were computed on
    :type ratio_set: RatioSet
    :param group_column: sample sheet column defining the groups. Default: 'group'
    :type group_column: str
    :param reference_group: group used as reference for delta_beta. Default: None (first group in sorted order)
    :type reference_group: str | None

    :raises ConfigurationError: if the contrast has not been tested

    :return: one row per probe with columns probe_id, chromosome, position, gene, estimate, t_value, p_value,
        p_value_adjusted, mean_beta_{group} for each group, delta_beta
    :rtype: pandas.DataFrame"""
    fields = ['estimate', 't_value', 'p_value', 'p_value_adjusted']
    columns = [f'{contrast}_{f}' for f in fields]
    missing = [c for c in columns if c not in dmps.columns]
    if len(missing) > 0:
        raise ConfigurationError(f'contrast {contrast} not found in DMP results')

    table = dmps[columns].copy()
    table.columns = fields

    coordinates = ratio_set.coordinates.reindex(table.index)
    table.insert(0, 'chromosome', coordinates.chromosome.values)
    table.insert(1, 'position', coordinates.start.values)
    table.insert(2, 'gene', coordinates.gene.values)

    # delta beta between the last and the reference group if there are two groups, max - min otherwise
    if group_column in ratio_set.sample_sheet.columns:
        betas = ratio_set.betas().reindex(table.index)
        groups = ratio_set.sample_sheet.set_index('sample_name')[group_column].astype(str)
        levels = sorted(groups.unique())
        if reference_group is not None and reference_group in levels:
            levels = [reference_group] + [level for level in levels if level != reference_group]
        group_means = pd.DataFrame({f'mean_beta_{level}': betas[groups.index[groups == level]].mean(axis=1)
                                    for level in levels})
        table = table.join(group_means)
        if len(levels) == 2:
            table['delta_beta'] = group_means.iloc[:, 1] - group_means.iloc[:, 0]
        else:
            table['delta_beta'] = group_means.max(axis=1) - group_means.min(axis=1)

    table.index.name = 'probe_id'
    table = table.reset_index().sort_values(['p_value', 'probe_id'], na_position='last')
    return table.reset_index(drop=True)


########################################################################################################################
# DMR
########################################################################################################################

def _combine_p_values_stouffer(p_values: pd.Series) -> float:
    """shortcut to scipy's function, using Stouffer method to combine p-values. Only return the combined p-value

    :param p_values: p-values to combine
    :type p_values: pandas.Series

    :return: combined p-value
    :rtype: float"""
    if len(p_values) == 1:
        return float(p_values.iloc[0])
    return float(combine_pvalues(np.clip(p_values, 1e-300, 1), method='stouffer')[1])


def _smooth_chromosome(positions: np.ndarray, z_squared: np.ndarray, lambda_: float, C: float) -> np.ndarray:
    """Gaussian kernel smoothing of the squared statistics of the probes of one chromosome, sorted by position, and
    the p-value of each smoothed statistic under the null hypothesis (Satterthwaite approximation).

    :return: smoothed p-value of each probe
    :rtype: numpy.ndarray"""
    sigma = lambda_ / C
    lower = np.searchsorted(positions, positions - lambda_, side='left')
    upper = np.searchsorted(positions, positions + lambda_, side='right')

    p_values = np.empty(len(positions))
    for i in range(len(positions)):
        distances = positions[lower[i]:upper[i]] - positions[i]
        weights = np.exp(-0.5 * (distances / sigma) ** 2)
        weights_sum = weights.sum()
        smoothed = (weights * z_squared[lower[i]:upper[i]]).sum() / weights_sum
        scale = (weights ** 2).sum() / weights_sum ** 2
        p_values[i] = chi2.sf(smoothed / scale, 1 / scale)
    return p_values


def smooth_statistics(probes: pd.DataFrame, lambda_: float = 1000, C: float = 2, n_jobs: int = 1) -> pd.DataFrame:
    """Compute the smoothed p-value and FDR of each probe. Each chromosome is smoothed independently.

    :param probes: probes with columns chromosome, position, z (signed statistic)
    :type probes: pandas.DataFrame
    :param lambda_: kernel window, in bases. Default: 1000
    :type lambda_: float
    :param C: scaling factor, the kernel bandwidth is lambda_ / C. Default: 2
    :type C: float
    :param n_jobs: number of parallel jobs (one chromosome per job). Default: 1
    :type n_jobs: int

    :return: the probes sorted by chromosome and position, with smoothed_p_value and smoothed_fdr columns
    :rtype: pandas.DataFrame"""
    probes = probes.reset_index()
    probes['chromosome_key'] = chromosome_sort_key(probes.chromosome)
    probes = probes.sort_values(['chromosome_key', 'chromosome', 'position', 'probe_id']).reset_index(drop=True)

    chromosomes = [group for _, group in probes.groupby(['chromosome_key', 'chromosome'], sort=True)]

    def smooth(group):
        return _smooth_chromosome(group.position.values.astype('float64'), group.z.values ** 2, lambda_, C)

    if n_jobs == 1:
        smoothed = [smooth(group) for group in chromosomes]
    else:
        smoothed = Parallel(n_jobs=n_jobs)(delayed(smooth)(group) for group in chromosomes)

    probes['smoothed_p_value'] = np.concatenate(smoothed) if len(smoothed) > 0 else np.array([])
    probes['smoothed_fdr'] = adjust_p_values(probes.smoothed_p_value)
    return probes.drop(columns='chromosome_key').set_index('probe_id')


def get_dmr(dmps: pd.DataFrame, contrast: str, coordinates: pd.DataFrame, lambda_: float = 1000, C: float = 2,
            fdr: float = 0.05, min_probes: int = 1, n_jobs: int = 1) -> pd.DataFrame:
    """Find Differentially Methylated Regions (DMR) by kernel smoothing of the probes statistics, DMRcate-style.

    Each probe statistic is converted to a signed z-score, squared, and smoothed along its chromosome with a gaussian
    kernel of bandwidth lambda_ / C truncated at lambda_ bases. The smoothed statistics are tested against a scaled
    chi-square distribution and adjusted for multiple testing. Significant probes (smoothed FDR <= fdr) closer than
    lambda_ bases from each other on the same chromosome form a region. The region p-value combines its probes
    p-values with Stouffer's method.

    :param dmps: DMP statistics, as returned by `get_dmp()`
    :type dmps: pandas.DataFrame
    :param contrast: name of the contrast to use
    :type contrast: str
    :param coordinates: probes coordinates indexed by probe ID, with columns chromosome, start and optionally gene
    :type coordinates: pandas.DataFrame
    :param lambda_: maximum distance between two probes of a region, and kernel window, in bases. Default: 1000
    :type lambda_: float
    :param C: scaling factor of the kernel bandwidth. Default: 2
    :type C: float
    :param fdr: smoothed FDR threshold for a probe to be significant. Default: 0.05
    :type fdr: float
    :param min_probes: minimum number of probes in a region. Default: 1
    :type min_probes: int
    :param n_jobs: number of parallel jobs. Default: 1
    :type n_jobs: int

    :raises ConfigurationError: if the parameters are invalid or the contrast has not been tested

    :return: one row per region, ranked by p-value, then width (widest first), chromosome and start
    :rtype: pandas.DataFrame"""
    LOGGER.info('>>> Start get DMR')

    if lambda_ <= 0 or C <= 0:
        raise ConfigurationError(f'lambda_ ({lambda_}) and C ({C}) must be > 0')
    if not 0 < fdr <= 1:
        raise ConfigurationError(f'fdr must be in ]0, 1] (got {fdr})')
    if min_probes < 1:
        raise ConfigurationError(f'min_probes must be >= 1 (got {min_probes})')
    for column in [f'{contrast}_estimate', f'{contrast}_p_value']:
        if column not in dmps.columns:
            raise ConfigurationError(f'column {column} not found in DMP results')

    probes = pd.DataFrame({'estimate': dmps[f'{contrast}_estimate'], 'p_value': dmps[f'{contrast}_p_value']})
    genes = coordinates['gene'] if 'gene' in coordinates.columns else pd.Series('', index=coordinates.index)
    probes = probes.join(pd.DataFrame({'chromosome': coordinates.chromosome, 'position': coordinates.start,
                                       'gene': genes.fillna('')}), how='inner')
    probes = probes.dropna(subset=['estimate', 'p_value', 'chromosome', 'position'])
    probes.index.name = 'probe_id'

    if len(probes) == 0:
        LOGGER.warning('No probe with statistics and coordinates, no DMR')
        return pd.DataFrame(columns=DMR_COLUMNS)

    probes['chromosome'] = probes.chromosome.astype(str)
    probes['z'] = np.sign(probes.estimate) * norm.isf(np.clip(probes.p_value, 1e-300, 1) / 2)

    probes = smooth_statistics(probes, lambda_, C, n_jobs)
    significant = probes[probes.smoothed_fdr <= fdr].reset_index()
    LOGGER.info(f'{len(significant):,} significant probes after smoothing (smoothed FDR <= {fdr})')

    if len(significant) == 0:
        return pd.DataFrame(columns=DMR_COLUMNS)

    # a new region starts on a new chromosome or after a gap larger than lambda_
    new_chromosome = significant.chromosome != significant.chromosome.shift()
    gap = significant.position.diff() > lambda_
    significant['region_id'] = (new_chromosome | gap).cumsum()

    def summarize(region: pd.DataFrame) -> dict:
        genes = sorted({g for genes in region.gene for g in str(genes).split(';') if g != ''})
        mean_effect = region.estimate.mean()
        return {
            'chromosome': region.chromosome.iloc[0],
            'start': int(region.position.min()),
            'end': int(region.position.max()),
            'width': int(region.position.max() - region.position.min()),
            'nb_probes': len(region),
            'probe_ids': ';'.join(region.probe_id),
            'p_value': _combine_p_values_stouffer(region.p_value),
            'min_smoothed_fdr': region.smoothed_fdr.min(),
            'mean_effect': mean_effect,
            'max_effect': region.estimate.iloc[np.argmax(np.abs(region.estimate.values))],
            'direction': 'hyper' if mean_effect > 0 else 'hypo',
            'overlapping_genes': ';'.join(genes),
        }

    dmrs = pd.DataFrame([summarize(region) for _, region in significant.groupby('region_id', sort=True)])
    dmrs = dmrs[dmrs.nb_probes >= min_probes].copy()

    if len(dmrs) == 0:
        return pd.DataFrame(columns=DMR_COLUMNS)

    dmrs['p_value_adjusted'] = adjust_p_values(dmrs.p_value)

    # total order, independent of the input probes order
    dmrs['chromosome_key'] = chromosome_sort_key(dmrs.chromosome)
    dmrs = dmrs.sort_values(['p_value', 'width', 'chromosome_key', 'chromosome', 'start'],
                            ascending=[True, False, True, True, True])
    dmrs = dmrs.drop(columns='chromosome_key').reset_index(drop=True)
    dmrs['rank'] = np.arange(1, len(dmrs) + 1)

    LOGGER.info(f'{len(dmrs):,} DMRs found, {(dmrs.p_value_adjusted < 0.05).sum():,} with adjusted p-value < 0.05')
    return dmrs[DMR_COLUMNS].astype({'start': 'int64', 'end': 'int64', 'width': 'int64', 'nb_probes': 'int64'})
