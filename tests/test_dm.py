import numpy as np
import pandas as pd
import pytest

import methylator.dm as dm
from methylator.annotations import read_known_variants, read_cross_reactive_probes
from methylator.dm import get_design_matrix, get_contrast_vector, get_contrast_matrix, fit_linear_model, \
    moderated_t, get_dmp, top_table
from methylator.errors import ConfigurationError

EFFECT_PROBE_IDS = [f'cg0000000{i}' for i in range(5)]


@pytest.fixture
def filtered_ratio_set(test_ratio_set, data_path):
    variants = read_known_variants(data_path / 'variants.csv')
    cross_reactive = read_cross_reactive_probes(data_path / 'cross_reactive.txt')
    return test_ratio_set.probe_filter(0.01, variants, cross_reactive)


def _sample_sheet(groups, **columns):
    return pd.DataFrame({'sample_name': [f's{i}' for i in range(len(groups))], 'group': groups, **columns})


def test_design_matrix():
    design_matrix = get_design_matrix(_sample_sheet(['A', 'A', 'B', 'B']), '~ group')
    assert design_matrix.columns.tolist() == ['Intercept', 'group[T.B]']
    assert design_matrix.index.tolist() == ['s0', 's1', 's2', 's3']
    assert design_matrix['group[T.B]'].tolist() == [0, 0, 1, 1]


def test_design_matrix_reference_value():
    design_matrix = get_design_matrix(_sample_sheet(['A', 'A', 'B', 'B', 'C']), '~ group', {'group': 'B'})
    assert design_matrix.columns.tolist() == ['Intercept', 'group[T.A]', 'group[T.C]']

    with pytest.raises(ConfigurationError):
        get_design_matrix(_sample_sheet(['A', 'A', 'B', 'B']), '~ group', {'group': 'Z'})
    with pytest.raises(ConfigurationError):
        get_design_matrix(_sample_sheet(['A', 'A', 'B', 'B']), '~ group', {'unknown': 'A'})


def test_design_matrix_rank_deficient():
    sheet = _sample_sheet(['A', 'A', 'B', 'B', 'A'], batch=['x', 'x', 'y', 'y', 'x'])
    with pytest.raises(ConfigurationError, match=r'batch\[T\.y\]'):
        get_design_matrix(sheet, '~ group + batch')


def test_design_matrix_errors():
    with pytest.raises(ConfigurationError):
        get_design_matrix(_sample_sheet(['A', 'B']), '~ group')  # no residual degrees of freedom
    with pytest.raises(ConfigurationError):
        get_design_matrix(_sample_sheet(['A', 'A', 'B', 'B']), '~ unknown_column')
    with pytest.raises(ConfigurationError):
        get_design_matrix(_sample_sheet(['A', 'A', None, 'B']), '~ group')


def test_contrast_vector():
    columns = ['Intercept', 'group[T.B]', 'group[T.C]']
    assert get_contrast_vector('group[T.B]', columns).tolist() == [0, 1, 0]
    assert get_contrast_vector('group[T.C] - group[T.B]', columns).tolist() == [0, -1, 1]
    assert get_contrast_vector({'group[T.C]': 1}, columns).tolist() == [0, 0, 1]
    assert get_contrast_vector([0, 0.5, 0.5], columns).tolist() == [0, 0.5, 0.5]


def test_contrast_vector_errors():
    columns = ['Intercept', 'group[T.B]']
    with pytest.raises(ConfigurationError):
        get_contrast_vector('group[T.C]', columns)
    with pytest.raises(ConfigurationError):
        get_contrast_vector({'group[T.C]': 1}, columns)
    with pytest.raises(ConfigurationError):
        get_contrast_vector([0, 1, 0], columns)
    with pytest.raises(ConfigurationError):
        get_contrast_vector([0, 0], columns)
    with pytest.raises(ConfigurationError):
        get_contrast_vector([0, np.nan], columns)


def test_contrast_matrix():
    columns = ['Intercept', 'group[T.B]', 'group[T.C]']
    contrast_matrix = get_contrast_matrix(None, columns)
    assert contrast_matrix.columns.tolist() == ['group[T.B]', 'group[T.C]']
    assert contrast_matrix.index.tolist() == columns

    contrast_matrix = get_contrast_matrix([0, -1, 1], columns)
    assert contrast_matrix.columns.tolist() == ['-group[T.B] + group[T.C]']

    with pytest.raises(ConfigurationError):
        get_contrast_matrix(['group[T.B]', {'group[T.B]': 1}], columns)
    with pytest.raises(ConfigurationError):
        get_contrast_matrix([], columns)


def test_fit_linear_model():
    rng = np.random.default_rng(3)
    design_matrix = get_design_matrix(_sample_sheet(['A', 'A', 'A', 'B', 'B', 'B']), '~ group')
    contrast_matrix = get_contrast_matrix(None, design_matrix.columns)
    values = pd.DataFrame(rng.normal(0, 1, (20, 6)), columns=design_matrix.index)
    values.iloc[1, 0] = np.nan
    values.iloc[2, [0, 1, 3, 4]] = np.nan

    fit = fit_linear_model(values, design_matrix, contrast_matrix)

    coefficients = np.linalg.lstsq(design_matrix.values, values.iloc[0].values, rcond=None)[0]
    assert fit.loc[0, 'group[T.B]_estimate'] == pytest.approx(coefficients[1])
    assert fit.loc[0, 'group[T.B]_std_unscaled'] == pytest.approx(np.sqrt(2 / 3))
    assert fit.loc[0, 'df_residual'] == 4

    # a probe with a missing value is fitted on its observed samples
    observed = values.iloc[1].notna().values
    coefficients = np.linalg.lstsq(design_matrix.values[observed], values.iloc[1].values[observed], rcond=None)[0]
    assert fit.loc[1, 'group[T.B]_estimate'] == pytest.approx(coefficients[1])
    assert fit.loc[1, 'df_residual'] == 3

    # not enough observations
    assert np.isnan(fit.loc[2, 'group[T.B]_estimate'])
    assert np.isnan(fit.loc[2, 's2'])


def test_moderated_t():
    rng = np.random.default_rng(4)
    design_matrix = get_design_matrix(_sample_sheet(['A'] * 4 + ['B'] * 4), '~ group')
    contrast_matrix = get_contrast_matrix(None, design_matrix.columns)
    values = pd.DataFrame(rng.normal(0, 0.5, (500, 8)), columns=design_matrix.index)
    values.iloc[:10, 4:] += 3
    values.iloc[10:15] = 1.0  # null variance

    fit = fit_linear_model(values, design_matrix, contrast_matrix)
    result = moderated_t(fit, ['group[T.B]'])

    assert (result.s2_post > 0).all()
    assert (result.df_total <= 500 * 6).all()
    assert np.isfinite(result['group[T.B]_t_value']).all()
    assert (result.loc[:9, 'group[T.B]_p_value_adjusted'] < 0.05).all()
    assert (result.loc[10:14, 'group[T.B]_p_value'] > 0.999).all()
    assert ((result['group[T.B]_p_value'] >= 0) & (result['group[T.B]_p_value'] <= 1)).all()


def test_get_dmp(filtered_ratio_set):
    dmps, contrasts = get_dmp(filtered_ratio_set, '~ group')
    assert contrasts == ['group[T.B]']
    assert dmps.index.name == 'probe_id'
    assert len(dmps) == 93

    significant = dmps[dmps['group[T.B]_p_value_adjusted'] < 0.05].index
    assert set(EFFECT_PROBE_IDS) <= set(significant)
    assert len(set(significant) - set(EFFECT_PROBE_IDS)) <= 5
    assert (dmps.loc[EFFECT_PROBE_IDS, 'group[T.B]_estimate'] > 1).all()


def test_get_dmp_contrasts(filtered_ratio_set):
    dmps, contrasts = get_dmp(filtered_ratio_set, '~ group', contrasts=[{'group[T.B]': 1}, [0, -1]])
    assert contrasts == ['group[T.B]', '-group[T.B]']
    assert np.allclose(dmps['group[T.B]_t_value'], -dmps['-group[T.B]_t_value'])

    dmps, contrasts = get_dmp(filtered_ratio_set, '~ group', reference_value={'group': 'B'})
    assert contrasts == ['group[T.A]']
    assert (dmps.loc[EFFECT_PROBE_IDS, 'group[T.A]_estimate'] < -1).all()

    with pytest.raises(ConfigurationError):
        get_dmp(filtered_ratio_set, '~ group', contrasts='group[T.C]')


def test_get_dmp_rank_deficient(filtered_ratio_set):
    filtered_ratio_set.sample_sheet['batch'] = ['x', 'x', 'y', 'y']
    with pytest.raises(ConfigurationError, match='batch'):
        get_dmp(filtered_ratio_set, '~ group + batch')


def test_get_dmp_parallel(filtered_ratio_set, monkeypatch):
    dmps, _ = get_dmp(filtered_ratio_set, '~ group')
    monkeypatch.setattr(dm, 'CHUNK_SIZE', 10)
    dmps_parallel, _ = get_dmp(filtered_ratio_set, '~ group', n_jobs=2)
    pd.testing.assert_frame_equal(dmps, dmps_parallel)


def test_top_table(filtered_ratio_set):
    dmps, contrasts = get_dmp(filtered_ratio_set, '~ group')
    table = top_table(dmps, contrasts[0], filtered_ratio_set)

    assert table.columns.tolist() == ['probe_id', 'chromosome', 'position', 'gene', 'estimate', 't_value', 'p_value',
                                      'p_value_adjusted', 'mean_beta_A', 'mean_beta_B', 'delta_beta']
    assert len(table) == 93
    assert table.p_value.is_monotonic_increasing
    assert set(table.probe_id[:5]) == set(EFFECT_PROBE_IDS)
    assert (table.delta_beta[:5] > 0).all()
    assert table.loc[table.probe_id == 'cg00000002', 'position'].iloc[0] == 10200

    table = top_table(dmps, contrasts[0], filtered_ratio_set, reference_group='B')
    assert (table.delta_beta[:5] < 0).all()

    with pytest.raises(ConfigurationError):
        top_table(dmps, 'unknown', filtered_ratio_set)


def test_design_matrix_numeric_covariate():
    sheet = _sample_sheet(['A', 'A', 'B', 'B', 'B'], age=[30, 42, 51, 38, 60])
    design_matrix = get_design_matrix(sheet, '~ group + age')
    assert design_matrix.columns.tolist() == ['Intercept', 'group[T.B]', 'age']
    assert design_matrix.age.tolist() == [30, 42, 51, 38, 60]
