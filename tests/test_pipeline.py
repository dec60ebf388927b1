import os

import pandas as pd
import pytest

import methylator.pipeline as pipeline
from methylator.annotations import read_known_variants, read_cross_reactive_probes, Annotations
from methylator.errors import ConfigurationError
from methylator.pipeline import PipelineConfig, run_pipeline, save_results
from methylator.samples import read_samples


def test_config_defaults():
    config = PipelineConfig()
    assert config.formula == '~ group'
    assert config.sample_threshold == 0.05
    assert config.probe_threshold == 0.01
    assert config.lambda_ == 1000
    assert config.C == 2


@pytest.mark.parametrize('parameters', [{'sample_threshold': 0}, {'probe_threshold': 1.5}, {'dmr_fdr': -0.1},
                                        {'detection_method': 'unknown'}, {'normalization_floor': 0},
                                        {'lambda_': 0}, {'C': -2}, {'min_probes': 0}, {'n_jobs': 0},
                                        {'formula': 'group'}])
def test_config_errors(parameters):
    with pytest.raises(ConfigurationError):
        PipelineConfig(**parameters)


def test_run_pipeline(test_samples, data_path, tmp_path):
    variants = read_known_variants(data_path / 'variants.csv')
    cross_reactive = read_cross_reactive_probes(data_path / 'cross_reactive.txt')
    result = run_pipeline(test_samples, variants=variants, cross_reactive=cross_reactive)

    assert result.contrasts == ['group[T.B]']
    assert result.samples.nb_samples == 4
    assert result.ratio_set.nb_probes == 93
    assert len(result.dmps) == 93
    assert set(result.top_tables['group[T.B]'].probe_id[:5]) == {f'cg0000000{i}' for i in range(5)}
    assert result.dmrs['group[T.B]'].iloc[0].start == 10000
    # input samples are left untouched
    assert test_samples.detection_p_values is None

    paths = save_results(result, tmp_path / 'results')
    assert [os.path.basename(p) for p in paths] == ['dmp.csv', 'top_table_group_T.B.csv', 'dmr_group_T.B.csv']
    assert all(os.path.exists(p) for p in paths)
    top_table = pd.read_csv(paths[1])
    assert len(top_table) == 93


def test_run_pipeline_sample_filter(make_dataset):
    data_path = make_dataset('data', groups=('A', 'A', 'A', 'B', 'B', 'B'), low_signal_samples=(2,))
    annotation = Annotations.from_file(data_path / 'annotation.csv')
    samples = read_samples(data_path, annotation, sample_sheet_name='sample_sheet.csv')

    config = PipelineConfig(detection_method='poobah', reference_value={'group': 'B'})
    result = run_pipeline(samples, config)
    assert result.samples.sample_names == ['A_1', 'A_2', 'B_1', 'B_2', 'B_3']
    assert result.contrasts == ['group[T.A]']
    assert result.ratio_set.sample_names == ['A_1', 'A_2', 'B_1', 'B_2', 'B_3']
    assert 'mean_beta_B' in result.top_tables['group[T.A]'].columns


def test_run_pipeline_no_sample_left(make_dataset):
    data_path = make_dataset('no_signal', low_signal_samples=(0, 1, 2, 3))
    samples = read_samples(data_path, Annotations.from_file(data_path / 'annotation.csv'),
                           sample_sheet_name='sample_sheet.csv')
    with pytest.raises(ConfigurationError):
        run_pipeline(samples)


@pytest.mark.parametrize('parameters', [{'formula': '~ unknown_column'}, {'contrasts': 'group[T.C]'},
                                        {'reference_value': {'group': 'Z'}}])
def test_run_pipeline_checks_model_first(test_samples, monkeypatch, parameters):
    def no_filter(*args, **kwargs):
        pytest.fail('samples should not be filtered with an invalid model')

    monkeypatch.setattr(pipeline, 'filter_samples', no_filter)
    with pytest.raises(ConfigurationError):
        run_pipeline(test_samples, PipelineConfig(**parameters))
    assert test_samples.detection_p_values is None
