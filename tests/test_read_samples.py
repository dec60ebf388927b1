import numpy as np
import pandas as pd
import pytest

from methylator.errors import DataError
from methylator.samples import read_samples, read_sigdf
from methylator.sample_sheet import read_from_file


def test_read_samples(test_samples_ini):
    assert test_samples_ini.nb_samples == 4
    assert test_samples_ini.sample_names == ['A_1', 'A_2', 'B_1', 'B_2']
    assert test_samples_ini.nb_probes == 120
    assert test_samples_ini.get_signal_df().index.names == ['type', 'channel', 'probe_type', 'probe_id']


def test_type_ii_values(data_path, test_samples_ini):
    sigdf = pd.read_csv(data_path / 'S1_sigdf.csv').set_index('Probe_ID')
    sample_df = test_samples_ini['A_1'].xs('cg00000001', level='probe_id')

    # green signal of type II probes is read from UG when MG is empty
    assert sample_df[('G', 'M')].iloc[0] == pytest.approx(sigdf.loc['cg00000001', 'UG'])
    assert sample_df[('R', 'U')].iloc[0] == pytest.approx(sigdf.loc['cg00000001', 'UR'])
    assert np.isnan(sample_df[('G', 'U')].iloc[0])
    assert np.isnan(sample_df[('R', 'M')].iloc[0])


def test_type_i_values(data_path, test_samples_ini):
    sigdf = pd.read_csv(data_path / 'S1_sigdf.csv').set_index('Probe_ID')
    sample_df = test_samples_ini['A_1'].xs('cg00000000', level='probe_id')
    for channel, state in [('G', 'M'), ('G', 'U'), ('R', 'M'), ('R', 'U')]:
        assert sample_df[(channel, state)].iloc[0] == pytest.approx(sigdf.loc['cg00000000', f'{state}{channel}'])


def test_max_samples(data_path, annotation):
    samples = read_samples(data_path, annotation, sample_sheet_name='sample_sheet.csv', max_samples=2)
    assert samples.sample_names == ['A_1', 'A_2']


def test_sample_sheet_df_and_file_path(data_path, annotation):
    sheet = read_from_file(data_path / 'sample_sheet.csv')
    sheet['file_path'] = [f'S{i + 1}_sigdf.csv' for i in range(4)]
    sheet = sheet.drop(columns='sample_id')
    samples = read_samples(data_path, annotation, sample_sheet_df=sheet)
    assert samples.nb_samples == 4


def test_sample_sheet_arguments(data_path, annotation):
    sheet = read_from_file(data_path / 'sample_sheet.csv')
    with pytest.raises(ValueError):
        read_samples(data_path, annotation, sample_sheet_df=sheet, sample_sheet_name='sample_sheet.csv')
    with pytest.raises(ValueError):
        read_samples(data_path, annotation)
    with pytest.raises(ValueError):
        read_samples(data_path, None, sample_sheet_name='sample_sheet.csv')


def test_missing_file(data_path, annotation):
    sheet = read_from_file(data_path / 'sample_sheet.csv')
    sheet.loc[1, 'sample_id'] = 'S9'
    with pytest.raises(DataError):
        read_samples(data_path, annotation, sample_sheet_df=sheet)


def test_unknown_probe(tmp_path, data_path, annotation):
    sigdf = pd.read_csv(data_path / 'S1_sigdf.csv')
    sigdf.loc[0, 'Probe_ID'] = 'cg99999999'
    sigdf.to_csv(tmp_path / 'bad.csv', index=False)
    with pytest.raises(DataError):
        read_sigdf(tmp_path / 'bad.csv', 'bad', annotation)


def test_duplicated_probe(tmp_path, data_path, annotation):
    sigdf = pd.read_csv(data_path / 'S1_sigdf.csv')
    sigdf.loc[1, 'Probe_ID'] = sigdf.loc[0, 'Probe_ID']
    sigdf.to_csv(tmp_path / 'bad.csv', index=False)
    with pytest.raises(DataError):
        read_sigdf(tmp_path / 'bad.csv', 'bad', annotation)


def test_missing_columns(tmp_path, data_path, annotation):
    sigdf = pd.read_csv(data_path / 'S1_sigdf.csv').drop(columns='UR')
    sigdf.to_csv(tmp_path / 'bad.csv', index=False)
    with pytest.raises(DataError):
        read_sigdf(tmp_path / 'bad.csv', 'bad', annotation)


def test_empty_sigdf(tmp_path, annotation):
    (tmp_path / 'empty.csv').write_text('')
    with pytest.raises(DataError):
        read_sigdf(tmp_path / 'empty.csv', 'empty', annotation)
