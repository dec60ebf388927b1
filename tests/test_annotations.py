import pandas as pd
import pytest

from methylator.annotations import Annotations, read_cross_reactive_probes, read_known_variants, probes_overlapping
from methylator.errors import DataError


def test_read_annotation(annotation):
    probe_infos = annotation.probe_infos
    assert len(probe_infos) == 120
    assert probe_infos.loc['cg00000000', 'type'] == 'I'
    assert probe_infos.loc['cg00000000', 'channel'] == 'R'
    assert probe_infos.loc['cg00000003', 'channel'] == 'G'
    assert probe_infos.loc['cg00000001', 'channel'] == ''
    assert probe_infos.loc['cg00000001', 'probe_type'] == 'cg'
    assert probe_infos.loc['ctl_negative_000', 'probe_type'] == 'ctl'
    assert probe_infos.loc['cg00000002', 'start'] == 10200


def test_genomic_ranges(annotation):
    ranges = annotation.genomic_ranges
    assert len(ranges) == 100  # controls have no coordinates
    assert ranges.start.dtype == 'int64'


def test_annotation_errors():
    with pytest.raises(DataError):
        Annotations(pd.DataFrame({'probe_id': ['cg1']}))  # no type
    with pytest.raises(DataError):
        Annotations(pd.DataFrame({'probe_id': ['cg1', 'cg1'], 'type': ['II', 'II']}))
    with pytest.raises(DataError):
        Annotations(pd.DataFrame({'probe_id': ['cg1'], 'type': ['III']}))
    with pytest.raises(DataError):
        Annotations(pd.DataFrame({'probe_id': ['cg1'], 'type': ['I']}))  # type I without channel


def test_position_column():
    annotation = Annotations(pd.DataFrame({'probe_id': ['cg1'], 'type': ['2'], 'chromosome': ['chr1'],
                                           'position': [100]}))
    assert annotation.probe_infos.loc['cg1', 'type'] == 'II'
    assert annotation.probe_infos.loc['cg1', 'end'] == 101


def test_read_cross_reactive(data_path, tmp_path):
    assert read_cross_reactive_probes(data_path / 'cross_reactive.txt') == ['cg00000070', 'cg00000071', 'cg00000072']

    pd.DataFrame({'chromosome': ['chr1', 'chr2'], 'probe_id': ['cg1', 'cg2']}).to_csv(tmp_path / 'xr.csv', index=False)
    assert read_cross_reactive_probes(tmp_path / 'xr.csv') == ['cg1', 'cg2']


def test_read_variants(data_path):
    variants = read_known_variants(data_path / 'variants.csv')
    assert variants.columns.tolist() == ['chromosome', 'start', 'end']
    assert (variants.end == variants.start + 1).all()


def test_missing_file(tmp_path):
    with pytest.raises(DataError):
        read_known_variants(tmp_path / 'nothing.csv')


def test_probes_overlapping():
    ranges = pd.DataFrame({'chromosome': ['chr1', 'chr1', 'chr2'], 'start': [100, 200, 100], 'end': [102, 202, 102]},
                          index=pd.Index(['p1', 'p2', 'p3'], name='probe_id'))
    variants = pd.DataFrame({'chromosome': ['chr1', 'chr2'], 'start': [101, 102]})
    # end is excluded: the variant at 102 on chr2 doesn't overlap p3
    assert probes_overlapping(ranges, variants) == ['p1']
    assert probes_overlapping(ranges, pd.DataFrame(columns=['chromosome', 'start'])) == []
