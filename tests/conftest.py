import numpy as np
import pandas as pd
import pytest

from methylator.annotations import Annotations
from methylator.normalization import quantile_normalize
from methylator.samples import read_samples

NB_PROBES = 100
NB_CONTROLS = 20
EFFECT_PROBES = 5
EFFECT = 2.0


def probe_id(i: int) -> str:
    return f'cg{i:08d}'


def write_dataset(path, groups=('A', 'A', 'B', 'B'), nb_probes=NB_PROBES, effect_probes=EFFECT_PROBES, effect=EFFECT,
                  noise=0.05, seed=42, low_signal_samples=(), undetected=None, aligned_totals=False):
    """Write a synthetic array in `path`: annotation.csv, sample_sheet.csv, one SigDF file per sample, a variants
    file and a cross-reactive probes file.

    Probes whose index is a multiple of 3 are type I (red if even, green otherwise), the others type II. The first
    `effect_probes` probes are 100 bases apart on chr1, and their M-value is `effect` higher in group B. Other probes
    are 5 kb apart. `undetected` maps a sample index to probe indexes with background level signal. With
    `aligned_totals`, the total signal of every sample is a permutation of the same values within each design type."""
    rng = np.random.default_rng(seed)
    path.mkdir(parents=True, exist_ok=True)
    undetected = {} if undetected is None else undetected

    types = ['I' if i % 3 == 0 else 'II' for i in range(nb_probes)]
    channels = [('R' if i % 2 == 0 else 'G') if t == 'I' else '' for i, t in enumerate(types)]
    chromosomes = ['chr1' if i < nb_probes // 2 else 'chr2' for i in range(nb_probes)]
    starts = [10000 + 100 * i if i < effect_probes else 100000 + 5000 * i for i in range(nb_probes)]

    annotation = pd.DataFrame({'Probe_ID': [probe_id(i) for i in range(nb_probes)],
                               'type': types, 'channel': channels, 'chromosome': chromosomes,
                               'start': starts, 'end': [s + 2 for s in starts],
                               'gene': [f'GENE{i // 10}' for i in range(nb_probes)]})
    controls = pd.DataFrame({'Probe_ID': [f'ctl_negative_{j:03d}' for j in range(NB_CONTROLS)], 'type': 'II'})
    pd.concat([annotation, controls]).to_csv(path / 'annotation.csv', index=False)

    sample_names = [f'{g}_{list(groups[:i + 1]).count(g)}' for i, g in enumerate(groups)]
    sample_sheet = pd.DataFrame({'sample_name': sample_names, 'sample_id': [f'S{i + 1}' for i in range(len(groups))],
                                 'group': list(groups)})
    sample_sheet.to_csv(path / 'sample_sheet.csv', index=False)

    def background(n):
        return np.clip(rng.normal(300, 50, n), 1, None)

    baseline = rng.normal(0, 1.5, nb_probes)
    is_type1 = np.array(types) == 'I'
    is_red = np.array(channels) == 'R'
    is_green = np.array(channels) == 'G'
    shared_total = rng.lognormal(np.log(5000), 0.05, nb_probes) if aligned_totals else None

    for s, (name, group) in enumerate(zip(sample_names, groups)):
        m_values = baseline + rng.normal(0, noise, nb_probes)
        if group == 'B':
            m_values[:effect_probes] += effect
        total = rng.lognormal(np.log(5000), 0.05, nb_probes)
        if aligned_totals:
            total = shared_total.copy()
            for stratum in [is_type1, ~is_type1]:
                total[stratum] = rng.permutation(shared_total[stratum])
        if s in low_signal_samples:
            total = background(nb_probes)
        total[undetected.get(s, [])] = 100
        meth = total * 2 ** m_values / (1 + 2 ** m_values)
        unmeth = total / (1 + 2 ** m_values)

        sigdf = pd.DataFrame({'Probe_ID': annotation.Probe_ID,
                              'MG': np.where(is_green, meth, np.where(is_red, background(nb_probes), np.nan)),
                              'MR': np.where(is_red, meth, np.where(is_green, background(nb_probes), np.nan)),
                              # type II green signal is stored in UG
                              'UG': np.where(is_green, unmeth, np.where(is_type1, background(nb_probes), meth)),
                              'UR': np.where(is_red | ~is_type1, unmeth, background(nb_probes))})
        controls_sigdf = pd.DataFrame({'Probe_ID': controls.Probe_ID, 'MG': np.nan, 'MR': np.nan,
                                       'UG': background(NB_CONTROLS), 'UR': background(NB_CONTROLS)})
        pd.concat([sigdf, controls_sigdf]).to_csv(path / f'S{s + 1}_sigdf.csv', index=False)

    pd.DataFrame({'chromosome': ['chr2', 'chr2'], 'position': [starts[60] + 1, starts[61]]}).to_csv(
        path / 'variants.csv', index=False)
    (path / 'cross_reactive.txt').write_text(f'{probe_id(70)}\n{probe_id(71)}\n{probe_id(72)}\n')

    return path


@pytest.fixture(scope='session')
def data_path(tmp_path_factory):
    return write_dataset(tmp_path_factory.mktemp('data'), undetected={0: [90, 91]})


@pytest.fixture(scope='session')
def annotation(data_path):
    return Annotations.from_file(data_path / 'annotation.csv')


@pytest.fixture(scope='session')
def test_samples_ini(data_path, annotation):
    return read_samples(data_path, annotation, sample_sheet_name='sample_sheet.csv')


@pytest.fixture
def test_samples(test_samples_ini):
    return test_samples_ini.copy()


@pytest.fixture
def test_ratio_set(test_samples):
    test_samples.detection()
    return quantile_normalize(test_samples)


@pytest.fixture
def make_dataset(tmp_path):
    """Write a synthetic dataset in a new sub-directory of tmp_path, see `write_dataset()` for the parameters"""
    def make(name: str, **kwargs):
        return write_dataset(tmp_path / name, **kwargs)
    return make
