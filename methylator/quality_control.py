"""
Sample quality filter based on detection p-values, and functions to give an insight on the samples probes values by
calculating and printing some reference statistics.
"""
import numpy as np
import pandas as pd

from methylator.errors import ConfigurationError
from methylator.samples import Samples
from methylator.utils import get_logger

LOGGER = get_logger()


def sample_detection_scores(samples: Samples) -> pd.Series:
    """Mean detection p-value of each sample, NaN values ignored. If detection p-values haven't been computed yet, they
    are computed with the default method on a copy of the samples, `samples` is left unchanged.

    :param samples: samples to score
    :type samples: Samples

    :return: mean detection p-value, indexed by sample name
    :rtype: pandas.Series"""
    p_values = samples.detection_p_values
    if p_values is None:
        p_values = samples.copy().detection()
    return p_values[samples.sample_names].mean(axis=0, skipna=True)


def filter_samples(samples: Samples, threshold: float = 0.05) -> Samples:
    """Drop the samples whose mean detection p-value is strictly greater than `threshold`, or undefined. A sample
    whose mean is equal to the threshold is kept.

    :param samples: samples to filter
    :type samples: Samples
    :param threshold: maximum mean detection p-value of a sample. Default: 0.05
    :type threshold: float

    :raises ConfigurationError: if no sample passes the threshold

    :return: a new Samples object with the passing samples only
    :rtype: Samples"""
    LOGGER.info('>>> Start sample quality filter')
    scores = sample_detection_scores(samples)

    # a sample without any p-value fails too
    failed = scores[~(scores <= threshold)].index.tolist()
    passed = [name for name in samples.sample_names if name not in failed]

    for name in failed:
        LOGGER.info(f'Dropping sample {name}: mean detection p-value {scores[name]:.4f} > {threshold}')

    if len(passed) == 0:
        raise ConfigurationError(f'threshold {threshold} removes every sample (lowest mean detection p-value: '
                                 f'{scores.min():.4f})')

    LOGGER.info(f'{len(passed)} samples passed the quality filter, {len(failed)} dropped')
    return samples.subset(passed)


def print_header(title: str) -> None:
    """Format and print a QC section header

    :param title: title of the section header
    :type title: str

    :return: None"""
    print('\n===================================================================')
    print(f'|  {title}')
    print('===================================================================\n')


def print_value(name: str, value) -> None:
    """Format and print a QC value

    :param name: name (description) of the value to display
    :type name: str
    :param value: value to display. Can be anything printable.

    :return: None"""
    if isinstance(value, (float, np.float32, np.float64)):
        print(f'{name:<55} {value:.2f}')
    elif isinstance(value, (int, np.int32, np.int64)):
        print(f'{name:<55} {value:,}')
    else:
        print(f'{name:<55} {value}')


def print_pct(name: str, value) -> None:
    """Format and print a QC percentage (x100 will be applied to the input value)

    :param name: name (description) of the value to display
    :type name: str
    :param value: value to display. Can be anything numeric.

    :return: None"""
    print(f'{name:<55} {100*value:.2f} %')


def detection_stats(samples: Samples, sample_name: str, threshold: float = 0.05) -> None:
    """Print detection statistics of the given sample.

    :param samples: Samples object containing the sample to check
    :type samples: Samples
    :param sample_name: name of the sample to print the stats of
    :type sample_name: str
    :param threshold: detection p-value threshold. Default: 0.05
    :type threshold: float

    :return: None"""
    print_header('Detection')

    if samples.detection_p_values is None:
        samples.detection()
    p_values = samples.detection_p_values[sample_name]

    missing_from_file = len(set(samples.annotation.probe_infos.index) - set(samples.probe_ids))
    value_missing = int(p_values.isna().sum()) + missing_from_file
    print_value('N. Probes w/ Missing Raw Intensity', value_missing)
    print_pct('% Probes w/ Missing Raw Intensity', value_missing / (len(p_values) + missing_from_file))

    p_values = p_values.dropna()
    value_detection = int((p_values < threshold).sum())
    print_value('N. Probes w/ Detection Success', value_detection)
    print_pct('% Detection Success', value_detection / len(p_values))
    print_value('Mean detection p-value', p_values.mean())

    probe_types = samples.annotation.probe_infos.probe_type.reindex(p_values.index)
    for probe_type in ['cg', 'ch', 'rs']:
        probes = p_values[probe_types == probe_type]
        print()
        print_value(f'N. {probe_type} probes', len(probes))
        if len(probes) == 0:
            continue
        probes_value = int((probes < threshold).sum())
        print_value(f'N. Probes w/ Detection Success {probe_type}', probes_value)
        print_pct(f'% Detection Success {probe_type}', probes_value / len(probes))


def intensity_stats(samples: Samples, sample_name: str) -> None:
    """Print intensity statistics of the given sample.

    :param samples: samples to print the stats of
    :type samples: Samples
    :param sample_name: name of the sample to print the stats of
    :type sample_name: str

    :return: None"""
    print_header('Signal intensity')

    print_value('Mean in-band signal intensity', samples.get_mean_ib_intensity(sample_name)[sample_name])
    print_value('Mean in-band signal intensity (M+U)', samples.get_total_ib_intensity(sample_name)[sample_name].mean())
    print_value('Mean in-band type II signal intensity', samples.type2()[sample_name].mean(axis=None))
    print_value('Mean in-band type I Red signal intensity', samples.ib_red()[sample_name].mean(axis=None))
    print_value('Mean in-band type I Green signal intensity', samples.ib_green()[sample_name].mean(axis=None))
    print_value('Mean out-of-band type I Red signal intensity', samples.oob_red()[sample_name].mean(axis=None))
    print_value('Mean out-of-band type I Green signal intensity', samples.oob_green()[sample_name].mean(axis=None))

    meth = samples.methylation_signal('M')[sample_name]
    unmeth = samples.methylation_signal('U')[sample_name]
    print_value('Number of NAs in Methylated signal', int(meth.isna().sum()))
    print_value('Number of NAs in Unmethylated signal', int(unmeth.isna().sum()))


def nb_probes_stats(samples: Samples, sample_name: str) -> None:
    """Print probe counts per Infinium type and Probe type

    :param samples: samples to print the stats of
    :type samples: Samples
    :param sample_name: name of the sample to print the stats of
    :type sample_name: str

    :return: None"""
    print_header('Number of probes')

    signal_df = samples[sample_name]
    probe_types = signal_df.index.get_level_values('probe_type')
    print_value('Total : ', len(signal_df))
    print_value('Type II : ', len(samples.type2()))
    print_value('Type I Green : ', len(samples.ib_green()))
    print_value('Type I Red : ', len(samples.ib_red()))
    print_value('CG : ', int((probe_types == 'cg').sum()))
    print_value('CH : ', int((probe_types == 'ch').sum()))
    print_value('SNP : ', int((probe_types == 'rs').sum()))
    print_value('Control : ', int((probe_types == 'ctl').sum()))
