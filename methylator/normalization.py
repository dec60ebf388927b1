"""Stratified quantile normalization of the total (methylated + unmethylated) signal."""

import numpy as np
import pandas as pd

from methylator.annotations import DESIGN_TYPES
from methylator.ratios import RatioSet
from methylator.samples import Samples
from methylator.stats import quantile_normalization
from methylator.utils import get_logger

LOGGER = get_logger()


def quantile_normalize(samples: Samples, floor: float = 1.0) -> RatioSet:
    """Quantile-normalize the in-band signal across samples, separately for Infinium type I and type II probes, whose
    signal distributions differ. Control probes are left out.

    Within each design type, the total signal M + U is normalized so that every sample ends up with the same
    distribution of total signal. The normalized total is then split back into methylated and unmethylated signal
    with the methylated fraction M / (M + U) each probe had before normalization, so that the ratio of the two
    channels is kept. Normalized values are clipped below at `floor`.

    :param samples: samples to normalize
    :type samples: Samples
    :param floor: minimum value of the normalized signal, must be > 0. Default: 1
    :type floor: float

    :raises ValueError: if floor is not strictly positive

    :return: the normalized signal, with the detection p-values of the samples if they were computed
    :rtype: RatioSet"""
    if floor <= 0:
        raise ValueError(f'floor must be > 0 (got {floor})')

    LOGGER.info('>>> Start quantile normalization')

    meth_df = samples.methylation_signal('M')
    unmeth_df = samples.methylation_signal('U').loc[meth_df.index]

    meth_strata = []
    unmeth_strata = []
    for design_type in DESIGN_TYPES:
        if design_type not in meth_df.index.get_level_values('type'):
            continue
        meth = meth_df.xs(design_type, level='type')
        unmeth = unmeth_df.xs(design_type, level='type')
        total = meth.values + unmeth.values
        # a probe without signal is split evenly
        with np.errstate(divide='ignore', invalid='ignore'):
            meth_fraction = np.where(total > 0, meth.values / total, 0.5)
        normalized_total = quantile_normalization(total)
        meth_strata.append(pd.DataFrame(normalized_total * meth_fraction, index=meth.index, columns=meth.columns))
        unmeth_strata.append(pd.DataFrame(normalized_total * (1 - meth_fraction), index=meth.index,
                                          columns=meth.columns))
        LOGGER.debug(f'normalized {len(meth):,} type {design_type} probes')

    meth = pd.concat(meth_strata).clip(lower=floor)
    unmeth = pd.concat(unmeth_strata).clip(lower=floor)

    design_types = meth_df.index.to_frame(index=False).set_index('probe_id')['type']
    coordinates = samples.annotation.probe_infos[['chromosome', 'start', 'end', 'gene']]

    LOGGER.info(f'quantile normalization done: {len(meth):,} probes, {len(meth.columns)} samples')
    return RatioSet(meth, unmeth, coordinates, samples.sample_sheet, samples.detection_p_values, design_types)
