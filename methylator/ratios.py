"""Normalized methylated / unmethylated signal of a set of samples, the beta values and M-values derived from it, and
the probe filters applied before the differential analysis."""

import numpy as np
import pandas as pd

from methylator.annotations import probes_overlapping
from methylator.mask import Mask, MaskCollection
from methylator.utils import get_logger, save_object, load_object

LOGGER = get_logger()

RATIO_FLOOR = 1.0


def get_betas(meth: pd.DataFrame, unmeth: pd.DataFrame, floor: float = RATIO_FLOOR) -> pd.DataFrame:
    """Beta values M / (M + U). Signals are clipped at `floor` first, so that betas are always defined and in [0, 1].

    :param meth: methylated signal (probe x sample)
    :type meth: pandas.DataFrame
    :param unmeth: unmethylated signal (probe x sample)
    :type unmeth: pandas.DataFrame
    :param floor: minimum signal value, must be > 0. Default: 1
    :type floor: float

    :return: beta values
    :rtype: pandas.DataFrame"""
    meth = meth.clip(lower=floor)
    unmeth = unmeth.clip(lower=floor)
    return meth / (meth + unmeth)


def get_m_values(meth: pd.DataFrame, unmeth: pd.DataFrame, floor: float = RATIO_FLOOR) -> pd.DataFrame:
    """M-values log2(M / U). Signals are clipped at `floor` first, so that M-values are always finite.

    :param meth: methylated signal (probe x sample)
    :type meth: pandas.DataFrame
    :param unmeth: unmethylated signal (probe x sample)
    :type unmeth: pandas.DataFrame
    :param floor: minimum signal value, must be > 0. Default: 1
    :type floor: float

    :return: M-values
    :rtype: pandas.DataFrame"""
    return np.log2(meth.clip(lower=floor) / unmeth.clip(lower=floor))


class RatioSet:
    """Normalized methylated and unmethylated signals, one row per probe and one column per sample.

    Filters don't modify the object: each of them returns a new RatioSet with one more mask, and `apply_masks()`
    returns a new RatioSet without the masked probes.

    :ivar meth: methylated signal, indexed by probe ID
    :vartype meth: pandas.DataFrame
    :ivar unmeth: unmethylated signal, indexed by probe ID
    :vartype unmeth: pandas.DataFrame
    :ivar coordinates: chromosome, start, end and gene of each probe, indexed by probe ID
    :vartype coordinates: pandas.DataFrame
    :ivar sample_sheet: samples metadata
    :vartype sample_sheet: pandas.DataFrame
    :ivar detection_p_values: detection p-values, indexed by probe ID. Default: None
    :vartype detection_p_values: pandas.DataFrame | None
    :ivar design_types: Infinium design type (I or II) of each probe. Default: None
    :vartype design_types: pandas.Series | None
    :ivar masks: probes masked by the filters
    :vartype masks: MaskCollection
    """

    def __init__(self, meth: pd.DataFrame, unmeth: pd.DataFrame, coordinates: pd.DataFrame,
                 sample_sheet: pd.DataFrame, detection_p_values: pd.DataFrame | None = None,
                 design_types: pd.Series | None = None, masks: MaskCollection | None = None):
        if not meth.index.equals(unmeth.index) or list(meth.columns) != list(unmeth.columns):
            raise ValueError('methylated and unmethylated signal must have the same probes and samples')

        self.meth = meth
        self.unmeth = unmeth
        self.coordinates = coordinates.reindex(meth.index)
        self.sample_sheet = sample_sheet[sample_sheet.sample_name.isin(meth.columns)].reset_index(drop=True)
        self.detection_p_values = None
        if detection_p_values is not None:
            self.detection_p_values = detection_p_values.reindex(index=meth.index, columns=meth.columns)
        self.design_types = None if design_types is None else design_types.reindex(meth.index)
        self.masks = MaskCollection() if masks is None else masks

    ####################################################################################################################
    # Properties & getters
    ####################################################################################################################

    @property
    def sample_names(self) -> list[str]:
        """Names of the samples, in the column order"""
        return self.meth.columns.tolist()

    @property
    def probe_ids(self) -> list[str]:
        """IDs of the probes"""
        return self.meth.index.tolist()

    @property
    def nb_probes(self) -> int:
        return len(self.meth)

    def betas(self) -> pd.DataFrame:
        """Beta values M / (M + U) of every probe and sample

        :return: beta values, indexed by probe ID
        :rtype: pandas.DataFrame"""
        return get_betas(self.meth, self.unmeth)

    def m_values(self) -> pd.DataFrame:
        """M-values log2(M / U) of every probe and sample

        :return: M-values, indexed by probe ID
        :rtype: pandas.DataFrame"""
        return get_m_values(self.meth, self.unmeth)

    def _with_masks(self, masks: MaskCollection):
        return RatioSet(self.meth, self.unmeth, self.coordinates, self.sample_sheet, self.detection_p_values,
                        self.design_types, masks)

    ####################################################################################################################
    # Probe filters
    ####################################################################################################################

    def add_mask(self, mask: Mask):
        """Return a new RatioSet with the mask added to its mask collection

        :param mask: the mask to add
        :type mask: Mask

        :rtype: RatioSet"""
        masks = self.masks.copy()
        masks.add_mask(mask)
        return self._with_masks(masks)

    def mask_detection(self, threshold: float = 0.01):
        """Mask probes that are not detected in every sample: a probe is kept only if its detection p-value is
        strictly lower than `threshold` in all samples. A missing p-value counts as a failure.

        :param threshold: detection p-value threshold. Default: 0.01
        :type threshold: float

        :raises ValueError: if no detection p-values are available

        :return: a new RatioSet with the detection mask
        :rtype: RatioSet"""
        if self.detection_p_values is None:
            raise ValueError('No detection p-values, run Samples.detection() before normalization')

        detected = (self.detection_p_values < threshold).all(axis=1)
        mask = Mask(f'detection_{threshold}', ~detected)
        LOGGER.info(f'{mask.series.sum():,} probes not detected in all samples (p-value >= {threshold})')
        return self.add_mask(mask)

    def mask_variants(self, variants: pd.DataFrame):
        """Mask probes whose coordinates overlap a known genetic variant.

        :param variants: variants coordinates, with columns chromosome, start (or position) and optionally end
        :type variants: pandas.DataFrame

        :return: a new RatioSet with the variants mask
        :rtype: RatioSet"""
        ranges = self.coordinates.dropna(subset=['chromosome', 'start'])
        overlapping = probes_overlapping(ranges.astype({'start': 'int64', 'end': 'int64'}), variants)
        mask = Mask('variants', pd.Series(self.meth.index.isin(overlapping), index=self.meth.index))
        LOGGER.info(f'{mask.series.sum():,} probes overlap a known variant')
        return self.add_mask(mask)

    def mask_cross_reactive(self, probe_ids: list[str]):
        """Mask the cross-reactive probes, matched exactly by probe ID.

        :param probe_ids: IDs of the cross-reactive probes
        :type probe_ids: list[str]

        :return: a new RatioSet with the cross-reactive mask
        :rtype: RatioSet"""
        mask = Mask('cross_reactive', pd.Series(self.meth.index.isin(list(probe_ids)), index=self.meth.index))
        LOGGER.info(f'{mask.series.sum():,} cross-reactive probes')
        return self.add_mask(mask)

    def apply_masks(self):
        """Return a new RatioSet without the probes masked by at least one of the masks. The masks are kept for
        reference.

        :rtype: RatioSet"""
        combined = self.masks.get_mask(probe_ids=self.meth.index)
        if combined is None:
            return self._with_masks(self.masks.copy())

        keep = ~combined.values
        LOGGER.info(f'Dropping {(~keep).sum():,} masked probes, {keep.sum():,} probes left')
        design_types = None if self.design_types is None else self.design_types[keep]
        p_values = None if self.detection_p_values is None else self.detection_p_values[keep]
        return RatioSet(self.meth[keep], self.unmeth[keep], self.coordinates[keep], self.sample_sheet, p_values,
                        design_types, self.masks.copy())

    def probe_filter(self, detection_threshold: float | None = 0.01, variants: pd.DataFrame | None = None,
                     cross_reactive: list[str] | None = None):
        """Apply the three probe filters and drop the masked probes. Filters whose parameter is None are skipped.

        :param detection_threshold: detection p-value threshold. Default: 0.01
        :type detection_threshold: float | None
        :param variants: known variants coordinates. Default: None
        :type variants: pandas.DataFrame | None
        :param cross_reactive: cross-reactive probe IDs. Default: None
        :type cross_reactive: list[str] | None

        :return: the filtered RatioSet
        :rtype: RatioSet"""
        LOGGER.info('>>> Start probe filtering')
        filtered = self
        if detection_threshold is not None:
            filtered = filtered.mask_detection(detection_threshold)
        if variants is not None:
            filtered = filtered.mask_variants(variants)
        if cross_reactive is not None:
            filtered = filtered.mask_cross_reactive(cross_reactive)
        return filtered.apply_masks()

    ####################################################################################################################
    # Description, saving & loading
    ####################################################################################################################

    def __repr__(self):
        description = f'RatioSet object with {len(self.sample_names)} samples and {self.nb_probes:,} probes\n'
        description += self.masks.__repr__()
        return description

    def save(self, filepath: str) -> None:
        """Save the RatioSet object to `filepath`, as a pickle file"""
        save_object(self, filepath)

    @staticmethod
    def load(filepath: str):
        """Load a pickled RatioSet object from `filepath`"""
        return load_object(filepath, RatioSet)
