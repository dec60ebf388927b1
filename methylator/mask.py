"""Classes that handle probe masks: sets of probes to remove before the differential analysis"""
import pandas as pd

from methylator.utils import get_logger

LOGGER = get_logger()


class Mask:
    """
    A mask is a named set of probes to remove from every sample.

    :var mask_name: the name of the mask, usually the filter that created it (e.g. 'detection_0.01')
    :vartype mask_name: str
    :var series: a pandas Series of booleans indexed by probe ID, where True indicates that the probe is masked
    :vartype series: pandas.Series
    """
    def __init__(self, mask_name: str, series: pd.Series):
        """Create a new Mask object.

        :param mask_name: the name of the mask
        :type mask_name: str
        :param series: a pandas Series of booleans indexed by probe ID, where True indicates that the probe is masked
        :type series: pandas.Series

        :raises ValueError: if series is not a pandas Series"""
        if not isinstance(series, pd.Series):
            raise ValueError('series must be a pandas Series.')
        self.mask_name = mask_name
        self.series = series.fillna(True).astype(bool)

    @property
    def masked_probe_ids(self) -> list[str]:
        """IDs of the probes masked by this mask"""
        return self.series.index[self.series.values].tolist()

    def __str__(self):
        return f'Mask(name: {self.mask_name}, # masked probes: {self.series.sum():,})'

    def __repr__(self):
        return self.__str__()

    def copy(self):
        """Creates a copy of the Mask object."""
        return Mask(self.mask_name, self.series.copy())


class MaskCollection:
    """A collection of masks. A probe is removed by the collection if at least one of its masks marks it, so the
    probes kept are the intersection of the probes kept by each mask, whatever the order the masks were added in.

    :var masks: a dictionary of masks, where the key is the mask name and the value is a Mask object
    :vartype masks: dict
    """
    def __init__(self):
        self.masks = {}

    def add_mask(self, mask: Mask) -> None:
        """Add a new mask to the collection. A mask with the same name is replaced.

        :param mask: the mask to add
        :type mask: Mask

        :raises ValueError: if mask is not a Mask"""
        if not isinstance(mask, Mask):
            raise ValueError('mask must be an instance of Mask.')

        if mask.mask_name in self.masks:
            LOGGER.info(f'{mask} already exists, overriding it.')

        self.masks[mask.mask_name] = mask

    def get_mask(self, mask_name: str | list[str] | None = None, probe_ids: pd.Index | list | None = None) -> pd.Series | None:
        """Combine masks into a single one. If one or more mask_name are defined, only these masks are considered.

        :param mask_name: the name(s) of the mask(s). Default: None (all masks)
        :type mask_name: str | list[str] | None
        :param probe_ids: probe IDs to align the result on. Probes unknown to a mask are not masked by it. Default:
            None (union of the masks' probe IDs)
        :type probe_ids: pandas.Index | list | None

        :return: a pandas Series of booleans indexed by probe ID, where True indicates that the probe is masked, or
            None if there is no mask to combine
        :rtype: pandas.Series | None"""
        if isinstance(mask_name, str):
            mask_name = [mask_name]

        selected = [m for m in self.masks.values() if mask_name is None or m.mask_name in mask_name]
        if len(selected) == 0:
            return None

        if probe_ids is None:
            probe_ids = selected[0].series.index
            for mask in selected[1:]:
                probe_ids = probe_ids.union(mask.series.index)

        mask_series = pd.Series(False, index=pd.Index(probe_ids, name='probe_id'))
        for mask in selected:
            mask_series = mask_series | mask.series.reindex(mask_series.index, fill_value=False)
        return mask_series

    def number_probes_masked(self, mask_name: str | list[str] | None = None) -> int:
        """Return the number of probes masked by the given mask(s), or by all masks if no name is provided.

        :param mask_name: the name of the mask. Default: None
        :type mask_name: str | list[str] | None

        :return: number of masked probes
        :rtype: int"""
        mask = self.get_mask(mask_name)
        if mask is None:
            return 0
        return int(mask.sum())

    def summary(self) -> pd.DataFrame:
        """Number of probes masked by each mask, and by all of them combined

        :return: one row per mask with the number of masked probes
        :rtype: pandas.DataFrame"""
        counts = {name: int(mask.series.sum()) for name, mask in self.masks.items()}
        counts['all'] = self.number_probes_masked()
        return pd.DataFrame.from_dict(counts, orient='index', columns=['nb_masked_probes'])

    def reset_masks(self):
        """Reset all masks."""
        self.masks = {}

    def remove_masks(self, mask_name: str | list[str] | None = None) -> None:
        """Remove the given mask(s), or all of them if no name is provided.

        :param mask_name: the name(s) of the mask(s). Default: None
        :type mask_name: str | list[str] | None

        :return: None
        """
        if mask_name is None:
            self.reset_masks()
            return
        if isinstance(mask_name, str):
            mask_name = [mask_name]
        self.masks = {k: v for k, v in self.masks.items() if k not in mask_name}

    def copy(self):
        """Creates a copy of the MaskCollection object."""
        new_mask_collection = MaskCollection()
        for mask in self.masks.values():
            new_mask_collection.add_mask(mask.copy())
        return new_mask_collection

    def __len__(self):
        return len(self.masks)

    def __str__(self):
        desc = ''
        for mask in self.masks.values():
            desc += mask.__str__() + '\n'
        return desc

    def __repr__(self):
        return self.__str__()

    def __getitem__(self, item: int | str) -> Mask | None:
        if isinstance(item, str):
            return self.masks.get(item)

        if isinstance(item, int) and item < len(self.masks):
            return list(self.masks.values())[item]

        return None
