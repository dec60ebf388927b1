"""Class that holds the raw two-channel intensities of a set of samples, the loader that reads them from SigDF
tables, and the detection p-values used for quality control."""

import os
import re
from importlib.resources.readers import MultiplexedPath

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.distributions.empirical_distribution import ECDF as ecdf
from statsmodels.robust import mad

import methylator.sample_sheet as sample_sheet
from methylator.annotations import Annotations
from methylator.errors import DataError
from methylator.utils import save_object, load_object, get_files_matching, get_logger, convert_to_path
from methylator.utils import get_column_as_flat_array

LOGGER = get_logger()

SIGNAL_INDEX = ['type', 'channel', 'probe_type', 'probe_id']
SIGNAL_COLUMNS = [('G', 'M'), ('G', 'U'), ('R', 'M'), ('R', 'U')]
SIGDF_COLUMNS = ['probe_id', 'MG', 'MR', 'UG', 'UR']
DETECTION_METHODS = ['negative_controls', 'poobah']


class Samples:
    """Raw intensities of a set of samples, with their sample sheet and the probes annotation.

    The signal dataframe has one row per probe, indexed by (type, channel, probe_type, probe_id), and the columns
    are indexed by (sample_name, signal_channel, methylation_state): for each sample, the green (G) and red (R)
    channel values of the methylated (M) and unmethylated (U) probes. Type II probes only have (G, M) and (R, U)
    values; type I probes have their in-band values in their channel and out-of-band values in the other one.

    :ivar annotation: probes metadata
    :vartype annotation: Annotations | None
    :ivar sample_sheet: samples metadata
    :vartype sample_sheet: pandas.DataFrame | None
    :ivar detection_p_values: detection p-values (probe_id x sample_name), set by `detection()`
    :vartype detection_p_values: pandas.DataFrame | None
    """

    def __init__(self, sample_sheet_df: pd.DataFrame | None = None):
        """Initialize the object with only a sample-sheet.

        :param sample_sheet_df: sample sheet dataframe. Default: None
        :type sample_sheet_df: pandas.DataFrame | None"""
        self.annotation = None
        self.sample_sheet = sample_sheet_df
        self.detection_p_values = None
        self.detection_method = None
        self._signal_df = None

    def __getitem__(self, item: int | str) -> pd.DataFrame | None:
        if self._signal_df is not None:
            if isinstance(item, int) and item < self.nb_samples:
                return self._signal_df[self.sample_names[item]].copy()
            elif isinstance(item, str) and item in self.sample_names:
                return self._signal_df[item].copy()
            LOGGER.error(f'Could not find item {item} in {self.sample_names}')
        else:
            LOGGER.error('No signal dataframe')
        return None

    ####################################################################################################################
    # Properties
    ####################################################################################################################

    @property
    def sample_names(self) -> list[str]:
        """Return the names of the samples contained in this object, in the order of the sample sheet"""
        if self.sample_sheet is None or self._signal_df is None:
            return []
        samples_signal_df = set(self._signal_df.columns.get_level_values(0))
        return [name for name in self.sample_sheet.sample_name if name in samples_signal_df]

    @property
    def nb_samples(self) -> int:
        """Count the number of samples contained in the object

        :return: number of samples
        :rtype: int"""
        return len(self.sample_names)

    @property
    def probe_ids(self) -> list[str]:
        """IDs of all the probes of the signal dataframe"""
        if self._signal_df is None:
            return []
        return self._signal_df.index.get_level_values('probe_id').tolist()

    @property
    def nb_probes(self) -> int:
        """Number of probes of the signal dataframe"""
        return len(self.probe_ids)

    def get_signal_df(self) -> pd.DataFrame:
        """Get a copy of the methylation signal dataframe

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        return self._signal_df.copy()

    def type1(self) -> pd.DataFrame:
        """Get the subset of Infinium type I probes

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        return self._signal_df.xs('I', level='type', drop_level=False)

    def type2(self) -> pd.DataFrame:
        """Get the subset of Infinium type II probes, with their non-empty columns only

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        type_ii_df = self._signal_df.xs('II', level='type', drop_level=False)
        type_ii_df = type_ii_df[type_ii_df.index.get_level_values('probe_type') != 'ctl']
        return type_ii_df.loc[:, (slice(None), ['G', 'R'], slice(None))].dropna(axis=1, how='all')

    def oob_red(self) -> pd.DataFrame:
        """Get the out-of-band red signal (red channel values of type I green probes)

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        green_probes = self._signal_df.xs('G', level='channel', drop_level=False)
        return green_probes.loc[:, (slice(None), 'R')]

    def oob_green(self) -> pd.DataFrame:
        """Get the out-of-band green signal (green channel values of type I red probes)

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        red_probes = self._signal_df.xs('R', level='channel', drop_level=False)
        return red_probes.loc[:, (slice(None), 'G')]

    def ib_red(self) -> pd.DataFrame:
        """Get the in-band red signal (red channel values of type I red probes)

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        red_probes = self._signal_df.xs('R', level='channel', drop_level=False)
        return red_probes.loc[:, (slice(None), 'R')]

    def ib_green(self) -> pd.DataFrame:
        """Get the in-band green signal (green channel values of type I green probes)

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        green_probes = self._signal_df.xs('G', level='channel', drop_level=False)
        return green_probes.loc[:, (slice(None), 'G')]

    def get_probes_with_probe_type(self, probe_type: str) -> pd.DataFrame:
        """Select probes by probe type, meaning e.g. cg, ch, rs, ctl (not infinium type I/II type)

        :param probe_type: the type of probe to select (e.g. 'cg', 'ctl'...)
        :type probe_type: str

        :return: methylation signal dataframe
        :rtype: pandas.DataFrame
        """
        if probe_type not in self._signal_df.index.get_level_values('probe_type'):
            LOGGER.warning(f'no {probe_type} probes found')
            return pd.DataFrame()

        return self._signal_df.xs(probe_type, level='probe_type', drop_level=False)

    def methylation_signal(self, methylation_state: str) -> pd.DataFrame:
        """In-band signal of the methylated (M) or unmethylated (U) probes of each CpG, for all non-control probes:
        type I probes are read in their channel, type II methylated probes in green and unmethylated in red.

        :param methylation_state: 'M' or 'U'
        :type methylation_state: str

        :return: dataframe indexed by (type, probe_id), one column per sample
        :rtype: pandas.DataFrame"""
        sig_df = self._signal_df[self._signal_df.index.get_level_values('probe_type') != 'ctl']
        sig_df = sig_df[self.sample_names].xs(methylation_state, level='methylation_state', axis=1)

        type2_channel = 'G' if methylation_state == 'M' else 'R'
        design_types = sig_df.index.get_level_values('type')
        channels = np.where(design_types == 'II', type2_channel, sig_df.index.get_level_values('channel'))

        values = {}
        for sample_name in self.sample_names:
            sample_df = sig_df[sample_name]
            values[sample_name] = np.where(channels == 'G', sample_df['G'].values, sample_df['R'].values)

        index = pd.MultiIndex.from_arrays([design_types, sig_df.index.get_level_values('probe_id')],
                                          names=['type', 'probe_id'])
        return pd.DataFrame(values, index=index, dtype='float64')

    ####################################################################################################################
    # Control functions
    ####################################################################################################################

    def controls(self, pattern: str | None = None) -> pd.DataFrame | None:
        """Get the subset of control probes, matching the pattern with the probe_ids if a pattern is provided

        :param pattern: pattern to match against control probe IDs, case is ignored. Default: None
        :type pattern: str | None

        :return: methylation signal dataframe of the control probes, or None if None was found
        :rtype: pandas.DataFrame | None
        """
        control_df = self.get_probes_with_probe_type('ctl')

        if control_df is None or len(control_df) == 0:
            LOGGER.info('No control probes found')
            return None

        if pattern is None:
            return control_df

        probe_ids = control_df.index.get_level_values('probe_id')
        matched_ids = probe_ids.str.contains(pattern, flags=re.IGNORECASE)
        return control_df[matched_ids]

    def get_negative_controls(self) -> pd.DataFrame | None:
        """Get negative control signal

        :return: the negative controls, or None if None were found
        :rtype: pandas.DataFrame | None
        """
        return self.controls('negative')

    ####################################################################################################################
    # Intensities
    ####################################################################################################################

    def get_mean_ib_intensity(self, sample_name: str | None = None) -> dict:
        """Computes the mean intensity of all the in-band measurements. This includes all Type-I in-band measurements
        and all Type-II probe measurements. Both methylated and unmethylated alleles are considered.

        :param sample_name: the sample to compute the intensity of. Default: None (all samples)
        :type sample_name: str | None

        :return: mean in-band intensity value, per sample
        :rtype: dict"""
        sample_names = [sample_name] if isinstance(sample_name, str) else self.sample_names

        mean_intensity = dict()
        for name in sample_names:
            total = self.get_total_ib_intensity(name)[name]
            # both alleles of each probe are counted
            mean_intensity[name] = total.sum() / (2 * total.notna().sum())

        return mean_intensity

    def get_total_ib_intensity(self, sample_name: str | None = None) -> pd.DataFrame:
        """Computes the total intensity (M + U) of the in-band measurements of each probe.

        :param sample_name: the sample to compute the intensity of. Default: None (all samples)
        :type sample_name: str | None

        :return: the total in-band intensity values
        :rtype: pandas.DataFrame"""
        sample_names = [sample_name] if isinstance(sample_name, str) else self.sample_names
        total = self.methylation_signal('M') + self.methylation_signal('U')
        return total[sample_names]

    ####################################################################################################################
    # Detection
    ####################################################################################################################

    def detection(self, method: str = 'negative_controls', **kwargs) -> pd.DataFrame:
        """Compute a detection p-value for each probe of each sample: the probability that the probe signal is
        background noise. The p-values are stored in `detection_p_values`, indexed by probe ID with one column per
        sample. Control probes are not included.

        :param method: 'negative_controls' to compare the total signal of each probe to the normal background
            estimated from negative control probes, or 'poobah' to compare it to the empirical distribution of the
            out-of-band signal. Default: 'negative_controls'
        :type method: str
        :param kwargs: parameters passed to the detection method

        :raises ValueError: if the method is unknown
        :raises DataError: if negative control probes are needed and none were found

        :return: detection p-values
        :rtype: pandas.DataFrame"""
        if method == 'negative_controls':
            p_values = self._detection_negative_controls()
        elif method == 'poobah':
            p_values = self._detection_poobah(**kwargs)
        else:
            raise ValueError(f'Unknown detection method {method}, known methods are {DETECTION_METHODS}')

        self.detection_p_values = p_values
        self.detection_method = method
        return p_values

    def _detection_negative_controls(self) -> pd.DataFrame:
        """Detection p-values computed from negative control probes. The background of each channel is modelled by a
        normal distribution, whose mean and standard deviation are the median and the MAD of the negative controls.
        The total signal (M + U) of a type I probe is compared to twice its channel background, the total signal of
        a type II probe to the sum of both channels backgrounds."""
        LOGGER.info('>>> Start detection (negative controls)')

        neg_controls = self.get_negative_controls()
        if neg_controls is None or len(neg_controls) == 0:
            raise DataError('No negative control probes found, they are needed to compute detection p-values')

        total = self.get_total_ib_intensity()
        design_types = total.index.get_level_values('type')
        channels = self._signal_df.loc[self._signal_df.index.get_level_values('probe_type') != 'ctl']
        channels = channels.index.get_level_values('channel')

        p_values = {}
        for sample_name in self.sample_names:
            bg_red = get_column_as_flat_array(neg_controls[sample_name], ('R', 'U'), remove_na=True)
            bg_green = get_column_as_flat_array(neg_controls[sample_name], ('G', 'M'), remove_na=True)
            if len(bg_red) == 0 or len(bg_green) == 0:
                raise DataError(f'Sample {sample_name}: no negative control signal')

            mu = {'R': np.median(bg_red), 'G': np.median(bg_green)}
            sd = {'R': mad(bg_red), 'G': mad(bg_green)}
            for channel in ['R', 'G']:
                if sd[channel] <= 0:
                    LOGGER.warning(f'Sample {sample_name}: MAD of the negative controls is 0 in channel {channel}')
                    sd[channel] = np.finfo(float).eps

            bg_mean = np.where(design_types == 'II', mu['R'] + mu['G'],
                               np.where(channels == 'R', 2 * mu['R'], 2 * mu['G']))
            bg_sd = np.where(design_types == 'II', np.sqrt(sd['R'] ** 2 + sd['G'] ** 2),
                             np.where(channels == 'R', 2 * sd['R'], 2 * sd['G']))

            p_values[sample_name] = norm.sf(total[sample_name].values, loc=bg_mean, scale=bg_sd)

        p_values_df = pd.DataFrame(p_values, index=total.index.get_level_values('probe_id'))
        return p_values_df.where(total.notna().values)

    def _detection_poobah(self, use_negative_controls=True) -> pd.DataFrame:
        """Detection P-value based on empirical cumulative distribution function (ECDF) of out-of-band signal
        aka pOOBAH (p-vals by Out-Of-Band Array Hybridization).

        :param use_negative_controls: add negative controls as part of the background. Default True
        :type use_negative_controls: bool"""
        LOGGER.info('>>> Start detection (pOOBAH)')

        # Background = out-of-band type 1 probes + (optionally) negative controls
        background = {'G': self.oob_green(), 'R': self.oob_red()}
        neg_controls = self.get_negative_controls() if use_negative_controls else None

        sig_df = self._signal_df[self._signal_df.index.get_level_values('probe_type') != 'ctl']

        p_values = {}
        for sample_name in self.sample_names:
            max_signal = {}
            pvals = []
            for channel in ['G', 'R']:
                bg = get_column_as_flat_array(background[channel][sample_name], channel, remove_na=True)
                if neg_controls is not None:
                    bg = np.concatenate([bg, get_column_as_flat_array(neg_controls[sample_name], channel, True)])

                if np.sum(bg) <= 100:
                    LOGGER.debug('Not enough out of band signal, use empirical prior')
                    bg = np.arange(1000)

                max_signal[channel] = sig_df[(sample_name, channel)].max(axis=1)
                pvals.append(1 - ecdf(bg)(max_signal[channel].values))

            p_value = np.min(pvals, axis=0)
            no_signal = max_signal['G'].isna().values & max_signal['R'].isna().values
            p_value[no_signal] = np.nan
            p_values[sample_name] = p_value

        return pd.DataFrame(p_values, index=sig_df.index.get_level_values('probe_id'))

    ####################################################################################################################
    # Subsetting, description, saving & loading
    ####################################################################################################################

    def subset(self, sample_names: list[str]):
        """Return a new Samples object keeping only the given samples, in the order of the sample sheet.

        :param sample_names: names of the samples to keep
        :type sample_names: list[str]

        :return: a new Samples object
        :rtype: Samples"""
        sample_names = [name for name in self.sample_names if name in sample_names]
        new_samples = Samples(self.sample_sheet[self.sample_sheet.sample_name.isin(sample_names)].copy())
        new_samples.annotation = self.annotation
        new_samples._signal_df = self._signal_df[sample_names].copy()
        if self.detection_p_values is not None:
            new_samples.detection_p_values = self.detection_p_values[sample_names].copy()
            new_samples.detection_method = self.detection_method
        return new_samples

    def copy(self):
        """Create a copy of the Samples object"""
        return self.subset(self.sample_names)

    def __str__(self):
        return str(self.sample_names)

    def __repr__(self):
        description = f'Samples object with {self.nb_samples} samples\n'
        description += 'No annotation\n' if self.annotation is None else self.annotation.__repr__()
        description += self._signal_df.__repr__()
        return description

    def save(self, filepath: str) -> None:
        """Save the current Samples object to `filepath`, as a pickle file

        :param filepath: path to the file to create
        :type filepath: str

        :return: None"""
        save_object(self, filepath)

    @staticmethod
    def load(filepath: str):
        """Load a pickled Samples object from `filepath`

        :param filepath: path to the file to read
        :type filepath: str

        :return: the loaded object"""
        return load_object(filepath, Samples)


def read_sigdf(filepath: str | os.PathLike, sample_name: str, annotation: Annotations) -> pd.DataFrame:
    """Read the intensities of a sample from a SigDF table (as written by SeSAMe): one row per probe, with the
    columns Probe_ID, MG, MR, UG, UR. For type II probes, SeSAMe stores the green (methylated) signal in UG; it is
    read from MG when MG is set, from UG otherwise, and the red (unmethylated) signal from UR, or MR.

    :param filepath: path to the csv file
    :type filepath: str | os.PathLike
    :param sample_name: name of the sample, used as the first level of the columns
    :type sample_name: str
    :param annotation: probes metadata
    :type annotation: Annotations

    :raises DataError: if the file misses columns, has duplicated probes, or probes not in the annotation

    :return: the sample signal dataframe
    :rtype: pandas.DataFrame"""
    LOGGER.debug(f'reading file {filepath}')
    try:
        df = pd.read_csv(filepath, low_memory=False)
    except pd.errors.EmptyDataError:
        raise DataError(f'Sample {sample_name}: intensity file {filepath} is empty')

    df = df.rename(columns={c: c.strip().upper() for c in df.columns})
    df = df.rename(columns={'PROBE_ID': 'probe_id'})
    missing_columns = [c for c in SIGDF_COLUMNS if c not in df.columns]
    if len(missing_columns) > 0:
        raise DataError(f'Sample {sample_name}: columns {missing_columns} not found in {filepath}')

    df['probe_id'] = df.probe_id.astype(str)
    duplicated = df.probe_id[df.probe_id.duplicated()]
    if len(duplicated) > 0:
        raise DataError(f'Sample {sample_name}: duplicated probe IDs in {filepath}, e.g. {duplicated.iloc[0]}')

    unknown = ~df.probe_id.isin(annotation.probe_infos.index)
    if unknown.any():
        raise DataError(f'Sample {sample_name}: {unknown.sum():,} probe IDs of {filepath} are not in annotation '
                        f'{annotation.name}, e.g. {df.probe_id[unknown].iloc[0]}')

    probe_infos = annotation.probe_infos[['type', 'channel', 'probe_type']]
    df = df.join(probe_infos, on='probe_id')
    for column in ['MG', 'MR', 'UG', 'UR']:
        df[column] = pd.to_numeric(df[column], errors='coerce').astype('float64')

    # type II probes (and controls) have one address read in both channels
    single_address = (df.type == 'II')
    df.loc[single_address, 'MG'] = df.loc[single_address, 'MG'].fillna(df.loc[single_address, 'UG'])
    df.loc[single_address, 'UR'] = df.loc[single_address, 'UR'].fillna(df.loc[single_address, 'MR'])
    df.loc[single_address, ['UG', 'MR']] = np.nan

    df = df.set_index(SIGNAL_INDEX)[['MG', 'UG', 'MR', 'UR']]
    df.columns = pd.MultiIndex.from_tuples([(sample_name, c, s) for c, s in SIGNAL_COLUMNS],
                                           names=['sample_name', 'signal_channel', 'methylation_state'])
    return df


def find_sample_file(datadir, line: pd.Series) -> str:
    """Find the intensity file of a sample, from the file_path column of the sample sheet (relative to `datadir`)
    or by matching its sample_id with the file names.

    :raises DataError: if there is no matching file or several of them

    :return: the file path
    :rtype: str"""
    file_path = line.get('file_path')
    if isinstance(file_path, str) and file_path != '':
        path = convert_to_path(file_path)
        if not path.is_absolute():
            path = convert_to_path(datadir) / path
        if not path.exists():
            raise DataError(f'Sample {line.sample_name}: file {path} does not exist')
        return str(path)

    sample_id = line.get('sample_id')
    if not isinstance(sample_id, str) or sample_id == '':
        raise DataError(f'Sample {line.sample_name}: no file_path nor sample_id to find its intensity file')

    pattern = f'*{sample_id}*.csv*'
    paths = [str(p) for p in get_files_matching(datadir, pattern)]
    if len(paths) == 0:
        raise DataError(f'Sample {line.sample_name}: no file found matching {pattern} in {datadir}')
    if len(paths) > 1:
        raise DataError(f'Sample {line.sample_name}: too many files found matching {pattern} : {paths}')
    return paths[0]


def read_samples(datadir: str | os.PathLike | MultiplexedPath,
                 annotation: Annotations,
                 sample_sheet_df: pd.DataFrame | None = None,
                 sample_sheet_name: str | None = None,
                 max_samples: int | None = None) -> Samples:
    """Read the intensities of the samples described in the sample sheet, from SigDF csv files found in `datadir`.

    :param datadir: directory where the intensity files are
    :type datadir: str | os.PathLike | MultiplexedPath

    :param annotation: probes information
    :type annotation: Annotations

    :param sample_sheet_df: samples information. Default: None
    :type sample_sheet_df: pandas.DataFrame | None

    :param sample_sheet_name: name of the csv file in `datadir` containing the samples' information. You must provide
        either a sample sheet dataframe or name. Default: None
    :type sample_sheet_name: str | None

    :param max_samples: set it to only load N samples to speed up the process (useful for testing purposes).
        Default: None
    :type max_samples: int | None

    :raises ValueError: if both or none of `sample_sheet_df` and `sample_sheet_name` are provided
    :raises DataError: if the sample sheet or an intensity file can't be used

    :return: Samples object
    :rtype: Samples"""
    datadir = convert_to_path(datadir)  # expand user and make it a Path
    LOGGER.info(f'>> start reading sample files from {datadir}')

    if sample_sheet_df is not None and sample_sheet_name is not None:
        raise ValueError('You can\'t provide both a sample sheet dataframe and name. Please only provide one parameter.')
    if sample_sheet_df is None and sample_sheet_name is None:
        raise ValueError('Please provide a sample sheet dataframe or the name of the sample sheet file')

    if sample_sheet_name is not None:
        sample_sheet_df = sample_sheet.read_from_file(datadir / sample_sheet_name)
    else:
        sample_sheet.validate(sample_sheet_df)

    if not isinstance(annotation, Annotations):
        raise ValueError('annotation must be an Annotations object')

    # only load the N first samples
    if max_samples is not None:
        sample_sheet_df = sample_sheet_df.head(max_samples)

    # find all files before reading any of them
    file_paths = {line.sample_name: find_sample_file(datadir, line) for _, line in sample_sheet_df.iterrows()}
    sample_dfs = [read_sigdf(path, name, annotation) for name, path in file_paths.items()]

    samples = Samples(sample_sheet_df.reset_index(drop=True))
    samples.annotation = annotation
    samples._signal_df = pd.concat(sample_dfs, axis=1).sort_index()

    LOGGER.info(f'read {samples.nb_samples} samples and {samples.nb_probes:,} probes\n')
    return samples
