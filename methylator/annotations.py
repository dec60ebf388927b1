"""Probe metadata: the annotation reference (probe design type, color channel, genomic coordinates, genes) and the
reference lists used to filter probes (cross-reactive probes, known genetic variants).
"""
import os

import pandas as pd
import pyranges as pr

from methylator.errors import DataError
from methylator.utils import get_logger, column_names_to_snake_case, convert_to_path

LOGGER = get_logger()

DESIGN_TYPES = ['I', 'II']


def _read_table(filepath: str | os.PathLike, **kwargs) -> pd.DataFrame:
    """Read a csv / tsv file (optionally compressed), guessing the delimiter from the extension."""
    filepath = convert_to_path(filepath)
    if not filepath.exists():
        raise DataError(f'File {filepath} does not exist')
    suffixes = [s.lower() for s in filepath.suffixes]
    delimiter = '\t' if '.tsv' in suffixes or '.txt' in suffixes else ','
    return pd.read_csv(filepath, delimiter=delimiter, **kwargs)


def _infer_probe_type(probe_id: str) -> str:
    """Deduce the probe type from the probe ID prefix (cg, ch, rs). Anything else is considered a control probe."""
    prefix = probe_id[:2].lower()
    return prefix if prefix in ['cg', 'ch', 'rs'] else 'ctl'


class Annotations:
    """This class contains the metadata of the probes of an array: the design type (Infinium I or II), the color
    channel of type I probes, the genomic coordinates and the gene annotation of each probe.

    Control probes have the probe type `ctl`. They are read in both color channels, like type II probes, and their
    probe ID tells what they control (e.g. negative controls contain `negative` in their ID).

    :ivar name: name of the annotation
    :vartype name: str

    :ivar probe_infos: probes metadata indexed by probe ID, with columns type, channel, probe_type, chromosome, start,
        end, gene
    :vartype probe_infos: pandas.DataFrame
    """

    def __init__(self, probe_infos: pd.DataFrame, name: str = 'custom'):
        """Check and format the probes metadata.

        :param probe_infos: probes metadata. Must have the columns probe_id and type. Columns channel, probe_type,
            chromosome, start, end (or position) and gene are optional
        :type probe_infos: pandas.DataFrame
        :param name: name of the annotation. Default: 'custom'
        :type name: str

        :raises DataError: if required columns are missing, if probe IDs are duplicated or if a probe has an unknown
            design type"""
        self.name = name

        df = column_names_to_snake_case(probe_infos.copy())
        if 'probe_id' not in df.columns and df.index.name == 'probe_id':
            df = df.reset_index()

        for column in ['probe_id', 'type']:
            if column not in df.columns:
                raise DataError(f'Annotation {name}: column {column} not found in {df.columns.tolist()}')

        df['probe_id'] = df.probe_id.astype(str)
        duplicated = df.probe_id[df.probe_id.duplicated()]
        if len(duplicated) > 0:
            raise DataError(f'Annotation {name}: {len(duplicated)} duplicated probe IDs, e.g. {duplicated.iloc[0]}')

        df['type'] = df.type.astype(str).str.upper().replace({'1': 'I', '2': 'II'})
        unknown_types = set(df.type) - set(DESIGN_TYPES)
        if len(unknown_types) > 0:
            raise DataError(f'Annotation {name}: unknown design types {unknown_types}, expected {DESIGN_TYPES}')

        if 'probe_type' not in df.columns:
            df['probe_type'] = df.probe_id.map(_infer_probe_type)

        if 'channel' not in df.columns:
            df['channel'] = ''
        df['channel'] = df.channel.fillna('').astype(str).str.upper().str[:1]
        df.loc[df.type == 'II', 'channel'] = ''

        bad_channels = df[(df.type == 'I') & ~df.channel.isin(['R', 'G'])]
        if len(bad_channels) > 0:
            raise DataError(f'Annotation {name}: {len(bad_channels)} type I probes without a R or G channel, '
                            f'e.g. {bad_channels.probe_id.iloc[0]}')

        if 'start' not in df.columns and 'position' in df.columns:
            df['start'] = df['position']
        for column in ['chromosome', 'start', 'end', 'gene']:
            if column not in df.columns:
                df[column] = pd.NA

        df['start'] = pd.to_numeric(df.start, errors='coerce')
        df['end'] = pd.to_numeric(df.end, errors='coerce')
        # a CpG probe without an end coordinate covers one base
        df['end'] = df.end.fillna(df.start + 1)
        df['chromosome'] = df.chromosome.astype('string')
        df['gene'] = df.gene.fillna('').astype(str)

        self.probe_infos = df.set_index('probe_id')

    @staticmethod
    def from_file(filepath: str | os.PathLike, name: str | None = None):
        """Read the probes metadata from a csv or tsv file.

        :param filepath: path to the annotation file
        :type filepath: str | os.PathLike
        :param name: name of the annotation. Default: the file name
        :type name: str | None

        :return: the annotation
        :rtype: Annotations"""
        df = _read_table(filepath, dtype={'chromosome': str, 'channel': str, 'type': str})
        name = convert_to_path(filepath).name if name is None else name
        LOGGER.info(f'Read annotation {name} with {len(df):,} probes')
        return Annotations(df, name)

    @property
    def probe_ids(self) -> list[str]:
        """Return the IDs of all the probes of the annotation"""
        return self.probe_infos.index.tolist()

    @property
    def genomic_ranges(self) -> pd.DataFrame:
        """Genomic coordinates of the probes that have a location, indexed by probe ID

        :return: dataframe with columns chromosome, start, end, gene
        :rtype: pandas.DataFrame"""
        ranges = self.probe_infos[['chromosome', 'start', 'end', 'gene']]
        ranges = ranges[ranges.chromosome.notna() & ranges.start.notna()].copy()
        ranges['start'] = ranges.start.astype('int64')
        ranges['end'] = ranges.end.astype('int64')
        return ranges

    def __str__(self):
        return f'{self.name} annotation - {len(self.probe_infos):,} probes'

    def __repr__(self):
        return f'Annotation {self.name}: {len(self.probe_infos):,} probes\n'


def read_cross_reactive_probes(filepath: str | os.PathLike) -> list[str]:
    """Read a list of cross-reactive probe IDs. The file either has one probe ID per line, or is a table whose
    first column (or column `probe_id` if it exists) holds the IDs.

    :param filepath: path to the file
    :type filepath: str | os.PathLike

    :return: probe IDs, without duplicates, in the order of the file
    :rtype: list[str]"""
    df = _read_table(filepath, header=None, dtype=str)
    first_values = df.iloc[0].str.strip().str.lower().tolist() if len(df) > 0 else []
    column = first_values.index('probe_id') if 'probe_id' in first_values else 0
    probe_ids = df.iloc[:, column].dropna().str.strip()
    if len(probe_ids) > 0 and probe_ids.iloc[0].lower() in ['probe_id', 'targetid', 'id']:
        probe_ids = probe_ids.iloc[1:]
    probe_ids = probe_ids[probe_ids != ''].drop_duplicates().tolist()
    LOGGER.info(f'Read {len(probe_ids):,} cross-reactive probe IDs from {filepath}')
    return probe_ids


def read_known_variants(filepath: str | os.PathLike) -> pd.DataFrame:
    """Read a list of known genetic variants. The file must have a chromosome column and either start (+ optional
    end) or position columns. Coordinates are 0-based, end excluded; a variant without an end covers one base.

    :param filepath: path to the file
    :type filepath: str | os.PathLike

    :raises DataError: if columns are missing

    :return: dataframe with columns chromosome, start, end
    :rtype: pandas.DataFrame"""
    df = column_names_to_snake_case(_read_table(filepath, dtype={'chromosome': str, 'chrom': str, 'chr': str}))
    return format_variants(df)


def format_variants(variants: pd.DataFrame) -> pd.DataFrame:
    """Standardize a variants dataframe to the columns chromosome, start, end.

    :param variants: dataframe with a chromosome (or chrom / chr) column and start / end or position columns
    :type variants: pandas.DataFrame

    :raises DataError: if columns are missing

    :return: dataframe with columns chromosome, start, end
    :rtype: pandas.DataFrame"""
    df = variants.rename(columns={'chrom': 'chromosome', 'chr': 'chromosome', 'position': 'start', 'pos': 'start'})
    if 'chromosome' not in df.columns or 'start' not in df.columns:
        raise DataError(f'Variants need chromosome and start (or position) columns, got {df.columns.tolist()}')
    if 'end' not in df.columns:
        df['end'] = df['start'] + 1
    df = df[['chromosome', 'start', 'end']].dropna()
    df = df.astype({'chromosome': str, 'start': 'int64', 'end': 'int64'})
    return df.reset_index(drop=True)


def probes_overlapping(genomic_ranges: pd.DataFrame, variants: pd.DataFrame) -> list[str]:
    """Find the probes whose coordinates overlap at least one of the variants.

    :param genomic_ranges: probes coordinates indexed by probe ID, with columns chromosome, start, end
    :type genomic_ranges: pandas.DataFrame
    :param variants: variants coordinates, with columns chromosome, start, end
    :type variants: pandas.DataFrame

    :return: IDs of the overlapping probes
    :rtype: list[str]"""
    if len(genomic_ranges) == 0 or len(variants) == 0:
        return []

    # pyranges naming convention
    probes_df = genomic_ranges.reset_index()[['chromosome', 'start', 'end', 'probe_id']]
    probes_df = probes_df.rename(columns={'chromosome': 'Chromosome', 'start': 'Start', 'end': 'End'})
    probes_df['Chromosome'] = probes_df.Chromosome.astype(str)
    variants_df = format_variants(variants).rename(columns={'chromosome': 'Chromosome', 'start': 'Start',
                                                            'end': 'End'})

    overlapping = pr.PyRanges(probes_df).overlap(pr.PyRanges(variants_df))
    if len(overlapping) == 0:
        return []
    return overlapping.df.probe_id.drop_duplicates().tolist()
