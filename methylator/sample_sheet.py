"""Read and check sample sheets: one line per sample, with its name, its biological group, optionally its source
(donor / individual) and the location of its intensity file."""

import os

import pandas as pd

from methylator.errors import DataError
from methylator.utils import column_names_to_snake_case, get_logger

LOGGER = get_logger()

REQUIRED_COLUMNS = ['sample_name', 'group']
FILE_COLUMNS = ['file_path', 'sample_id']


def read_from_file(filepath: str | os.PathLike, delimiter: str = ',') -> pd.DataFrame:
    """Read sample sheet from the provided filepath. You can define a delimiter.

    Required columns in input file:
        - sample_name (or sample_id, used as name if sample_name is missing)
        - group: biological condition of the sample
        - file_path or sample_id: used to find the sample intensity file
    Optional:
        - source: donor or individual the sample comes from, used as a nuisance covariate

    Any other column will be left untouched in the sample sheet dataframe (with its name converted to snake case).
    Illumina sample sheets, where the header follows a [Data] line, are supported.

    :param filepath: path to the .csv file
    :type filepath: str | os.PathLike
    :param delimiter: column delimiter. Default: ','
    :type delimiter: str

    :raises DataError: if the file doesn't exist, isn't a csv file, or doesn't have the required columns

    :return: the sample sheet
    :rtype: pandas.DataFrame"""

    filepath = str(filepath)
    extension = filepath.split('.')[-1]
    if extension != 'csv':
        raise DataError(f'Sample sheet file must be in .csv format, not {extension}')

    if not os.path.exists(filepath):
        raise DataError(f'Filepath provided for sample sheet does not exist ({filepath})')

    try:
        df = pd.read_csv(filepath, delimiter=delimiter)
    except pd.errors.EmptyDataError:
        raise DataError(f'Sample sheet {filepath} is empty')

    # check if the file is in the format where the header follows a [Data] line
    if len(df.columns) > 0 and len(df) > 0:
        data_index = df.index[df.iloc[:, 0] == '[Data]']
        if len(data_index) == 1:
            df = pd.read_csv(filepath, delimiter=delimiter, skiprows=data_index[0] + 2, header=0)
        elif len(data_index) > 1:
            raise DataError('While reading sample sheet file : several [Data] lines found in file')

    df = column_names_to_snake_case(df)

    # identifiers are strings, other columns keep their type so that numeric covariates stay numeric
    for column in ['sample_name', 'group'] + FILE_COLUMNS:
        if column in df.columns:
            df[column] = df[column].where(df[column].isna(), df[column].astype(str))

    if 'sample_name' not in df.columns and 'sample_id' in df.columns:
        df['sample_name'] = df['sample_id']
        LOGGER.info(f'Column sample_name not found in {df.columns.tolist()}, taking name from column sample_id')

    validate(df)
    return df


def validate(sample_sheet_df: pd.DataFrame) -> None:
    """Check that the sample sheet can be used for an analysis.

    :param sample_sheet_df: sample sheet to check
    :type sample_sheet_df: pandas.DataFrame

    :raises DataError: if the sample sheet is empty, misses a required column, or has duplicated / empty sample names

    :return: None"""
    if sample_sheet_df is None or len(sample_sheet_df) == 0:
        raise DataError('Sample sheet is empty')

    missing_columns = [c for c in REQUIRED_COLUMNS if c not in sample_sheet_df.columns]
    if len(missing_columns) > 0:
        raise DataError(f'Column(s) {missing_columns} not found in sample sheet columns '
                        f'{sample_sheet_df.columns.tolist()}')

    if not any(c in sample_sheet_df.columns for c in FILE_COLUMNS):
        raise DataError(f'Sample sheet needs one of the columns {FILE_COLUMNS} to find the intensity files')

    names = sample_sheet_df.sample_name
    if names.isna().any() or (names.astype(str).str.strip() == '').any():
        raise DataError('Sample sheet contains empty sample names')

    duplicated = names[names.duplicated()].unique().tolist()
    if len(duplicated) > 0:
        raise DataError(f'Duplicated sample names in sample sheet: {duplicated}')

    if sample_sheet_df.group.isna().any():
        raise DataError(f'Missing group for samples {names[sample_sheet_df.group.isna()].tolist()}')
