"""Utility functions shared by all modules: logger access, file and path helpers, dataframe helpers."""

import os
import pickle
import logging
from pathlib import Path, PosixPath
from importlib.resources.readers import MultiplexedPath

import numpy as np
import pandas as pd

LOGGER_NAME = 'methylator'


def get_logger() -> logging.Logger:
    """Return the package logger. Every module gets its logger from here so that the level can be set at once
    with `set_logger()`.

    :return: the package logger
    :rtype: logging.Logger"""
    return logging.getLogger(LOGGER_NAME)


def set_logger(level: str | int = 'INFO') -> None:
    """Set the level of the package logger, and add a stream handler to it if it doesn't have one yet.

    :param level: logging level, as a string ('DEBUG', 'INFO', 'WARNING', 'ERROR') or as a logging constant.
        Default: 'INFO'
    :type level: str | int

    :return: None"""
    logger = get_logger()
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s', '%H:%M:%S'))
        logger.addHandler(handler)


LOGGER = get_logger()


def column_names_to_snake_case(df: pd.DataFrame) -> pd.DataFrame:
    """converts the dataframe's column names from camel case to snake case, and replace spaces by underscores"""
    # regex to detect a new word in a camel case string
    camel_case = '(?<=[a-z])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])|(?<=[a-zA-Z])(?=[1-9])|(?<=[1-9])(?=[A-Z])'
    # specificity, replace CpG by CPG otherwise it becomes cp_g with the regex
    df.columns = df.columns.str.replace('CpG', 'CPG')
    df.columns = df.columns.str.replace(camel_case, '_', regex=True).str.lower()
    df.columns = [c.strip().replace(' ', '_') for c in df.columns]
    return df


def get_column_as_flat_array(df: pd.DataFrame, column: str | list, remove_na: bool = False) -> np.ndarray:
    """get values from one or several columns of a pandas dataframe, and return a flatten array of the values.
     If `remove_na` is set to True, all NaN values will be removed"""
    values = df[[column]].values.astype('float64')
    if remove_na:
        return values[~np.isnan(values)]
    return values.flatten()


def save_object(object_to_save, filepath: str | os.PathLike) -> None:
    """Save any object as a pickle file

    :param object_to_save: any object to save as a pickle file
    :param filepath: path describing where to save the file
    :type filepath: str | os.PathLike

    :return: None"""
    LOGGER.info(f'Saving {type(object_to_save)} object in {filepath}')
    with open(filepath, 'wb') as f:
        pickle.dump(object_to_save, f)


def load_object(filepath: str | os.PathLike, object_type=None):
    """Load any object from a pickle file

    :param filepath: full path to the object to load. The file *MUST* be in pickle format
    :type filepath: str | os.PathLike
    :param object_type: type of the object, so that the function checks that it has the right type. Default: None

    :return: loaded object, or None if the file doesn't exist"""
    if not os.path.exists(filepath):
        LOGGER.error(f'File {filepath} does not exist')
        return None

    LOGGER.info(f'Loading {object_type.__name__ if object_type is not None else ""} object from {filepath}')
    with open(filepath, 'rb') as f:
        loaded_object = pickle.load(f)

    if object_type is not None and not isinstance(loaded_object, object_type):
        LOGGER.error(f'The saved object type {type(loaded_object)} doesnt match the requested type ({object_type})')

    return loaded_object


def convert_to_path(input_path: str | os.PathLike | MultiplexedPath) -> Path | PosixPath:
    """Ensure the `input_path` is a PathLike format.
    If it's a string or a MultiplexedPath, convert it to a PathLike object."""
    if isinstance(input_path, MultiplexedPath):
        return input_path.joinpath('*').parent  # convert MultiplexedPath into PosixPath
    return Path(os.path.expanduser(input_path))


def get_files_matching(root_path: str | os.PathLike | MultiplexedPath, pattern: str) -> list[os.PathLike]:
    """ Equivalent to Path.rglob() for MultiplexedPath. Find all files in the subtree matching the pattern"""
    return [p for p in convert_to_path(root_path).rglob(pattern)]


def get_chromosome_number(chromosome_id: str | int | list | pd.Series, convert_string=False) -> list | int | None:
    """From a string representing the chromosome ID, get the chromosome number. E.g. 'chr22' -> 22. If the input
    is not a numbered chromosome, return None. The string part has to be only 'chr', not case-sensitive

    :param chromosome_id: input string(s) to extract the number from
    :type chromosome_id: str | int | list | pandas.Series
    :param convert_string: convert any non-numbered chromosome to a number. Gives X the ID 97, Y the ID 98 and M the
        ID 99. Any other string will be given the ID 100. Default: False
    :type convert_string: bool

    :return: the chromosome(s) number(s) as an integer, or None if not applicable
    :rtype: list | int | None"""

    # for list and series, call the function on each member
    if isinstance(chromosome_id, (list, pd.Series, pd.Index, np.ndarray)):
        return [get_chromosome_number(chr_id, convert_string) for chr_id in chromosome_id]

    if isinstance(chromosome_id, (int, np.integer)):
        return int(chromosome_id)

    trimmed_str = str(chromosome_id).lower().replace('chr', '')

    if trimmed_str.isdigit():
        return int(trimmed_str)

    if convert_string:
        supported_chrs = {'x': 97, 'y': 98, 'm': 99}
        return supported_chrs.get(trimmed_str, 100)

    return None


def chromosome_sort_key(chromosomes: pd.Series) -> pd.Series:
    """Sort key giving numbered chromosomes their natural order (chr2 before chr10), then X, Y, M and others.
    Meant to be used as the `key` parameter of pandas sort functions.

    :param chromosomes: chromosome names
    :type chromosomes: pandas.Series

    :return: integer sort key
    :rtype: pandas.Series"""
    return pd.Series(get_chromosome_number(chromosomes.astype(str), convert_string=True), index=chromosomes.index)
