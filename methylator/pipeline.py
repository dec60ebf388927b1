"""End-to-end analysis: sample quality filter, normalization, probe filter, DMP and DMR for each contrast."""

import os
from dataclasses import dataclass, field

import pandas as pd

from methylator.dm import get_design_matrix, get_contrast_matrix, get_dmp, get_dmr, top_table
from methylator.errors import ConfigurationError
from methylator.normalization import quantile_normalize
from methylator.quality_control import filter_samples
from methylator.ratios import RatioSet
from methylator.samples import Samples, DETECTION_METHODS
from methylator.utils import get_logger, convert_to_path

LOGGER = get_logger()


@dataclass
class PipelineConfig:
    """Parameters of an end-to-end analysis. Values are checked when the object is created.

    :raises ConfigurationError: if a parameter is out of range"""
    formula: str = '~ group'
    contrasts: object = None
    reference_value: dict | None = None
    sample_threshold: float = 0.05
    detection_method: str = 'negative_controls'
    probe_threshold: float = 0.01
    normalization_floor: float = 1.0
    lambda_: float = 1000
    C: float = 2
    dmr_fdr: float = 0.05
    min_probes: int = 1
    n_jobs: int = 1

    def __post_init__(self):
        for name in ['sample_threshold', 'probe_threshold', 'dmr_fdr']:
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ConfigurationError(f'{name} must be in ]0, 1] (got {value})')
        if self.detection_method not in DETECTION_METHODS:
            raise ConfigurationError(f'detection_method must be one of {DETECTION_METHODS} '
                                     f'(got {self.detection_method})')
        if self.normalization_floor <= 0:
            raise ConfigurationError(f'normalization_floor must be > 0 (got {self.normalization_floor})')
        if self.lambda_ <= 0 or self.C <= 0:
            raise ConfigurationError(f'lambda_ ({self.lambda_}) and C ({self.C}) must be > 0')
        if self.min_probes < 1:
            raise ConfigurationError(f'min_probes must be >= 1 (got {self.min_probes})')
        if self.n_jobs == 0:
            raise ConfigurationError('n_jobs can\'t be 0')
        if not isinstance(self.formula, str) or '~' not in self.formula:
            raise ConfigurationError(f'formula must be an R-like formula such as "~ group" (got {self.formula})')


@dataclass
class PipelineResult:
    """Outputs of `run_pipeline()`"""
    samples: Samples
    ratio_set: RatioSet
    dmps: pd.DataFrame
    contrasts: list[str]
    top_tables: dict = field(default_factory=dict)
    dmrs: dict = field(default_factory=dict)


def run_pipeline(samples: Samples, config: PipelineConfig | None = None, variants: pd.DataFrame | None = None,
                 cross_reactive: list[str] | None = None) -> PipelineResult:
    """Run the whole analysis on loaded samples: detection p-values, sample quality filter, stratified quantile
    normalization, probe filter, DMP and DMR of each contrast.

    :param samples: raw intensities, as returned by `read_samples()`
    :type samples: Samples
    :param config: analysis parameters. Default: None (default parameters)
    :type config: PipelineConfig | None
    :param variants: known variants coordinates, to mask overlapping probes. Default: None
    :type variants: pandas.DataFrame | None
    :param cross_reactive: IDs of cross-reactive probes to mask. Default: None
    :type cross_reactive: list[str] | None

    :raises ConfigurationError: if the parameters are invalid or remove every sample
    :raises DataError: if the data can't be used

    :return: the results of each step
    :rtype: PipelineResult"""
    config = PipelineConfig() if config is None else config
    LOGGER.info(f'>> Start pipeline on {samples.nb_samples} samples')

    # formula and contrasts are checked on the full sample sheet before any computation
    sample_sheet = samples.sample_sheet[samples.sample_sheet.sample_name.isin(samples.sample_names)]
    design_matrix = get_design_matrix(sample_sheet, config.formula, config.reference_value)
    get_contrast_matrix(config.contrasts, design_matrix.columns)

    samples = samples.copy()
    samples.detection(config.detection_method)
    samples = filter_samples(samples, config.sample_threshold)

    ratio_set = quantile_normalize(samples, config.normalization_floor)
    ratio_set = ratio_set.probe_filter(config.probe_threshold, variants, cross_reactive)

    dmps, contrasts = get_dmp(ratio_set, config.formula, config.contrasts, config.reference_value, config.n_jobs)

    result = PipelineResult(samples, ratio_set, dmps, contrasts)
    reference_group = None if config.reference_value is None else config.reference_value.get('group')
    for contrast in contrasts:
        result.top_tables[contrast] = top_table(dmps, contrast, ratio_set, reference_group=reference_group)
        result.dmrs[contrast] = get_dmr(dmps, contrast, ratio_set.coordinates, config.lambda_, config.C,
                                        config.dmr_fdr, config.min_probes, config.n_jobs)

    LOGGER.info('pipeline done\n')
    return result


def _file_name(contrast: str) -> str:
    """file-system friendly version of a contrast name"""
    return ''.join(c if c.isalnum() or c in '-_.' else '_' for c in contrast).strip('_')


def save_results(result: PipelineResult, output_dir: str | os.PathLike) -> list[str]:
    """Write the top table and the DMR table of each contrast as csv files, plus the full DMP table.

    :param result: pipeline outputs
    :type result: PipelineResult
    :param output_dir: directory to write the files in, created if needed
    :type output_dir: str | os.PathLike

    :return: paths of the written files
    :rtype: list[str]"""
    output_dir = convert_to_path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    paths = [output_dir / 'dmp.csv']
    result.dmps.to_csv(paths[0])
    for contrast in result.contrasts:
        name = _file_name(contrast)
        paths.append(output_dir / f'top_table_{name}.csv')
        result.top_tables[contrast].to_csv(paths[-1], index=False)
        paths.append(output_dir / f'dmr_{name}.csv')
        result.dmrs[contrast].to_csv(paths[-1], index=False)

    LOGGER.info(f'{len(paths)} result files written in {output_dir}')
    return [str(p) for p in paths]
