import numpy as np

from sklearn.manifold import MDS
from sklearn.decomposition import PCA, DictionaryLearning, FactorAnalysis, FastICA, IncrementalPCA, KernelPCA
from sklearn.decomposition import LatentDirichletAllocation, MiniBatchDictionaryLearning, MiniBatchNMF
from sklearn.decomposition import NMF, SparsePCA, TruncatedSVD, MiniBatchSparsePCA

from methylator.ratios import RatioSet
from methylator.utils import get_logger

LOGGER = get_logger()

MODELS = {'PCA': PCA, 'MDS': MDS, 'DL': DictionaryLearning, 'FA': FactorAnalysis, 'FICA': FastICA,
          'IPCA': IncrementalPCA, 'KPCA': KernelPCA, 'LDA': LatentDirichletAllocation,
          'MBDL': MiniBatchDictionaryLearning, 'MBNMF': MiniBatchNMF, 'MBSPCA': MiniBatchSparsePCA, 'NMF': NMF,
          'SPCA': SparsePCA, 'TSVD': TruncatedSVD}


def dimensionality_reduction(ratio_set: RatioSet, model='PCA', nb_probes: int | None = 1000, values='m_values',
                             **kwargs):
    """Fit a dimensionality reduction model on the samples, to explore their structure (batch effects, outliers,
    group separation) before the differential analysis.

    :param ratio_set: normalized signal of the samples
    :type ratio_set: RatioSet

    :param model: identifier of the model to use. Available models are 'PCA': PCA, 'MDS': MDS, 'DL': DictionaryLearning,
        'FA': FactorAnalysis, 'FICA': FastICA, 'IPCA': IncrementalPCA, 'KPCA': KernelPCA, 'LDA': LatentDirichletAllocation,
        'MBDL': MiniBatchDictionaryLearning, 'MBNMF': MiniBatchNMF, 'MBSPCA': MiniBatchSparsePCA, 'NMF': NMF,
        'SPCA': SparsePCA, 'TSVD': TruncatedSVD. Default: 'PCA'
    :type model: str

    :param nb_probes: number of probes to use for the model, selected from the probes with the most variance.
        If None, use all the probes. Default: 1000
    :type nb_probes: int | None

    :param values: 'm_values' or 'betas'. Use betas for models that need non-negative values (NMF, LDA).
        Default: 'm_values'
    :type values: str

    :param kwargs: parameters passed to the model

    :return: scikit learn model, the fitted coordinates of the samples, the samples' names, the number of probes used
    """
    if model not in MODELS.keys():
        LOGGER.error(f'Unknown model {model}. Known models are {list(MODELS.keys())}')
        return None, None, None, None

    if values not in ['m_values', 'betas']:
        LOGGER.error(f'Unknown values {values}, use m_values or betas')
        return None, None, None, None

    data = ratio_set.m_values() if values == 'm_values' else ratio_set.betas()

    if data is None or len(data) == 0:
        LOGGER.error('No values to fit the model on')
        return None, None, None, None

    if model in ['PCA'] and 'n_components' in kwargs and kwargs['n_components'] > len(data.columns):
        LOGGER.error(f'Number of components {kwargs["n_components"]} is greater than the number of samples {len(data.columns)}')
        return None, None, None, None

    # get probes with the most variance across samples
    variance = np.var(data.dropna(), axis=1)  # remove NA
    nb_probes = len(variance) if nb_probes is None else min(nb_probes, len(variance))
    indexes_most_variance = variance.sort_values(ascending=False)[:nb_probes].index
    data_most_variance = data.loc[indexes_most_variance]

    LOGGER.info(f'fitting {model} on {nb_probes:,} probes and {len(data.columns)} samples')

    # fit the model
    model_ini = MODELS[model](**kwargs)
    fit = model_ini.fit_transform(data_most_variance.T)

    return model_ini, fit, data.columns, nb_probes
