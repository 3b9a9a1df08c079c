"""
Statistical analysis functions for the drug-response association pipeline.

Two components live here: the per-feature regression pipeline
(``FeatureAssociationPipeline``) and the hypergeometric over-representation
test (``EnrichmentTester``). Both finish with one multiple-testing
correction over the full set of raw p-values.
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple, Union

import numba as nb
import numpy as np
import polars as pl
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.multitest import multipletests
from tqdm.auto import tqdm

from pharmacoassoc.errors import AlignmentError, DegenerateFeatureError, EmptyUniverseError

logger = logging.getLogger(__name__)

FEATURE_COL = 'feature_id'
SAMPLE_COL = 'sample_id'
RESPONSE_COL = 'response'

# Fewer usable samples than this leaves no residual degrees of freedom
MIN_SAMPLES = 3


class AssociationResult(NamedTuple):
    """Regression of the response on one feature."""
    feature_id: str
    statistic: float
    p_value: float
    adjusted_p_value: float


class EnrichmentResult(NamedTuple):
    """Over-representation of one reference set among the query features."""
    set_name: str
    set_size: int
    overlap_size: int
    overlap_members: Tuple[str, ...]
    p_value: float
    adjusted_p_value: float


@nb.njit
def _has_zero_variance(x):
    """Whether the values are constant up to rounding, relative to their magnitude."""
    n = len(x)
    if n == 0:
        return True
    mean = np.sum(x) / n
    deviations = 0.0
    magnitude = 0.0
    for i in range(n):
        diff = x[i] - mean
        deviations += diff * diff
        magnitude += x[i] * x[i]
    return deviations <= np.finfo(np.float64).eps * n * magnitude


def perform_fdr_analysis(p_values, alpha: float = 0.05, method: str = 'fdr_bh') -> Dict[str, list]:
    """
    Correct p-values for multiple testing.

    Args:
        p_values: Array of raw p-values
        alpha: Family-wise error rate / false discovery rate
        method: Any method accepted by statsmodels' ``multipletests``

    Returns:
        Dictionary with 'reject' and 'pvals_corrected' lists, in input order
    """
    if len(p_values) == 0:
        raise ValueError("Input p-values array cannot be empty")

    reject, pvals_corrected, _, _ = multipletests(
        np.asarray(p_values, dtype=float),
        alpha=alpha,
        method=method
    )

    return {
        'reject': reject.astype(bool).tolist(),
        'pvals_corrected': pvals_corrected.tolist()
    }


def _response_mapping(response: Union[pl.DataFrame, Mapping[str, float]]) -> Dict[str, float]:
    """Turn a response vector into a sample -> value mapping."""
    if isinstance(response, pl.DataFrame):
        missing = [col for col in (SAMPLE_COL, RESPONSE_COL) if col not in response.columns]
        if missing:
            raise ValueError(f"Response vector is missing columns: {', '.join(missing)}")
        samples = response[SAMPLE_COL].cast(pl.Utf8)
        duplicated = sorted(samples.filter(samples.is_duplicated()).unique().to_list())
        if duplicated:
            raise AlignmentError(f"Duplicated samples in response vector: {', '.join(duplicated)}")
        return dict(zip(samples.to_list(), response[RESPONSE_COL].cast(pl.Float64).to_list()))
    return {str(k): v for k, v in response.items()}


def align_response(sample_ids: List[str], response: Union[pl.DataFrame, Mapping[str, float]]) -> np.ndarray:
    """
    Order a response vector by the sample columns of a feature matrix.

    Args:
        sample_ids: Sample columns of the feature matrix
        response: DataFrame with sample_id/response columns, or a mapping

    Returns:
        Response values as a float array in ``sample_ids`` order

    Raises:
        AlignmentError: if the two sample sets differ
    """
    values = _response_mapping(response)
    matrix_samples = set(sample_ids)
    response_samples = set(values)
    if matrix_samples != response_samples:
        only_matrix = sorted(matrix_samples - response_samples)
        only_response = sorted(response_samples - matrix_samples)
        raise AlignmentError(
            f"Sample identifiers differ between matrix and response "
            f"(only in matrix: {only_matrix[:5]}{'...' if len(only_matrix) > 5 else ''}, "
            f"only in response: {only_response[:5]}{'...' if len(only_response) > 5 else ''})"
        )
    return np.array([np.nan if values[s] is None else values[s] for s in sample_ids], dtype=float)


def fit_feature_association(feature_id: str, values, response) -> Tuple[float, float]:
    """
    Fit ``response ~ 1 + feature`` by ordinary least squares.

    Samples where either value is not finite are left out of this fit.

    Args:
        feature_id: Feature identifier, used in error messages
        values: Feature values, one per sample
        response: Response values in the same sample order

    Returns:
        Tuple of (slope t-statistic, two-sided p-value)

    Raises:
        DegenerateFeatureError: for a constant feature, too few usable samples,
            or an undefined statistic
    """
    x = np.asarray(values, dtype=float)
    y = np.asarray(response, dtype=float)
    usable = np.isfinite(x) & np.isfinite(y)
    x = x[usable]
    y = y[usable]

    if len(x) < MIN_SAMPLES:
        raise DegenerateFeatureError(feature_id, f"only {len(x)} usable samples")
    if _has_zero_variance(x):
        raise DegenerateFeatureError(feature_id)

    design = sm.add_constant(x, has_constant='add')
    # A perfect fit has zero residual variance: t is infinite and p is 0
    with np.errstate(divide='ignore', invalid='ignore'):
        fit = sm.OLS(y, design).fit()
        statistic = float(fit.tvalues[1])
        p_value = float(fit.pvalues[1])

    if np.isnan(statistic) or np.isnan(p_value):
        raise DegenerateFeatureError(feature_id, "undefined test statistic")

    return statistic, p_value


def _associate_chunk(
    features: List[Tuple[str, np.ndarray]],
    response: np.ndarray
) -> Tuple[List[Tuple[str, float, float]], List[str]]:
    """
    Fit a batch of features. Kept at module level so worker processes can pickle it.

    Returns:
        Tuple of (list of (feature_id, statistic, p_value), list of degenerate feature ids)
    """
    fitted = []
    degenerate = []
    for feature_id, values in features:
        try:
            statistic, p_value = fit_feature_association(feature_id, values, response)
        except DegenerateFeatureError as e:
            degenerate.append(feature_id)
            logger.debug(str(e))
            continue
        fitted.append((feature_id, statistic, p_value))
    return fitted, degenerate


def _chunked(items: List, n_chunks: int) -> List[List]:
    size = max(1, -(-len(items) // n_chunks))
    return [items[i:i + size] for i in range(0, len(items), size)]


def associate_features(
    matrix: pl.DataFrame,
    response: Union[pl.DataFrame, Mapping[str, float]],
    correction_method: str = 'fdr_bh',
    num_threads: int = 1,
    feature_col: str = FEATURE_COL,
    desc: str = "Fitting features"
) -> Tuple[List[AssociationResult], List[str]]:
    """
    Regress the response on every feature of a matrix and correct the p-values.

    Args:
        matrix: DataFrame with a feature identifier column and one numeric column per sample
        response: Response vector keyed by the same sample identifiers
        correction_method: Multiple-testing method passed to ``multipletests``
        num_threads: Worker processes; 1 runs in the calling process
        feature_col: Name of the feature identifier column
        desc: Progress bar label

    Returns:
        Tuple of (results ordered by descending statistic, ids of excluded degenerate features)

    Raises:
        AlignmentError: if matrix samples and response samples differ
        ValueError: if the response has zero variance
    """
    if feature_col not in matrix.columns:
        raise ValueError(f"Feature matrix has no '{feature_col}' column")

    sample_ids = [col for col in matrix.columns if col != feature_col]
    y = align_response(sample_ids, response)

    finite = y[np.isfinite(y)]
    if len(finite) > 0 and _has_zero_variance(finite):
        raise ValueError("Response vector has zero variance; no association can be estimated")

    feature_ids = matrix[feature_col].cast(pl.Utf8).to_list()
    values = matrix.select(sample_ids).cast(pl.Float64).to_numpy() if sample_ids else np.empty((len(feature_ids), 0))
    features = list(zip(feature_ids, values))

    fitted: List[Tuple[str, float, float]] = []
    degenerate: List[str] = []

    workers = max(1, min(num_threads, len(features)))
    if workers > 1:
        chunks = _chunked(features, workers * 4)
        try:
            with ProcessPoolExecutor(max_workers=workers) as executor:
                with tqdm(total=len(features), desc=desc, unit="feature", leave=False) as pbar:
                    # map keeps input order so the output does not depend on scheduling
                    for chunk, (chunk_fitted, chunk_degenerate) in zip(
                        chunks, executor.map(_associate_chunk, chunks, [y] * len(chunks))
                    ):
                        fitted.extend(chunk_fitted)
                        degenerate.extend(chunk_degenerate)
                        pbar.update(len(chunk))
        except (BrokenProcessPool, OSError) as e:
            logger.error(f"Error in parallel processing: {str(e)}")
            logger.info("Falling back to sequential processing")
            fitted, degenerate = [], []
            workers = 1

    if workers == 1:
        for feature_id, row in tqdm(features, desc=desc, unit="feature", leave=False):
            chunk_fitted, chunk_degenerate = _associate_chunk([(feature_id, row)], y)
            fitted.extend(chunk_fitted)
            degenerate.extend(chunk_degenerate)

    if degenerate:
        logger.warning(
            f"Excluded {len(degenerate)} degenerate feature(s): "
            f"{', '.join(degenerate[:10])}{'...' if len(degenerate) > 10 else ''}"
        )

    if not fitted:
        logger.warning("No feature could be fitted")
        return [], degenerate

    # One correction over every raw p-value, before any ordering
    adjusted = perform_fdr_analysis([p for _, _, p in fitted], method=correction_method)['pvals_corrected']

    results = [
        AssociationResult(feature_id, statistic, p_value, float(adj))
        for (feature_id, statistic, p_value), adj in zip(fitted, adjusted)
    ]
    results.sort(key=lambda r: (-r.statistic, r.feature_id))

    logger.info(f"Fitted {len(results)} of {len(features)} features")
    return results, degenerate


class FeatureAssociationPipeline:
    """Per-feature linear association with a response, globally corrected."""

    def __init__(self, correction_method: str = 'fdr_bh', num_threads: int = 1):
        self.correction_method = correction_method
        self.num_threads = num_threads
        # Degenerate feature ids of the last run
        self.excluded: List[str] = []

    def run(
        self,
        matrix: pl.DataFrame,
        response: Union[pl.DataFrame, Mapping[str, float]],
        feature_col: str = FEATURE_COL
    ) -> List[AssociationResult]:
        """Run the association; degenerate features are left out and kept in ``self.excluded``."""
        results, self.excluded = associate_features(
            matrix,
            response,
            correction_method=self.correction_method,
            num_threads=self.num_threads,
            feature_col=feature_col
        )
        return results


def _restrict_to_universe(query_features: Iterable[str], universe: Set[str]) -> Set[str]:
    """Keep only query features that belong to at least one reference set."""
    query = set(query_features)
    kept = query & universe
    if len(kept) < len(query):
        logger.debug(f"Dropped {len(query) - len(kept)} query features outside the reference universe")
    if not kept:
        raise EmptyUniverseError(
            f"None of the {len(query)} query features appear in the reference sets"
        )
    return kept


def hypergeometric_enrichment(
    query_features: Iterable[str],
    reference_sets: Mapping[str, Iterable[str]],
    correction_method: str = 'fdr_bh'
) -> List[EnrichmentResult]:
    """
    Test each reference set for over-representation among the query features.

    The background is the union of all reference sets. For a set of size GP
    sharing GL members with a filtered query of size k, in a universe of
    size N, the p-value is P(X >= GL) = hypergeom.sf(GL - 1, N, GP, k).

    Args:
        query_features: Features of interest (e.g. significant genes, active nodes)
        reference_sets: Mapping of set name to member features
        correction_method: Multiple-testing method passed to ``multipletests``

    Returns:
        Results sorted by ascending raw p-value, ties broken by set name
    """
    if not reference_sets:
        logger.warning("Empty reference set collection; nothing to test")
        return []

    sets = {name: set(members) for name, members in reference_sets.items()}
    universe = set().union(*sets.values())
    n_universe = len(universe)

    try:
        query = _restrict_to_universe(query_features, universe)
    except EmptyUniverseError as e:
        logger.warning(f"{str(e)}; reporting no enrichment")
        query = set()
    n_query = len(query)

    raw = []
    for name in sorted(sets):
        members = sets[name]
        overlap = members & query
        set_size = len(members)
        overlap_size = len(overlap)
        if overlap_size == 0:
            p_value = 1.0
        else:
            p_value = float(stats.hypergeom.sf(overlap_size - 1, n_universe, set_size, n_query))
            p_value = min(max(p_value, 0.0), 1.0)
        raw.append((name, set_size, overlap_size, tuple(sorted(overlap)), p_value))

    adjusted = perform_fdr_analysis([row[-1] for row in raw], method=correction_method)['pvals_corrected']

    results = [
        EnrichmentResult(name, set_size, overlap_size, members, p_value, float(adj))
        for (name, set_size, overlap_size, members, p_value), adj in zip(raw, adjusted)
    ]
    results.sort(key=lambda r: (r.p_value, r.set_name))

    logger.info(
        f"Tested {len(results)} reference sets with {n_query} query features "
        f"in a universe of {n_universe}"
    )
    return results


class EnrichmentTester:
    """Hypergeometric over-representation test against a reference set collection."""

    def __init__(self, correction_method: str = 'fdr_bh'):
        self.correction_method = correction_method

    def test(
        self,
        query_features: Iterable[str],
        reference_sets: Mapping[str, Iterable[str]]
    ) -> List[EnrichmentResult]:
        return hypergeometric_enrichment(
            query_features,
            reference_sets,
            correction_method=self.correction_method
        )


def associations_to_frame(results: List[AssociationResult], alpha: Optional[float] = None) -> pl.DataFrame:
    """
    Convert association results to a DataFrame, keeping their order.

    Args:
        results: Association results
        alpha: If given, add a boolean 'significant' column (adjusted p < alpha)
    """
    df = pl.DataFrame(
        {
            'feature_id': [r.feature_id for r in results],
            'statistic': [r.statistic for r in results],
            'p_value': [r.p_value for r in results],
            'adjusted_p_value': [r.adjusted_p_value for r in results],
        },
        schema={
            'feature_id': pl.Utf8,
            'statistic': pl.Float64,
            'p_value': pl.Float64,
            'adjusted_p_value': pl.Float64,
        }
    )
    if alpha is not None:
        df = df.with_columns((pl.col('adjusted_p_value') < alpha).alias('significant'))
    return df


def enrichment_to_frame(results: List[EnrichmentResult]) -> pl.DataFrame:
    """Convert enrichment results to a DataFrame; overlap members are comma-joined."""
    return pl.DataFrame(
        {
            'set_name': [r.set_name for r in results],
            'set_size': [r.set_size for r in results],
            'overlap_size': [r.overlap_size for r in results],
            'overlap_members': [','.join(r.overlap_members) for r in results],
            'p_value': [r.p_value for r in results],
            'adjusted_p_value': [r.adjusted_p_value for r in results],
        },
        schema={
            'set_name': pl.Utf8,
            'set_size': pl.Int64,
            'overlap_size': pl.Int64,
            'overlap_members': pl.Utf8,
            'p_value': pl.Float64,
            'adjusted_p_value': pl.Float64,
        }
    )
