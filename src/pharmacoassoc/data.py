"""
Utility functions for data loading and preparation in the drug-response association pipeline.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import numba as nb
import numpy as np
import polars as pl

from pharmacoassoc.errors import AlignmentError
from pharmacoassoc.stats import (
    AssociationResult,
    FEATURE_COL,
    RESPONSE_COL,
    SAMPLE_COL,
)

logger = logging.getLogger(__name__)


@nb.njit(parallel=True)
def _row_zero_fractions(values):
    """
    Fraction of exact zeros in each row. NaN entries are not zeros.

    Args:
        values: 2D float array, features x samples

    Returns:
        Array with one fraction per row
    """
    n_rows, n_cols = values.shape
    fractions = np.zeros(n_rows)
    if n_cols == 0:
        return fractions
    for i in nb.prange(n_rows):
        count = 0
        for j in range(n_cols):
            if values[i, j] == 0.0:
                count += 1
        fractions[i] = count / n_cols
    return fractions


def load_feature_matrix(file_path: Union[str, Path], feature_col: Optional[str] = None) -> pl.DataFrame:
    """
    Load a wide feature-by-sample matrix.

    Works for gene expression, TF activities and pathway activities alike.

    Args:
        file_path: Path to a tab-delimited file, features in rows
        feature_col: Column holding the feature identifiers (defaults to the first column)

    Returns:
        DataFrame with a 'feature_id' column followed by Float64 sample columns
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        infer_schema_length=10000
    )

    if df.width < 2:
        raise ValueError(f"Feature matrix {file_path} needs an identifier column and at least one sample")

    feature_col = feature_col or df.columns[0]
    if feature_col not in df.columns:
        raise ValueError(f"Column '{feature_col}' not found in {file_path}")

    sample_cols = [col for col in df.columns if col != feature_col]
    df = df.select(
        [pl.col(feature_col).cast(pl.Utf8).alias(FEATURE_COL)]
        + [pl.col(col).cast(pl.Float64) for col in sample_cols]
    )

    duplicated = df.filter(pl.col(FEATURE_COL).is_duplicated())[FEATURE_COL].unique().to_list()
    if duplicated:
        logger.warning(f"{len(duplicated)} duplicated feature ids in {file_path}; keeping the first row of each")
        df = df.unique(subset=[FEATURE_COL], keep='first', maintain_order=True)

    logger.debug(f"Loaded {df.height} features x {len(sample_cols)} samples from {file_path}")
    return df


def list_drugs(file_path: Union[str, Path], drug_col: str = 'drug') -> List[str]:
    """
    List the drugs measured in a long drug-response table.

    Args:
        file_path: Path to the tab-delimited response table
        drug_col: Column holding the drug names

    Returns:
        Sorted list of drug names
    """
    df = pl.read_csv(file_path, separator='\t', has_header=True, columns=[drug_col])
    return sorted(df[drug_col].drop_nulls().cast(pl.Utf8).unique().to_list())


def load_drug_response(
    file_path: Union[str, Path],
    drug: Optional[str] = None,
    sample_col: str = 'sample_id',
    drug_col: str = 'drug',
    value_col: str = 'response'
) -> pl.DataFrame:
    """
    Load the response vector of one drug from a long drug-response table.

    Repeated measurements of a sample are averaged; missing responses are dropped.

    Args:
        file_path: Path to the tab-delimited response table (one row per sample and drug)
        drug: Drug to select; may be omitted when the table holds a single drug
        sample_col: Column holding the sample identifiers
        drug_col: Column holding the drug names
        value_col: Column holding the response values (e.g. LN_IC50)

    Returns:
        DataFrame with 'sample_id' and 'response' columns, sorted by sample
    """
    df = pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        columns=[sample_col, drug_col, value_col]
    )

    drugs = sorted(df[drug_col].drop_nulls().cast(pl.Utf8).unique().to_list())
    if drug is None:
        if len(drugs) != 1:
            raise ValueError(f"No drug selected and the response table holds {len(drugs)} drugs")
        drug = drugs[0]
    elif drug not in drugs:
        raise ValueError(f"Drug '{drug}' not found in {file_path}")

    response = (
        df.filter(pl.col(drug_col).cast(pl.Utf8) == drug)
        .select([
            pl.col(sample_col).cast(pl.Utf8).alias(SAMPLE_COL),
            pl.col(value_col).cast(pl.Float64).alias(RESPONSE_COL),
        ])
        .drop_nulls()
        .filter(pl.col(RESPONSE_COL).is_finite())
    )

    n_rows = response.height
    response = response.group_by(SAMPLE_COL).agg(pl.col(RESPONSE_COL).mean()).sort(SAMPLE_COL)
    if response.height < n_rows:
        logger.info(f"Averaged repeated measurements: {n_rows} rows -> {response.height} samples")

    logger.info(f"Loaded responses to {drug} for {response.height} samples")
    return response


def load_reference_sets(
    file_path: Union[str, Path],
    min_set_size: int = 0,
    max_set_size: Optional[int] = None
) -> Dict[str, Set[str]]:
    """
    Load a named collection of feature sets.

    ``.gmt`` files hold one set per line (name, description, members...);
    anything else is read as a long table with 'set_name' and 'feature_id' columns.

    Args:
        file_path: Path to the reference set file
        min_set_size: Drop sets with fewer members
        max_set_size: Drop sets with more members (None keeps all)

    Returns:
        Dictionary mapping set name to member feature ids
    """
    file_path = Path(file_path)
    sets: Dict[str, Set[str]] = {}

    if file_path.suffix.lower() == '.gmt':
        with open(file_path) as f:
            for line in f:
                fields = line.rstrip('\n').split('\t')
                if len(fields) < 2 or not fields[0]:
                    continue
                members = {member for member in fields[2:] if member}
                sets.setdefault(fields[0], set()).update(members)
    else:
        df = pl.read_csv(
            file_path,
            separator='\t',
            has_header=True,
            columns=['set_name', FEATURE_COL]
        ).drop_nulls()
        for set_name, members in df.group_by('set_name').agg(pl.col(FEATURE_COL).cast(pl.Utf8)).iter_rows():
            sets[str(set_name)] = set(members)

    n_total = len(sets)
    sets = {
        name: members for name, members in sets.items()
        if len(members) >= min_set_size and (max_set_size is None or len(members) <= max_set_size)
    }
    if len(sets) < n_total:
        logger.info(f"Kept {len(sets)} of {n_total} reference sets after size filtering")

    return sets


def load_node_list(file_path: Union[str, Path]) -> List[str]:
    """
    Load a list of network nodes.

    Either one identifier per line, or a tab-delimited table with a 'node' column.

    Args:
        file_path: Path to the node list

    Returns:
        Node identifiers in file order, without duplicates
    """
    with open(file_path) as f:
        header = f.readline().rstrip('\n')

    if '\t' in header or header.strip().lower() == 'node':
        df = pl.read_csv(file_path, separator='\t', has_header=True)
        column = 'node' if 'node' in df.columns else df.columns[0]
        nodes = df[column].drop_nulls().cast(pl.Utf8).to_list()
    else:
        with open(file_path) as f:
            nodes = [line.strip() for line in f]

    return list(dict.fromkeys(node for node in nodes if node))


def zero_fraction(matrix: pl.DataFrame, feature_col: str = FEATURE_COL) -> pl.DataFrame:
    """
    Fraction of zero values per feature.

    Args:
        matrix: Feature matrix
        feature_col: Feature identifier column

    Returns:
        DataFrame with 'feature_id' and 'zero_fraction' columns
    """
    sample_cols = [col for col in matrix.columns if col != feature_col]
    values = np.ascontiguousarray(matrix.select(sample_cols).cast(pl.Float64).to_numpy(), dtype=np.float64)
    return pl.DataFrame({
        FEATURE_COL: matrix[feature_col].to_list(),
        'zero_fraction': _row_zero_fractions(values),
    }, schema={FEATURE_COL: pl.Utf8, 'zero_fraction': pl.Float64})


def filter_sparse_features(
    matrix: pl.DataFrame,
    max_zero_fraction: float = 0.5,
    feature_col: str = FEATURE_COL
) -> pl.DataFrame:
    """
    Drop features with at least ``max_zero_fraction`` zero values across samples.

    Args:
        matrix: Feature matrix
        max_zero_fraction: Zero fraction at which a feature is dropped
        feature_col: Feature identifier column

    Returns:
        Filtered feature matrix
    """
    if matrix.height == 0:
        return matrix

    fractions = zero_fraction(matrix, feature_col=feature_col)['zero_fraction']
    filtered = matrix.filter(fractions < max_zero_fraction)

    logger.info(
        f"Kept {filtered.height} of {matrix.height} features with < {max_zero_fraction:.0%} zero values"
    )
    return filtered


def align_samples(
    matrix: pl.DataFrame,
    response: pl.DataFrame,
    feature_col: str = FEATURE_COL
) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """
    Restrict a feature matrix and a response vector to their shared samples.

    Args:
        matrix: Feature matrix
        response: DataFrame with 'sample_id' and 'response' columns
        feature_col: Feature identifier column

    Returns:
        Tuple of (matrix, response), both ordered by the matrix sample columns

    Raises:
        AlignmentError: if no sample is shared
    """
    measured = response.drop_nulls(subset=[RESPONSE_COL])
    response_samples = set(measured[SAMPLE_COL].cast(pl.Utf8).to_list())
    matrix_samples = [col for col in matrix.columns if col != feature_col]

    shared = [sample for sample in matrix_samples if sample in response_samples]
    if not shared:
        raise AlignmentError("Feature matrix and response vector share no samples")

    dropped_matrix = len(matrix_samples) - len(shared)
    dropped_response = len(response_samples) - len(shared)
    if dropped_matrix or dropped_response:
        logger.info(
            f"Aligned on {len(shared)} shared samples "
            f"(dropped {dropped_matrix} from matrix, {dropped_response} from response)"
        )

    order = pl.DataFrame({SAMPLE_COL: shared})
    aligned_response = order.join(
        measured.with_columns(pl.col(SAMPLE_COL).cast(pl.Utf8)),
        on=SAMPLE_COL,
        how='left'
    )

    return matrix.select([feature_col] + shared), aligned_response


def select_query_features(
    associations: List[AssociationResult],
    fdr_threshold: float = 0.05,
    top_n: Optional[int] = None,
    direction: str = 'both'
) -> List[str]:
    """
    Pick features to test for enrichment from association results.

    Args:
        associations: Association results
        fdr_threshold: Keep features with adjusted p-value below this
        top_n: Keep at most this many, by absolute statistic
        direction: 'both', 'positive' or 'negative' statistic

    Returns:
        Selected feature ids, strongest first
    """
    if direction not in ('both', 'positive', 'negative'):
        raise ValueError(f"Unknown direction: {direction}")

    selected = [r for r in associations if r.adjusted_p_value < fdr_threshold]
    if direction == 'positive':
        selected = [r for r in selected if r.statistic > 0]
    elif direction == 'negative':
        selected = [r for r in selected if r.statistic < 0]

    selected.sort(key=lambda r: (-abs(r.statistic), r.feature_id))
    if top_n is not None:
        selected = selected[:top_n]

    logger.info(f"Selected {len(selected)} query features (FDR < {fdr_threshold}, direction={direction})")
    return [r.feature_id for r in selected]
