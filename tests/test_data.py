"""Tests for data loading and preparation functions."""

import numpy as np
import polars as pl
import pytest

from pharmacoassoc.data import (
    _row_zero_fractions,
    align_samples,
    filter_sparse_features,
    list_drugs,
    load_drug_response,
    load_feature_matrix,
    load_node_list,
    load_reference_sets,
    select_query_features,
    zero_fraction,
)
from pharmacoassoc.errors import AlignmentError
from pharmacoassoc.stats import AssociationResult


@pytest.fixture
def matrix_file(tmp_path):
    """Create a temporary expression matrix file for testing."""
    path = tmp_path / "expression.tsv"
    path.write_text(
        "gene\ts1\ts2\ts3\ts4\n"
        "TP53\t1.0\t2.0\t3.0\t4.0\n"
        "EGFR\t0.0\t0.0\t1.0\t2.0\n"
        "KRAS\t0\t0\t0\t5\n"
        "MYC\t2\t3\t4\t5\n"
    )
    return path


@pytest.fixture
def response_file(tmp_path):
    """Create a temporary long drug-response table."""
    path = tmp_path / "response.tsv"
    path.write_text(
        "COSMIC_ID\tDRUG_NAME\tLN_IC50\n"
        "1001\tErlotinib\t1.5\n"
        "1002\tErlotinib\t2.5\n"
        "1002\tErlotinib\t3.5\n"
        "1003\tErlotinib\t\n"
        "1001\tNutlin\t0.5\n"
    )
    return path


@pytest.fixture
def sample_matrix():
    return pl.DataFrame({
        'feature_id': ['A', 'B'],
        's1': [1.0, 2.0],
        's2': [2.0, 3.0],
        's3': [3.0, 4.0],
    })


def test_load_feature_matrix(matrix_file):
    """Test loading a wide matrix."""
    df = load_feature_matrix(matrix_file)

    assert df.columns == ['feature_id', 's1', 's2', 's3', 's4']
    assert df['feature_id'].to_list() == ['TP53', 'EGFR', 'KRAS', 'MYC']
    assert all(df.schema[col] == pl.Float64 for col in ['s1', 's2', 's3', 's4'])


def test_load_feature_matrix_duplicates(tmp_path):
    """Duplicated features keep their first row."""
    path = tmp_path / "dup.tsv"
    path.write_text("id\ts1\ts2\nA\t1\t2\nA\t3\t4\nB\t5\t6\n")
    df = load_feature_matrix(path)
    assert df['feature_id'].to_list() == ['A', 'B']
    assert df['s1'].to_list() == [1.0, 5.0]


def test_load_feature_matrix_no_samples(tmp_path):
    path = tmp_path / "empty.tsv"
    path.write_text("id\nA\nB\n")
    with pytest.raises(ValueError, match="at least one sample"):
        load_feature_matrix(path)


def test_load_drug_response(response_file):
    """Test selecting one drug from a long table."""
    response = load_drug_response(
        response_file,
        drug='Erlotinib',
        sample_col='COSMIC_ID',
        drug_col='DRUG_NAME',
        value_col='LN_IC50'
    )

    assert response.columns == ['sample_id', 'response']
    # Missing response dropped, repeats averaged
    assert response['sample_id'].to_list() == ['1001', '1002']
    assert response['response'].to_list() == [1.5, 3.0]


def test_load_drug_response_errors(response_file):
    """Unknown drugs and ambiguous tables are rejected."""
    columns = dict(sample_col='COSMIC_ID', drug_col='DRUG_NAME', value_col='LN_IC50')
    with pytest.raises(ValueError, match="not found"):
        load_drug_response(response_file, drug='Unknown', **columns)
    with pytest.raises(ValueError, match="holds 2 drugs"):
        load_drug_response(response_file, **columns)


def test_list_drugs(response_file):
    assert list_drugs(response_file, drug_col='DRUG_NAME') == ['Erlotinib', 'Nutlin']


def test_load_reference_sets_gmt(tmp_path):
    """Test loading GMT files."""
    path = tmp_path / "sets.gmt"
    path.write_text(
        "HALLMARK_P53\thttp://example.org\tTP53\tMDM2\tCDKN1A\n"
        "HALLMARK_EMPTY\tnone\n"
        "HALLMARK_MYC\tna\tMYC\t\n"
    )
    sets = load_reference_sets(path)

    assert sets == {
        'HALLMARK_P53': {'TP53', 'MDM2', 'CDKN1A'},
        'HALLMARK_EMPTY': set(),
        'HALLMARK_MYC': {'MYC'},
    }

    sets = load_reference_sets(path, min_set_size=2)
    assert list(sets) == ['HALLMARK_P53']

    sets = load_reference_sets(path, max_set_size=1)
    assert set(sets) == {'HALLMARK_EMPTY', 'HALLMARK_MYC'}


def test_load_reference_sets_long_table(tmp_path):
    """Test loading long set tables."""
    path = tmp_path / "sets.tsv"
    path.write_text(
        "set_name\tfeature_id\n"
        "P53\tTP53\n"
        "P53\tMDM2\n"
        "MYC\tMYC\n"
    )
    sets = load_reference_sets(path)
    assert sets == {'P53': {'TP53', 'MDM2'}, 'MYC': {'MYC'}}


def test_load_node_list(tmp_path):
    """Plain lists and tables with a node column are both read."""
    plain = tmp_path / "nodes.txt"
    plain.write_text("EGFR\nTP53\n\nEGFR\nMYC\n")
    assert load_node_list(plain) == ['EGFR', 'TP53', 'MYC']

    table = tmp_path / "nodes.tsv"
    table.write_text("node\tactivity\nEGFR\t1\nTP53\t-1\n")
    assert load_node_list(table) == ['EGFR', 'TP53']


def test_row_zero_fractions():
    """Zero fraction per row ignores NaN."""
    values = np.array([
        [0.0, 0.0, 1.0, 2.0],
        [1.0, 2.0, 3.0, 4.0],
        [0.0, np.nan, 0.0, 0.0],
    ])
    fractions = _row_zero_fractions(values)
    assert fractions.tolist() == [0.5, 0.0, 0.75]


def test_zero_fraction(matrix_file):
    df = zero_fraction(load_feature_matrix(matrix_file))
    assert df['zero_fraction'].to_list() == [0.0, 0.5, 0.75, 0.0]


def test_filter_sparse_features(matrix_file):
    """Features with half or more zero values are dropped."""
    matrix = load_feature_matrix(matrix_file)

    filtered = filter_sparse_features(matrix, max_zero_fraction=0.5)
    assert filtered['feature_id'].to_list() == ['TP53', 'MYC']

    filtered = filter_sparse_features(matrix, max_zero_fraction=0.8)
    assert filtered['feature_id'].to_list() == ['TP53', 'EGFR', 'KRAS', 'MYC']

    empty = matrix.head(0)
    assert filter_sparse_features(empty).height == 0


def test_align_samples(sample_matrix):
    """Only shared samples are kept, in matrix order."""
    response = pl.DataFrame({
        'sample_id': ['s3', 's1', 's9', 's2'],
        'response': [3.0, 1.0, 9.0, None],
    })
    matrix, aligned = align_samples(sample_matrix, response)

    assert matrix.columns == ['feature_id', 's1', 's3']
    assert aligned['sample_id'].to_list() == ['s1', 's3']
    assert aligned['response'].to_list() == [1.0, 3.0]


def test_align_samples_no_overlap(sample_matrix):
    response = pl.DataFrame({'sample_id': ['x1'], 'response': [1.0]})
    with pytest.raises(AlignmentError):
        align_samples(sample_matrix, response)


def test_select_query_features():
    """Query selection by adjusted p-value, direction and cap."""
    associations = [
        AssociationResult('A', 5.0, 1e-5, 1e-4),
        AssociationResult('B', 2.0, 0.01, 0.02),
        AssociationResult('C', 0.5, 0.6, 0.7),
        AssociationResult('D', -6.0, 1e-6, 1e-5),
    ]

    assert select_query_features(associations) == ['D', 'A', 'B']
    assert select_query_features(associations, direction='positive') == ['A', 'B']
    assert select_query_features(associations, direction='negative') == ['D']
    assert select_query_features(associations, top_n=1) == ['D']
    assert select_query_features(associations, fdr_threshold=0.01) == ['D', 'A']

    with pytest.raises(ValueError):
        select_query_features(associations, direction='sideways')
