"""Shared fixtures: a small drug-response dataset written to a temporary directory."""

import pytest
from tomli_w import dump as tomli_w_dump

SAMPLES = [f"s{i}" for i in range(1, 9)]
RESPONSE = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0]

EXPRESSION = {
    # Track the response closely
    'G1': [1.1, 2.0, 2.9, 4.2, 5.0, 5.9, 7.1, 8.0],
    'G2': [0.9, 2.1, 3.2, 3.9, 5.1, 6.2, 6.8, 8.1],
    'G3': [2.0, 2.9, 4.1, 5.0, 6.1, 6.9, 8.0, 9.1],
    'G4': [1.2, 1.8, 3.1, 4.1, 4.8, 6.1, 7.2, 7.9],
    # Unrelated to the response
    'G5': [6.0, 4.0, 6.0, 4.0, 6.0, 4.0, 6.0, 4.0],
    'G6': [6.0, 6.0, 4.0, 4.0, 6.0, 6.0, 4.0, 4.0],
    'G7': [6.0, 4.0, 4.0, 6.0, 6.0, 4.0, 4.0, 6.0],
    'G8': [4.0, 6.0, 6.0, 4.0, 6.0, 4.0, 4.0, 6.0],
    # Mostly zeros, removed by the sparse-feature filter
    'G11': [0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 2.0, 3.0],
    # Constant, excluded as degenerate
    'G12': [3.0, 3.0, 3.0, 3.0, 3.0, 3.0, 3.0, 3.0],
}
# Sample measured in the matrices but not in the response table
EXTRA_SAMPLE = {'G1': 4.0, 'G2': 4.0, 'G3': 4.0, 'G4': 4.0, 'G5': 4.0, 'G6': 4.0,
                'G7': 4.0, 'G8': 4.0, 'G11': 0.0, 'G12': 3.0}

TF_ACTIVITY = {
    'TF1': [-1.9, -1.4, -0.8, -0.1, 0.4, 1.1, 1.4, 2.1],
    'TF2': [2.0, 1.6, 0.9, 0.2, -0.3, -0.9, -1.5, -2.2],
    'TF3': [0.5, -0.5, 0.5, -0.5, 0.5, -0.5, 0.5, -0.5],
}

PATHWAY_ACTIVITY = {
    'EGFR': [-2.1, -1.5, -0.9, 0.1, 0.5, 0.9, 1.6, 2.0],
    'MAPK': [1.0, -1.0, -1.0, 1.0, 1.0, -1.0, -1.0, 1.0],
}

GMT = (
    "HALLMARK_A\tgenes tracking the response\tG1\tG2\tG3\tG4\tG9\n"
    "HALLMARK_B\tunrelated genes\tG5\tG6\tG7\tG8\tG10\n"
    "HALLMARK_C\tregulators\tTF1\tTF2\tG5\n"
)


def write_matrix(path, rows, samples=SAMPLES, extra=None):
    header = ['feature_id'] + list(samples) + (['s9'] if extra else [])
    lines = ['\t'.join(header)]
    for feature, values in rows.items():
        fields = [feature] + [str(v) for v in values]
        if extra:
            fields.append(str(extra[feature]))
        lines.append('\t'.join(fields))
    path.write_text('\n'.join(lines) + '\n')
    return path


@pytest.fixture
def dataset_dir(tmp_path):
    """Write expression, activities, response and reference sets to disk."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    write_matrix(data_dir / "expression.tsv", EXPRESSION, extra=EXTRA_SAMPLE)
    write_matrix(data_dir / "tf_activity.tsv", TF_ACTIVITY)
    write_matrix(data_dir / "pathway_activity.tsv", PATHWAY_ACTIVITY)

    lines = ["sample_id\tdrug\tresponse"]
    for sample, value in zip(SAMPLES, RESPONSE):
        lines.append(f"{sample}\tErlotinib\t{value}")
        lines.append(f"{sample}\tOtherDrug\t{10 - value}")
    (data_dir / "drug_response.tsv").write_text('\n'.join(lines) + '\n')

    (data_dir / "hallmarks.gmt").write_text(GMT)
    (data_dir / "network.tsv").write_text("source\tinteraction\ttarget\nTF1\t1\tG1\nTF2\t-1\tG5\n")
    (data_dir / "regulons.tsv").write_text("source\ttarget\tweight\nTF1\tG1\t1\nTF2\tG5\t1\n")

    return data_dir


@pytest.fixture
def base_config(dataset_dir, tmp_path):
    """A configuration dictionary pointing at the dataset."""
    return {
        'input': {
            'expression_file': str(dataset_dir / "expression.tsv"),
            'response_file': str(dataset_dir / "drug_response.tsv"),
            'reference_sets_file': str(dataset_dir / "hallmarks.gmt"),
            'tf_activity_file': str(dataset_dir / "tf_activity.tsv"),
            'pathway_activity_file': str(dataset_dir / "pathway_activity.tsv"),
        },
        'output': {
            'directory': str(tmp_path / "results"),
        },
        'analysis': {
            'drug': 'Erlotinib',
            'max_zero_fraction': 0.5,
            'alpha': 0.05,
            'query_fdr': 0.05,
            'num_threads': 1,
        },
    }


@pytest.fixture
def write_config(tmp_path):
    """Write a configuration dictionary as TOML and return its path."""
    def _write(config, name="config.toml"):
        config_path = tmp_path / name
        with open(config_path, 'wb') as f:
            tomli_w_dump(config, f)
        return config_path
    return _write
