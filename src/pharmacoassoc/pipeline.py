"""Main pipeline implementation for drug-response association analysis."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import polars as pl

from pharmacoassoc.config import PipelineConfig
from pharmacoassoc.data import (
    align_samples,
    filter_sparse_features,
    list_drugs,
    load_drug_response,
    load_feature_matrix,
    load_reference_sets,
    select_query_features,
    zero_fraction,
)
from pharmacoassoc.errors import ExternalToolError
from pharmacoassoc.external import (
    ExternalTool,
    contextualize_network,
    infer_tf_activity,
    measurements_from_associations,
)
from pharmacoassoc.stats import (
    associate_features,
    associations_to_frame,
    enrichment_to_frame,
    hypergeometric_enrichment,
)
from pharmacoassoc.utils import ensure_dir

# Feature kind -> input key of its matrix
FEATURE_KINDS = {
    'genes': 'expression_file',
    'tfs': 'tf_activity_file',
    'pathways': 'pathway_activity_file',
}


def _clean_for_json(item):
    """Convert numpy types to Python natives for json.dump."""
    if isinstance(item, dict):
        return {k: _clean_for_json(v) for k, v in item.items()}
    elif isinstance(item, (list, tuple)):
        return [_clean_for_json(i) for i in item]
    elif isinstance(item, np.integer):
        return int(item)
    elif isinstance(item, np.floating):
        return float(item)
    elif isinstance(item, np.ndarray):
        return _clean_for_json(item.tolist())
    elif isinstance(item, np.bool_):
        return bool(item)
    return item


class DrugResponsePipeline:
    """Associate gene, TF and pathway activity with a drug response, then test for enrichment."""

    def __init__(self, config_path: str):
        """Initialise the pipeline with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = PipelineConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.results: Dict[str, Any] = {}
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if isinstance(file_path, (str, bytes, os.PathLike)) and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        columns = self.config.response_columns
        self.drug = self.config.drug
        if self.drug is None:
            drugs = list_drugs(self.config.input_files['response_file'], drug_col=columns['drug_col'])
            if len(drugs) != 1:
                raise ValueError(f"No drug selected (analysis.drug) and the response table holds {len(drugs)} drugs")
            self.drug = drugs[0]

        self.response = load_drug_response(
            self.config.input_files['response_file'],
            drug=self.drug,
            **columns
        )

        self.matrices: Dict[str, pl.DataFrame] = {}
        for kind, key in FEATURE_KINDS.items():
            if key in self.config.input_files:
                self.matrices[kind] = load_feature_matrix(self.config.input_files[key])
                self.logger.info(
                    f"Loaded {kind} matrix: {self.matrices[kind].height} features x "
                    f"{self.matrices[kind].width - 1} samples"
                )

        self.reference_sets = load_reference_sets(
            self.config.input_files['reference_sets_file'],
            min_set_size=self.config.min_set_size,
            max_set_size=self.config.max_set_size
        )
        self.logger.info(f"Loaded {len(self.reference_sets)} reference sets")

        self.logger.debug("Finished loading input data files")

    def _infer_tf_activities(self) -> pl.DataFrame:
        settings = self.config.get_tool_settings('tf_inference')
        tool = ExternalTool(settings['command'], timeout=settings['timeout'], name="TF activity inference")
        return infer_tf_activity(
            self.matrices['genes'],
            self.config.input_files['regulons_file'],
            tool
        )

    def run_associations(self, kind: str, matrix: pl.DataFrame) -> Dict[str, Any]:
        """Filter, align and associate one feature matrix with the response.

        Args:
            kind: Feature kind label ('genes', 'tfs', 'pathways')
            matrix: Feature matrix

        Returns:
            Dictionary with 'results', 'excluded' and 'n_tested'
        """
        self.logger.info(f"Associating {kind} with the response")
        filtered = filter_sparse_features(matrix, max_zero_fraction=self.config.max_zero_fraction)
        aligned_matrix, aligned_response = align_samples(filtered, self.response)

        if self.config.output_config.get('save_intermediate', False):
            intermediate_path = ensure_dir(self.config.get_output_path('intermediate'))
            zero_fraction(matrix).write_csv(intermediate_path / f"{kind}_zero_fraction.tsv", separator='\t')
            aligned_response.write_csv(intermediate_path / f"{kind}_response.tsv", separator='\t')

        results, excluded = associate_features(
            aligned_matrix,
            aligned_response,
            correction_method=self.config.correction_method,
            num_threads=self.config.num_threads,
            desc=f"Fitting {kind}"
        )

        n_significant = sum(r.adjusted_p_value < self.config.alpha for r in results)
        self.logger.info(
            f"{kind}: {len(results)} tested, {len(excluded)} excluded, "
            f"{n_significant} with adjusted p < {self.config.alpha}"
        )
        return {'results': results, 'excluded': excluded, 'n_tested': len(results)}

    def run(self):
        """Run the drug-response association pipeline."""
        self.logger.info("Starting drug-response association pipeline")
        start_time = time.time()

        matrices = dict(self.matrices)
        if 'tfs' not in matrices and self.config.run_tf_inference:
            self.logger.info("Inferring TF activities with the external tool")
            matrices['tfs'] = self._infer_tf_activities()

        # Step 1: one association run per feature kind
        associations = {}
        for kind in FEATURE_KINDS:
            if kind in matrices:
                associations[kind] = self.run_associations(kind, matrices[kind])
        self.results['associations'] = associations

        # Step 2: enrichment of the genes associated with the response
        query_genes = select_query_features(
            associations['genes']['results'],
            fdr_threshold=self.config.query_fdr,
            top_n=self.config.query_top_n,
            direction=self.config.query_direction
        )
        self.results['query_genes'] = query_genes
        self.results['gene_enrichment'] = hypergeometric_enrichment(
            query_genes,
            self.reference_sets,
            correction_method=self.config.correction_method
        )

        # Step 3: optional network contextualization of the TF statistics
        if self.config.run_solver:
            if 'tfs' not in associations or not associations['tfs']['results']:
                self.logger.warning("Network solver requested but no TF associations available; skipping")
            else:
                self._run_network_step(associations['tfs']['results'])

        self.logger.info("Saving results")
        self.save_results()

        elapsed_time = time.time() - start_time
        self.logger.info(f"Pipeline completed in {elapsed_time:.2f} seconds")
        return self.results

    def _run_network_step(self, tf_results):
        """Hand TF statistics to the solver and test its active nodes for enrichment."""
        settings = self.config.get_tool_settings('solver')
        tool = ExternalTool(settings['command'], timeout=settings['timeout'], name="network solver")
        measurements = measurements_from_associations(
            tf_results,
            top_n=self.config.solver_config.get('top_n_measurements')
        )

        try:
            nodes = contextualize_network(measurements, self.config.input_files['network_file'], tool)
        except ExternalToolError as e:
            self.logger.error(f"Network solver failed, skipping node enrichment: {str(e)}")
            return

        self.results['active_nodes'] = nodes
        self.results['network_enrichment'] = hypergeometric_enrichment(
            nodes,
            self.reference_sets,
            correction_method=self.config.correction_method
        )

    def summary(self) -> Dict[str, Any]:
        """Counts and top hits of the last run."""
        summary = {
            'drug': self.drug,
            'n_samples': self.response.height,
            'associations': {},
        }
        for kind, outcome in self.results.get('associations', {}).items():
            results = outcome['results']
            summary['associations'][kind] = {
                'n_tested': outcome['n_tested'],
                'n_excluded': len(outcome['excluded']),
                'excluded': outcome['excluded'],
                'n_significant': sum(r.adjusted_p_value < self.config.alpha for r in results),
                'top_positive': [r.feature_id for r in results[:5]],
            }
        if 'query_genes' in self.results:
            summary['n_query_genes'] = len(self.results['query_genes'])
        for key in ('gene_enrichment', 'network_enrichment'):
            if key in self.results:
                enriched = [r for r in self.results[key] if r.adjusted_p_value < self.config.alpha]
                summary[key] = {
                    'n_sets': len(self.results[key]),
                    'n_significant': len(enriched),
                    'top_sets': [r.set_name for r in self.results[key][:5]],
                }
        if 'active_nodes' in self.results:
            summary['n_active_nodes'] = len(self.results['active_nodes'])
        return summary

    def save_results(self, output_dir: Optional[str] = None):
        """Save analysis results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if not self.results:
            self.logger.warning("No results to save. Run the pipeline first.")
            return

        output_path = Path(output_dir) if output_dir is not None else self.config.get_output_path()
        data_path = ensure_dir(output_path / 'data')
        written: List[str] = []

        # 1. Association tables, ordered by descending statistic
        for kind, outcome in self.results.get('associations', {}).items():
            path = data_path / f"{kind}_associations.tsv"
            associations_to_frame(outcome['results'], alpha=self.config.alpha).write_csv(path, separator='\t')
            written.append(path.name)

        # 2. Enrichment tables, ordered by ascending p-value
        for key in ('gene_enrichment', 'network_enrichment'):
            if key in self.results:
                path = data_path / f"{key}.tsv"
                enrichment_to_frame(self.results[key]).write_csv(path, separator='\t')
                written.append(path.name)

        # 3. Feature lists handed to the enrichment tests
        if 'query_genes' in self.results:
            (data_path / 'query_genes.txt').write_text(''.join(f"{g}\n" for g in self.results['query_genes']))
            written.append('query_genes.txt')
        if 'active_nodes' in self.results:
            (data_path / 'active_nodes.txt').write_text(''.join(f"{n}\n" for n in self.results['active_nodes']))
            written.append('active_nodes.txt')

        # 4. Run summary and configuration
        with open(data_path / 'run_summary.json', 'w') as f:
            json.dump(_clean_for_json(self.summary()), f, indent=2)
        with open(data_path / 'pipeline_config.json', 'w') as f:
            json.dump(_clean_for_json(self.config.as_dict()), f, indent=2)
        self.config.save_config(data_path / 'pipeline_config.toml')
        written.extend(['run_summary.json', 'pipeline_config.json', 'pipeline_config.toml'])
        self.logger.info(f"Saved {len(written)} result files to {data_path}")

        # 5. README with explanation of output files
        readme_file = output_path / 'README.md'
        with open(readme_file, 'w') as f:
            f.write("# Drug Response Association Results\n\n")
            f.write(f"Analysis completed on {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            f.write(f"Drug: {self.drug}\n\n")
            f.write("## Files\n\n")
            descriptions = {
                'genes_associations.tsv': "Gene expression vs response, by descending t-statistic",
                'tfs_associations.tsv': "TF activity vs response, by descending t-statistic",
                'pathways_associations.tsv': "Pathway activity vs response, by descending t-statistic",
                'gene_enrichment.tsv': "Reference sets over-represented among the query genes",
                'network_enrichment.tsv': "Reference sets over-represented among the solver's active nodes",
                'query_genes.txt': "Genes passed to the enrichment test",
                'active_nodes.txt': "Active nodes returned by the network solver",
                'run_summary.json': "Counts and top hits of this run",
                'pipeline_config.json': "Configuration used for this analysis",
                'pipeline_config.toml': "Configuration file to rerun this analysis",
            }
            for name in written:
                f.write(f"- `data/{name}`: {descriptions.get(name, '')}\n")
            f.write("\nAdjusted p-values are corrected for multiple testing within each table "
                    f"(method: {self.config.correction_method}).\n")

        self.logger.info(f"Saved README to {readme_file}")
