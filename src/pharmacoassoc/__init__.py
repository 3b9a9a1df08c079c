"""
Drug Response Association Pipeline
==================================

A Python package for associating gene, transcription factor and pathway
activity with drug response, and testing the associated features for
gene-set enrichment.
"""

from .pipeline import DrugResponsePipeline
from .config import PipelineConfig
from .errors import (
    PharmacoAssocError as PharmacoAssocError,
    AlignmentError as AlignmentError,
    DegenerateFeatureError as DegenerateFeatureError,
    EmptyUniverseError as EmptyUniverseError,
    ExternalToolError as ExternalToolError,
)
from .data import (
    load_feature_matrix as load_feature_matrix,
    load_drug_response as load_drug_response,
    load_reference_sets as load_reference_sets,
    load_node_list as load_node_list,
    filter_sparse_features as filter_sparse_features,
    align_samples as align_samples,
    select_query_features as select_query_features,
)
from .stats import (
    AssociationResult as AssociationResult,
    EnrichmentResult as EnrichmentResult,
    FeatureAssociationPipeline as FeatureAssociationPipeline,
    EnrichmentTester as EnrichmentTester,
    associate_features as associate_features,
    hypergeometric_enrichment as hypergeometric_enrichment,
    perform_fdr_analysis as perform_fdr_analysis,
)
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "DrugResponsePipeline",
    "PipelineConfig",
    "PharmacoAssocError",
    "AlignmentError",
    "DegenerateFeatureError",
    "EmptyUniverseError",
    "ExternalToolError",
    "load_feature_matrix",
    "load_drug_response",
    "load_reference_sets",
    "load_node_list",
    "filter_sparse_features",
    "align_samples",
    "select_query_features",
    "AssociationResult",
    "EnrichmentResult",
    "FeatureAssociationPipeline",
    "EnrichmentTester",
    "associate_features",
    "hypergeometric_enrichment",
    "perform_fdr_analysis",
    "setup_logging",
    "ensure_dir",
]
