"""Configuration handling for the drug-response association pipeline."""

import logging
import tomli
import tomli_w
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

REQUIRED_SECTIONS = ['input', 'output', 'analysis']
REQUIRED_INPUT_FILES = ['expression_file', 'response_file', 'reference_sets_file']
OPTIONAL_INPUT_FILES = [
    'tf_activity_file',
    'pathway_activity_file',
    'regulons_file',
    'network_file',
]
VALID_DIRECTIONS = ('both', 'positive', 'negative')


class PipelineConfig:
    """Configuration class for the drug-response association pipeline."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except (tomli.TOMLDecodeError, OSError) as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        missing_sections = [section for section in REQUIRED_SECTIONS if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})
        missing_files = [key for key in REQUIRED_INPUT_FILES if key not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        unknown = [key for key in self.input_files
                   if key not in REQUIRED_INPUT_FILES and key not in OPTIONAL_INPUT_FILES]
        if unknown:
            logger.warning(f"Ignoring unknown input keys: {', '.join(unknown)}")

        self.output_config = self.config.get("output", {})
        self.analysis_params = self.config.get("analysis", {})
        self.response_config = self.config.get("response", {})
        self.tf_inference_config = self.config.get("tf_inference", {})
        self.solver_config = self.config.get("solver", {})

        self.drug = self.analysis_params.get("drug")
        self.max_zero_fraction = float(self.analysis_params.get("max_zero_fraction", 0.5))
        if not 0.0 < self.max_zero_fraction <= 1.0:
            raise ValueError(f"max_zero_fraction must be in (0, 1], got {self.max_zero_fraction}")

        self.correction_method = self.analysis_params.get("correction_method", "fdr_bh")
        self.alpha = float(self.analysis_params.get("alpha", 0.05))
        self.query_fdr = float(self.analysis_params.get("query_fdr", self.alpha))

        # 0 disables the cap
        self.query_top_n = int(self.analysis_params.get("query_top_n", 0)) or None
        self.query_direction = self.analysis_params.get("query_direction", "both")
        if self.query_direction not in VALID_DIRECTIONS:
            raise ValueError(
                f"query_direction must be one of {', '.join(VALID_DIRECTIONS)}, got {self.query_direction}"
            )

        # Number of worker processes for the association step, default to 1 if not specified
        self.num_threads = max(1, int(self.analysis_params.get("num_threads", 1)))

        self.min_set_size = int(self.analysis_params.get("min_set_size", 0))
        self.max_set_size = int(self.analysis_params.get("max_set_size", 0)) or None

    @property
    def response_columns(self) -> Dict[str, str]:
        """Column names of the long drug-response table."""
        return {
            'sample_col': self.response_config.get("sample_column", "sample_id"),
            'drug_col': self.response_config.get("drug_column", "drug"),
            'value_col': self.response_config.get("value_column", "response"),
        }

    @property
    def run_tf_inference(self) -> bool:
        """Whether TF activities are inferred by the external tool."""
        return bool(self.tf_inference_config.get("command")) and 'regulons_file' in self.input_files

    @property
    def run_solver(self) -> bool:
        """Whether the network-contextualization solver is configured and enabled."""
        return (
            self.solver_config.get("run", True)
            and bool(self.solver_config.get("command"))
            and 'network_file' in self.input_files
        )

    def get_tool_settings(self, section: str) -> Dict[str, Any]:
        """Get command and timeout of an external tool section.

        Args:
            section: Either 'tf_inference' or 'solver'

        Returns:
            Dictionary with 'command' (list of arguments) and 'timeout' (seconds or None)
        """
        settings = self.config.get(section, {})
        command = settings.get("command", [])
        if isinstance(command, str):
            command = command.split()
        return {
            'command': list(command),
            'timeout': settings.get("timeout"),
        }

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("directory", self.output_config.get("output_dir", "results"))
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def as_dict(self) -> Dict[str, Any]:
        """Resolved settings, for the run record."""
        return {
            'input_files': {k: str(v) for k, v in self.input_files.items()},
            'output': self.output_config,
            'drug': self.drug,
            'max_zero_fraction': self.max_zero_fraction,
            'correction_method': self.correction_method,
            'alpha': self.alpha,
            'query_fdr': self.query_fdr,
            'query_top_n': self.query_top_n,
            'query_direction': self.query_direction,
            'num_threads': self.num_threads,
            'min_set_size': self.min_set_size,
            'max_set_size': self.max_set_size,
            'run_tf_inference': self.run_tf_inference,
            'run_solver': self.run_solver,
        }

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)

