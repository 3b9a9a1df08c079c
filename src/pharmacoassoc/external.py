"""
Wrappers around the external tools the pipeline hands data to.

Regulon-based TF activity inference and network contextualization are not
implemented here. Each is an external command that reads tab-delimited
files and writes one back; this module stages the inputs, runs the command
under a time budget and reads the output.
"""

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import polars as pl

from pharmacoassoc.data import load_feature_matrix, load_node_list
from pharmacoassoc.errors import ExternalToolError
from pharmacoassoc.stats import AssociationResult, FEATURE_COL

logger = logging.getLogger(__name__)


class ExternalTool:
    """An external command driven through tab-delimited files.

    ``command`` is a list of arguments; ``{name}`` placeholders are replaced
    with the paths of the staged inputs, ``{output}`` with the path the
    tool must write, and any extra values passed to ``run``.
    """

    def __init__(self, command: Sequence[str], timeout: Optional[float] = None, name: str = "external tool"):
        if not command:
            raise ValueError(f"No command configured for {name}")
        self.command = list(command)
        self.timeout = timeout
        self.name = name

    def build_command(self, placeholders: Dict[str, str]) -> List[str]:
        try:
            return [arg.format(**placeholders) for arg in self.command]
        except KeyError as e:
            raise ValueError(f"Unknown placeholder {e} in {self.name} command")

    def run(
        self,
        inputs: Dict[str, pl.DataFrame],
        workdir: Union[str, Path],
        output_name: str = "output.tsv",
        extra: Optional[Dict[str, str]] = None
    ) -> Path:
        """
        Stage the inputs, run the command and return the path of its output.

        Args:
            inputs: Placeholder name -> table, each written as ``<name>.tsv``
            workdir: Directory for the staged files and the output
            output_name: File name the tool writes to
            extra: Additional placeholder values (e.g. existing file paths)

        Returns:
            Path of the output file

        Raises:
            ExternalToolError: on a missing executable, non-zero exit, timeout or missing output
        """
        workdir = Path(workdir)
        placeholders = {key: str(value) for key, value in (extra or {}).items()}
        for key, table in inputs.items():
            path = workdir / f"{key}.tsv"
            table.write_csv(path, separator='\t')
            placeholders[key] = str(path)

        output_path = workdir / output_name
        placeholders['output'] = str(output_path)
        cmd = self.build_command(placeholders)

        logger.info(f"Running {self.name}: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout
            )
        except FileNotFoundError:
            raise ExternalToolError(f"{self.name} executable not found: {cmd[0]}")
        except subprocess.TimeoutExpired:
            raise ExternalToolError(f"{self.name} exceeded its time budget of {self.timeout} s")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else "no error output"
            raise ExternalToolError(f"{self.name} exited with status {e.returncode}: {detail}")

        if completed.stdout:
            logger.debug(completed.stdout.strip())

        if not output_path.is_file():
            raise ExternalToolError(f"{self.name} did not write {output_path}")

        return output_path


def infer_tf_activity(
    expression: pl.DataFrame,
    regulons_path: Union[str, Path],
    tool: ExternalTool
) -> pl.DataFrame:
    """
    Score transcription factor activities with an external regulon-based method.

    The command receives ``{expression}`` (features x samples) and
    ``{regulons}`` and must write a TF x sample table to ``{output}``.

    Args:
        expression: Gene expression matrix
        regulons_path: Regulon network file handed to the tool unchanged
        tool: External inference command

    Returns:
        TF activity matrix with a 'feature_id' column
    """
    with tempfile.TemporaryDirectory(prefix="tf_inference_") as workdir:
        output = tool.run(
            {'expression': expression},
            workdir,
            extra={'regulons': str(regulons_path)}
        )
        activities = load_feature_matrix(output)

    logger.info(f"Inferred activities for {activities.height} transcription factors")
    return activities


def measurements_from_associations(
    associations: List[AssociationResult],
    top_n: Optional[int] = None
) -> pl.DataFrame:
    """
    Turn TF association statistics into solver measurements.

    Args:
        associations: TF association results
        top_n: Keep the ``top_n`` TFs with the largest absolute statistic

    Returns:
        DataFrame with 'feature_id' and 'value' columns
    """
    ranked = sorted(associations, key=lambda r: (-abs(r.statistic), r.feature_id))
    if top_n:
        ranked = ranked[:top_n]
    return pl.DataFrame(
        {
            FEATURE_COL: [r.feature_id for r in ranked],
            'value': [r.statistic for r in ranked],
        },
        schema={FEATURE_COL: pl.Utf8, 'value': pl.Float64}
    )


def contextualize_network(
    measurements: pl.DataFrame,
    network_path: Union[str, Path],
    tool: ExternalTool,
    perturbations: Optional[pl.DataFrame] = None
) -> List[str]:
    """
    Run the network-contextualization solver and return its active nodes.

    The command receives ``{measurements}``, ``{network}`` and, when given,
    ``{perturbations}``, and must write the active-node list to ``{output}``.

    Args:
        measurements: DataFrame with 'feature_id' and 'value' columns
        network_path: Prior-knowledge network file handed to the solver unchanged
        tool: External solver command
        perturbations: Optional perturbation table

    Returns:
        Active node identifiers
    """
    inputs = {'measurements': measurements}
    if perturbations is not None:
        inputs['perturbations'] = perturbations

    with tempfile.TemporaryDirectory(prefix="network_solver_") as workdir:
        output = tool.run(inputs, workdir, extra={'network': str(network_path)})
        nodes = load_node_list(output)

    logger.info(f"Solver returned {len(nodes)} active nodes")
    return nodes
