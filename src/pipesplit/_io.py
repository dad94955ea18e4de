"""Loading and saving models, cut specifications, artifacts and schedules."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import onnx
import tomli_w

from ._cut import CutSpecification
from ._errors import InvalidSpecificationError
from ._partition import DEFAULT_PREFIX, artifact_path

if TYPE_CHECKING:
    from onnx import ModelProto

    from ._partition import PartitionResult
    from ._schedule import PipelineSchedule

logger = logging.getLogger(__name__)


def load_model(path: Path | str) -> ModelProto:
    """Load an ONNX model from disk."""
    path = Path(path)
    model = onnx.load(str(path))
    logger.debug(f"Loaded model '{model.graph.name}' ({len(model.graph.node)} nodes) from {path}")
    return model


def load_cut_spec(path: Path | str) -> CutSpecification:
    """Load a cut specification from a TOML file.

    The file holds one ``[[stages]]`` table per stage with ``fw`` and ``bw``
    sub-tables::

        [[stages]]
        fw.nodes = ["A"]
        fw.sync_outputs = ["A_out"]

        [[stages]]
        fw.nodes = ["B", "C"]
        fw.sync_inputs = ["A_out"]

    Raises:
        InvalidSpecificationError: If the file is not valid TOML or not a valid cut.

    """
    path = Path(path)
    with path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid TOML in {path}: {e}"
            raise InvalidSpecificationError(msg) from e
    cut = CutSpecification.from_dict(data)
    logger.debug(f"Loaded cut specification with {cut.num_stages} stage(s) from {path}")
    return cut


def save_cut_spec(cut: CutSpecification, path: Path | str) -> None:
    """Write a cut specification as TOML, omitting empty lists."""
    data = cut.model_dump(mode="python", exclude_defaults=True)
    path = Path(path)
    with path.open("wb") as f:
        tomli_w.dump(_to_toml(data), f)
    logger.debug(f"Exported cut specification to {path}")


def save_artifacts(
    result: PartitionResult,
    output_dir: Path | str,
    prefix: str = DEFAULT_PREFIX,
) -> list[Path]:
    """Write every stage artifact as ``<output_dir>/<prefix><stage>.onnx``.

    Either all artifacts are written or none are.
    """
    return result.save(output_dir, prefix)


def load_artifacts(output_dir: Path | str, num_stages: int, prefix: str = DEFAULT_PREFIX) -> list[ModelProto]:
    """Load stage artifacts written by ``save_artifacts``.

    Raises:
        FileNotFoundError: If a stage file is missing.

    """
    return [load_model(artifact_path(Path(output_dir), stage, prefix)) for stage in range(num_stages)]


def count_artifacts(output_dir: Path | str, prefix: str = DEFAULT_PREFIX) -> int:
    """Number of consecutive stage files ``<prefix>0.onnx``, ``<prefix>1.onnx``, ... in ``output_dir``."""
    count = 0
    while artifact_path(Path(output_dir), count, prefix).is_file():
        count += 1
    return count


def _to_toml(value: Any) -> Any:
    """Convert tuples to lists recursively for tomli_w."""
    if isinstance(value, dict):
        return {str(k): _to_toml(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_toml(v) for v in value]
    return value


def export_schedule(schedule: PipelineSchedule, path: Path | str) -> None:
    """Write a pipeline schedule (invocation orders and event tokens) as TOML."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        tomli_w.dump(_to_toml(schedule.to_dict()), f)
    logger.debug(f"Exported schedule to {path}")
