import logging
from pathlib import Path
from typing import Annotated

import numpy as np
import typer
from onnx import ModelProto, helper
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from pipesplit._cut import CutSpecification, Direction, StageAssignment
from pipesplit._errors import PartitionError, ScheduleError
from pipesplit._events import TokenAllocator
from pipesplit._io import count_artifacts, export_schedule, load_artifacts, load_cut_spec, load_model, save_artifacts
from pipesplit._ir import ComputationGraph
from pipesplit._partition import PartitionResult, split_model
from pipesplit._runtime import run_pipeline, run_reference
from pipesplit._schedule import PipelineSchedule, SyncLayout, build_schedule

from .config import ConfigError, PipesplitConfig, get_config

app = typer.Typer()

logger = logging.getLogger(__name__)
# Console for stderr (info/errors)
err_console = Console(stderr=True)
# Console for stdout (results)
out_console = Console()


@app.callback()
def callback(
    *,
    verbose: bool = typer.Option(default=False, help="Enable verbose output"),
) -> None:
    """Pipesplit CLI."""
    log_level = logging.DEBUG if verbose else logging.INFO

    # Configure rich logging handler to output to stderr
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=err_console,
                show_time=False,
                show_path=verbose,
                rich_tracebacks=True,
            ),
        ],
    )


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[red]✗ {escape(message)}[/red]")
    err_console.print()
    return typer.Exit(code=1)


def _load_config() -> PipesplitConfig:
    try:
        return get_config()
    except ConfigError as e:
        raise _fail(str(e)) from e


def _resolve(value: Path | None, configured: Path | None, what: str) -> Path:
    path = value if value is not None else configured
    if path is None:
        msg = f"No {what} given and none configured in [tool.pipesplit]"
        raise _fail(msg)
    return path


def _load_inputs(model_path: Path, cut_path: Path) -> tuple[ModelProto, CutSpecification]:
    err_console.print(f"[cyan]Loading model from:[/cyan] {model_path}")
    err_console.print(f"[cyan]Loading cut specification from:[/cyan] {cut_path}")
    try:
        return load_model(model_path), load_cut_spec(cut_path)
    except (OSError, PartitionError) as e:
        raise _fail(str(e)) from e


def _split(model: ModelProto, cut: CutSpecification) -> PartitionResult:
    err_console.print("[cyan]Partitioning graph...[/cyan]")
    try:
        return split_model(model, cut)
    except PartitionError as e:
        raise _fail(str(e)) from e


def _schedule(layouts: list[SyncLayout], num_microbatches: int, range_size: int) -> PipelineSchedule:
    err_console.print(f"[cyan]Scheduling {num_microbatches} microbatch(es)...[/cyan]")
    try:
        schedule = build_schedule(layouts, num_microbatches, TokenAllocator(range_size=range_size))
        schedule.validate()
    except ScheduleError as e:
        raise _fail(str(e)) from e
    return schedule


def _stage_table(result: PartitionResult) -> Table:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Stage", style="bold")
    table.add_column("Nodes", justify="right", style="yellow")
    table.add_column("Sync in", style="dim")
    table.add_column("Sync out", style="dim")
    table.add_column("Events", style="green")

    for artifact, layout in zip(result.artifacts, result.layouts(), strict=True):
        for direction in Direction:
            assignment = StageAssignment(artifact.stage, direction)
            direction_cut = result.cut.direction(assignment)
            events = [slot.input_name for slot in layout.sorted_slots() if slot.assignment == assignment]
            table.add_row(
                str(assignment),
                str(len(direction_cut.nodes)),
                escape(", ".join(direction_cut.sync_inputs)) or "-",
                escape(", ".join(direction_cut.sync_outputs)) or "-",
                escape(", ".join(events)) or "-",
            )
    return table


@app.command()
def check(
    model_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the main ONNX model (default: [tool.pipesplit].model)"),
    ] = None,
    cut_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the cut specification TOML (default: [tool.pipesplit].cut)"),
    ] = None,
) -> None:
    """Check a cut specification against a model without writing anything."""
    err_console.print()
    config = _load_config()
    model, cut = _load_inputs(
        _resolve(model_path, config.model, "model"),
        _resolve(cut_path, config.cut, "cut specification"),
    )
    result = _split(model, cut)
    err_console.print()

    err_console.print(
        Panel(
            _stage_table(result),
            title=f"[bold]Model: {escape(model.graph.name)}[/bold]",
            subtitle=f"[dim]{result.num_stages} stages[/dim]",
            border_style="cyan",
        ),
    )

    err_console.print()
    err_console.print("[green]✓ Cut is valid[/green]")
    err_console.print()


@app.command()
def split(
    model_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the main ONNX model (default: [tool.pipesplit].model)"),
    ] = None,
    cut_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the cut specification TOML (default: [tool.pipesplit].cut)"),
    ] = None,
    *,
    output_dir: Annotated[
        Path | None,
        typer.Option("-o", "--output-dir", help="Directory for the stage artifacts"),
    ] = None,
    prefix: Annotated[
        str | None,
        typer.Option("--prefix", help="File name prefix of the stage artifacts"),
    ] = None,
) -> None:
    """Split a model into event-gated stage artifacts."""
    err_console.print()
    config = _load_config()
    model, cut = _load_inputs(
        _resolve(model_path, config.model, "model"),
        _resolve(cut_path, config.cut, "cut specification"),
    )
    target = _resolve(output_dir, config.output_dir, "output directory")
    result = _split(model, cut)

    err_console.print(f"[cyan]Writing artifacts to:[/cyan] {target}")
    try:
        paths = save_artifacts(result, target, prefix or config.prefix)
    except (OSError, PartitionError) as e:
        raise _fail(str(e)) from e
    err_console.print()

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Artifact")
    table.add_column("Nodes", justify="right", style="yellow")
    table.add_column("Inputs", justify="right")
    table.add_column("Outputs", justify="right")
    for artifact, path in zip(result.artifacts, paths, strict=True):
        table.add_row(
            escape(str(path)),
            str(len(artifact.model.graph.node)),
            str(len(artifact.input_names)),
            str(len(artifact.output_names)),
        )
    err_console.print(Panel(table, title="[bold]Stage Artifacts[/bold]", border_style="cyan"))

    err_console.print()
    err_console.print("[green]✓ Split complete[/green]")
    err_console.print()


@app.command()
def schedule(
    artifacts_dir: Annotated[
        Path | None,
        typer.Argument(help="Directory holding the stage artifacts (default: [tool.pipesplit].output_dir)"),
    ] = None,
    *,
    microbatches: Annotated[
        int,
        typer.Option("-m", "--microbatches", min=1, help="Number of microbatches"),
    ] = 4,
    output: Annotated[
        Path | None,
        typer.Option("-o", "--output", help="Path to output schedule TOML file"),
    ] = None,
    prefix: Annotated[
        str | None,
        typer.Option("--prefix", help="File name prefix of the stage artifacts"),
    ] = None,
    range_size: Annotated[
        int | None,
        typer.Option("--range-size", min=1, help="Number of event tokens per range"),
    ] = None,
) -> None:
    """Assign 1F1B event tokens for a set of stage artifacts."""
    err_console.print()
    config = _load_config()
    directory = _resolve(artifacts_dir, config.output_dir, "artifact directory")
    prefix = prefix or config.prefix

    num_stages = count_artifacts(directory, prefix)
    if num_stages == 0:
        msg = f"No '{prefix}<n>.onnx' artifacts found in {directory}"
        raise _fail(msg)
    err_console.print(f"[cyan]Loading {num_stages} artifact(s) from:[/cyan] {directory}")
    models = load_artifacts(directory, num_stages, prefix)
    try:
        layouts = [SyncLayout.from_model(stage, model) for stage, model in enumerate(models)]
    except ValueError as e:
        raise _fail(str(e)) from e

    plan = _schedule(layouts, microbatches, range_size or config.range_size)
    err_console.print()

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Stage", style="bold")
    table.add_column("Order")
    for stage, order in enumerate(plan.orders):
        table.add_row(str(stage), " ".join(str(step) for step in order))
    err_console.print(Panel(table, title="[bold]1F1B Schedule[/bold]", border_style="cyan"))

    if output is not None:
        err_console.print(f"[cyan]Exporting schedule to:[/cyan] {output}")
        export_schedule(plan, output)

    err_console.print()
    err_console.print("[green]✓ Schedule is valid[/green]")
    err_console.print()


def random_feeds(model: ModelProto, num_microbatches: int, seed: int = 0) -> list[dict[str, np.ndarray]]:
    """Random values for every graph input of ``model``, one dict per microbatch.

    Raises:
        ValueError: If an input has a dynamic or unknown shape.

    """
    rng = np.random.default_rng(seed)
    specs: list[tuple[str, np.dtype, tuple[int, ...]]] = []
    initializers = {t.name for t in model.graph.initializer}
    for vi in model.graph.input:
        if vi.name in initializers:
            continue
        tensor_type = vi.type.tensor_type
        static = tensor_type.HasField("shape") and all(d.HasField("dim_value") and d.dim_value > 0 for d in tensor_type.shape.dim)
        if not static:
            msg = f"Input '{vi.name}' needs a static shape to generate random values"
            raise ValueError(msg)
        dims = tuple(d.dim_value for d in tensor_type.shape.dim)
        specs.append((vi.name, helper.tensor_dtype_to_np_dtype(tensor_type.elem_type), dims))

    feeds = []
    for _ in range(num_microbatches):
        feed = {}
        for name, dtype, dims in specs:
            if np.issubdtype(dtype, np.floating):
                feed[name] = rng.standard_normal(dims).astype(dtype)
            elif np.issubdtype(dtype, np.bool_):
                feed[name] = rng.random(dims) > 0.5
            else:
                feed[name] = rng.integers(0, 8, size=dims).astype(dtype)
        feeds.append(feed)
    return feeds


@app.command()
def simulate(
    model_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the main ONNX model (default: [tool.pipesplit].model)"),
    ] = None,
    cut_path: Annotated[
        Path | None,
        typer.Argument(help="Path to the cut specification TOML (default: [tool.pipesplit].cut)"),
    ] = None,
    *,
    microbatches: Annotated[
        int,
        typer.Option("-m", "--microbatches", min=1, help="Number of microbatches"),
    ] = 4,
    seed: Annotated[
        int,
        typer.Option("--seed", help="Seed for the random inputs"),
    ] = 0,
    rtol: Annotated[
        float,
        typer.Option("--rtol", help="Relative tolerance of the comparison"),
    ] = 1e-5,
    atol: Annotated[
        float,
        typer.Option("--atol", help="Absolute tolerance of the comparison"),
    ] = 1e-6,
    timeout: Annotated[
        float,
        typer.Option("--timeout", help="Seconds a single event wait may block"),
    ] = 60.0,
) -> None:
    """Run the stage artifacts as a threaded pipeline and compare against the unsplit model."""
    err_console.print()
    config = _load_config()
    model, cut = _load_inputs(
        _resolve(model_path, config.model, "model"),
        _resolve(cut_path, config.cut, "cut specification"),
    )
    result = _split(model, cut)
    plan = _schedule(result.layouts(), microbatches, config.range_size)

    main = ComputationGraph.from_model(model)
    try:
        feeds = random_feeds(main.model, microbatches, seed)
    except ValueError as e:
        raise _fail(str(e)) from e

    err_console.print("[cyan]Running pipeline...[/cyan]")
    try:
        run = run_pipeline(result, plan, feeds, timeout=timeout)
    except (TimeoutError, ScheduleError) as e:
        raise _fail(str(e)) from e
    err_console.print()

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Microbatch", justify="right")
    table.add_column("Output", style="dim")
    table.add_column("Max abs diff", justify="right")
    table.add_column("Result")

    mismatch = False
    for mb, feed in enumerate(feeds):
        expected = run_reference(model, feed)
        actual = run.outputs(mb)
        for name, value in expected.items():
            if name not in actual:
                table.add_row(str(mb), escape(name), "-", "[red]✗ MISSING[/red]")
                mismatch = True
                continue
            diff = float(np.max(np.abs(np.asarray(actual[name], dtype=np.float64) - value))) if np.size(value) else 0.0
            ok = np.allclose(actual[name], value, rtol=rtol, atol=atol)
            mismatch = mismatch or not ok
            table.add_row(str(mb), escape(name), f"{diff:.3g}", "[green]✓ MATCH[/green]" if ok else "[red]✗ DIFF[/red]")
    err_console.print(Panel(table, title="[bold]Pipeline vs. Reference[/bold]", border_style="cyan"))
    err_console.print()

    if mismatch:
        err_console.print("[red]✗ Pipeline outputs differ from the unsplit model[/red]")
        err_console.print()
        raise typer.Exit(code=1)

    err_console.print("[green]✓ Pipeline outputs match the unsplit model[/green]")
    err_console.print()


def main() -> None:
    app()
