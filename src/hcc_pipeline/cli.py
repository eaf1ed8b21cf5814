"""CLI entry point using Hydra.

Usage examples:
  hcc input_file=book.txt mode=run
  hcc input_file=book.txt mode=hcc custom_instructions="compress to 20,000 words"
  hcc input_file=book.txt mode=structure
  hcc input_file=book.txt mode=budget custom_instructions="expand to 3k words"
  hcc mode=status job_id=<id>
  hcc mode=resume job_id=<id> chunk_delay_ms=0
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_azure_fallbacks
from .errors import JobNotFoundError
from .logging_config import RichCallbacks, console, setup_logging
from .models import CoherenceReport, JobOptions, PipelineResult, ProjectConfig

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → Pydantic ProjectConfig bridge
# ---------------------------------------------------------------------------


def _to_project_config(cfg: DictConfig) -> ProjectConfig:
    """Convert a Hydra *DictConfig* to a Pydantic ``ProjectConfig``.

    CLI-only keys (``mode``, ``job_id``, etc.) are stripped before validation.
    Azure credential env-var fallbacks are applied afterwards.
    """
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ProjectConfig.model_validate(container)
    return apply_azure_fallbacks(config)


def _read_input(config: ProjectConfig) -> str:
    if not config.input_file:
        console.print("[red]input_file is required for this mode[/]")
        sys.exit(1)
    path = Path(config.input_file)
    if not path.exists():
        console.print(f"[red]Input file not found: {path}[/]")
        sys.exit(1)
    return path.read_text(encoding="utf-8")


def _require_job_id(cfg: DictConfig) -> str:
    job_id = cfg.get("job_id")
    if not job_id:
        console.print("[red]job_id is required for this mode[/]")
        sys.exit(1)
    return str(job_id)


def _write_outputs(config: ProjectConfig, prefix: str, outputs: dict[str, str]) -> None:
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    for name, text in outputs.items():
        path = output_dir / f"{prefix}_{name}.txt"
        path.write_text(text, encoding="utf-8")
        console.print(f"  Written: {path}")


def _print_coherence(report: CoherenceReport | None) -> None:
    if report is None:
        return
    verdict = "[green]PASSED[/]" if report.passed else "[yellow]FAILED[/]"
    console.print(f"  Coherence: {verdict} ({report.summary.errors} error(s), {report.summary.warnings} warning(s))")
    if report.repair_attempted:
        console.print(f"  Repair: {'restored missing commitments' if report.repaired else 'unsuccessful'}")
    for v in report.violations:
        console.print(f"    [{v.severity.value}] {v.description}")


def _report_job(config: ProjectConfig, result: PipelineResult) -> None:
    _write_outputs(config, result.job_id, result.outputs)
    _print_coherence(result.coherence)
    if result.success:
        console.print(f"\n[bold green]Job {result.job_id} finished: {result.status.value}[/]")
    else:
        console.print(f"\n[bold red]Job {result.job_id} ended: {result.status.value}[/]")
        for err in result.errors:
            console.print(f"  [red]{err}[/]")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _run_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    text = _read_input(config)

    from .pipeline import PipelineService

    service = PipelineService(config, callbacks=RichCallbacks())
    job_id = service.create_job(text, JobOptions(
        custom_instructions=config.custom_instructions,
        target_audience=config.target_audience,
        objective=config.objective,
    ))
    console.print(f"[bold]Starting four-stage job {job_id}...[/]")
    _report_job(config, service.run_job(job_id))


def _hcc_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    text = _read_input(config)

    from .hcc import HccPipeline

    pipeline = HccPipeline(config, callbacks=RichCallbacks())
    console.print("[bold]Starting HCC pass...[/]")
    result = pipeline.process(text, config.custom_instructions)

    if not result.success:
        console.print(f"\n[bold red]HCC pass failed:[/] {result.error}")
        sys.exit(1)
    _write_outputs(config, config.project_name, {"hcc": result.output})
    _print_coherence(result.coherence)
    console.print(f"\n[bold green]HCC pass finished: {result.status.value if result.status else 'complete'}[/]")


def _structure_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    text = _read_input(config)

    from .tools.structure import detect_structure

    structure = detect_structure(
        text,
        part_size=config.virtual_part_size,
        chapter_size=config.virtual_chapter_size,
    )
    source = "headings" if structure.headings_found else "virtual split"
    console.print(f"\n[bold]Structure[/] ({structure.total_words} words, {source}):")
    for part in structure.parts:
        console.print(f"  {part.title}  [dim][{part.start}, {part.end})[/]")
        for chapter in part.chapters:
            console.print(f"    - {chapter.title}  [dim][{chapter.start}, {chapter.end}) {chapter.size} words[/]")


def _budget_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    text = _read_input(config)

    from .tools.length_budget import chunk_bounds, length_config_from_instructions
    from .tools.text import count_words

    words = count_words(text)
    lc = length_config_from_instructions(words, config.custom_instructions)
    target, low, high = chunk_bounds(config.target_chunk_size, lc.length_ratio)
    console.print(f"\n[bold]Length budget[/] for {words} words:")
    console.print(f"  Target: {lc.target_min_words}-{lc.target_max_words} words (mid {lc.target_mid_words})")
    console.print(f"  Ratio: {lc.length_ratio:.3f} ({lc.length_mode.value})")
    console.print(f"  Full {config.target_chunk_size}-word chunk: target {target} ({low}-{high})")


def _status_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    job_id = _require_job_id(cfg)

    from .pipeline import PipelineService

    try:
        status = PipelineService(config).get_status(job_id)
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    console.print(f"\n[bold]Job {status.job_id}[/]")
    console.print(f"  Status: {status.status.value}")
    console.print(f"  Stage: {status.stage} ({status.stage_status.value})")
    for name, count in status.word_counts.items():
        console.print(f"  {name}: {count} words")
    for v in status.violations:
        console.print(f"    [{v.severity.value}] {v.description}")
    if status.error:
        console.print(f"  [red]Error: {status.error}[/]")


def _resume_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    job_id = _require_job_id(cfg)

    from .pipeline import PipelineService

    service = PipelineService(config, callbacks=RichCallbacks())
    try:
        result = service.resume_job(job_id)
    except JobNotFoundError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)
    _report_job(config, result)


_MODE_DISPATCH: dict[str, Any] = {
    "run": _run_mode,
    "hcc": _hcc_mode,
    "structure": _structure_mode,
    "budget": _budget_mode,
    "status": _status_mode,
    "resume": _resume_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "run")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
