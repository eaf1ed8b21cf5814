"""Rich console setup and pipeline progress helpers."""

from __future__ import annotations

import logging
from typing import Protocol

from rich.console import Console
from rich.logging import RichHandler

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # AG2 and the HTTP clients are chatty at INFO.
    for noisy in ("autogen", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING if not verbose else logging.DEBUG)


logger = logging.getLogger("hcc")


# ---------------------------------------------------------------------------
# Pipeline callbacks protocol
# ---------------------------------------------------------------------------


class PipelineCallbacks(Protocol):
    """Protocol for pipeline progress reporting."""

    def on_stage_start(self, stage: str, description: str) -> None: ...
    def on_stage_end(self, stage: str, success: bool) -> None: ...
    def on_chunk_start(self, index: int, total: int, label: str) -> None: ...
    def on_chunk_end(self, index: int, total: int, word_count: int) -> None: ...
    def on_warning(self, message: str) -> None: ...
    def on_error(self, message: str) -> None: ...


class NullCallbacks:
    """Silent PipelineCallbacks for library use and tests."""

    def on_stage_start(self, stage: str, description: str) -> None:
        pass

    def on_stage_end(self, stage: str, success: bool) -> None:
        pass

    def on_chunk_start(self, index: int, total: int, label: str) -> None:
        pass

    def on_chunk_end(self, index: int, total: int, word_count: int) -> None:
        pass

    def on_warning(self, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class RichCallbacks:
    """Rich-based implementation of PipelineCallbacks."""

    def on_stage_start(self, stage: str, description: str) -> None:
        console.rule(f"[bold blue]{stage}[/] - {description}")

    def on_stage_end(self, stage: str, success: bool) -> None:
        status = "[green]OK[/]" if success else "[red]FAILED[/]"
        console.print(f"  {stage}: {status}")

    def on_chunk_start(self, index: int, total: int, label: str) -> None:
        console.print(f"  [dim]{label}:[/] chunk {index + 1}/{total}")

    def on_chunk_end(self, index: int, total: int, word_count: int) -> None:
        console.print(f"    [dim]chunk {index + 1}/{total}:[/] {word_count} words")

    def on_warning(self, message: str) -> None:
        console.print(f"  [yellow]WARNING:[/] {message}")

    def on_error(self, message: str) -> None:
        console.print(f"  [red]ERROR:[/] {message}")
