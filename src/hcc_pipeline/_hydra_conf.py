"""Hydra structured config dataclasses.

These mirror the Pydantic ``ProjectConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ProjectConfig`` via
``cli._to_project_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hydra.core.config_store import ConfigStore


@dataclass
class AzureConf:
    api_key: str = "${oc.env:AZURE_OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:AZURE_OPENAI_API_VERSION,''}"
    endpoint: str = "${oc.env:AZURE_OPENAI_ENDPOINT,''}"


@dataclass
class ModelConf:
    default: str = "gpt-5.2"
    extractor: str | None = None
    transformer: str | None = None
    stitcher: str | None = None
    critic: str | None = None
    failover: list[str] = field(default_factory=list)
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass
class HccConf:
    # --- Dispatch + CLI-only fields ---
    mode: str = "run"
    verbose: bool = False
    quiet: bool = False
    job_id: str | None = None

    # --- ProjectConfig fields (1:1 mapping) ---
    project_name: str = "hcc-run"
    input_file: str | None = None
    output_dir: str = "output/"
    store_dir: str | None = ".hcc_store/"

    custom_instructions: str | None = None
    target_audience: str | None = None
    objective: str | None = None

    azure: AzureConf = field(default_factory=AzureConf)
    models: ModelConf = field(default_factory=ModelConf)

    timeout: int = 120
    seed: int = 42

    virtual_part_size: int = 25000
    virtual_chapter_size: int = 5000
    target_chunk_size: int = 500
    chunk_overlap_words: int = 0
    max_words: int = 100000

    chunk_delay_ms: int = 2000
    max_chunk_retries: int = 2
    retry_delay_ms: int = 1000

    skeleton_sample_words: int = 8000
    skeleton_head_words: int = 6000
    skeleton_tail_words: int = 2000
    skeleton_token_budget: int = 500

    objection_count: int = 25
    objection_batch_size: int = 5

    coherence_repair: bool = True


# Keys present in HccConf that are NOT part of ProjectConfig.
CLI_ONLY_KEYS = frozenset({"mode", "verbose", "quiet", "job_id"})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="hcc_schema", node=HccConf)
