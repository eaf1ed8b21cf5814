"""Pydantic models for the hierarchical chunked coherence pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class LengthMode(str, Enum):
    HEAVY_COMPRESSION = "heavy_compression"
    MODERATE_COMPRESSION = "moderate_compression"
    MAINTAIN = "maintain"
    MODERATE_EXPANSION = "moderate_expansion"
    HEAVY_EXPANSION = "heavy_expansion"


class DocumentStatus(str, Enum):
    STRUCTURE_DETECTED = "structure_detected"
    SKELETONS_EXTRACTED = "skeletons_extracted"
    PROCESSING = "processing"
    COMPLETE = "complete"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CHUNK_PROCESSING = "chunk_processing"
    COMPLETE = "complete"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CommitmentType(str, Enum):
    ASSERTS = "asserts"
    REJECTS = "rejects"
    ASSUMES = "assumes"


class ObjectionType(str, Enum):
    LOGICAL = "logical"
    EMPIRICAL = "empirical"
    CONCEPTUAL = "conceptual"
    METHODOLOGICAL = "methodological"
    PRACTICAL = "practical"


class ObjectionSeverity(str, Enum):
    FATAL = "fatal"
    SERIOUS = "serious"
    MODERATE = "moderate"
    MINOR = "minor"


class ViolationType(str, Enum):
    COMMITMENT_MISSING = "commitment_missing"
    OBJECTION_NOT_ADDRESSED = "objection_not_addressed"
    RESPONSE_NOT_INTEGRATED = "response_not_integrated"
    TERMINOLOGY_DRIFT = "terminology_drift"


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.COMPLETE,
    JobStatus.COMPLETED_WITH_WARNINGS,
})


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

class WordRange(BaseModel):
    """Half-open word-index range ``[start, end)``."""
    start: int = Field(..., description="First word index (inclusive)")
    end: int = Field(..., description="Last word index (exclusive)")

    @property
    def size(self) -> int:
        return self.end - self.start


class ChapterNode(WordRange):
    title: str = Field(..., description="Chapter heading or virtual label")
    virtual: bool = Field(default=False, description="True when no heading marked this chapter")


class PartNode(WordRange):
    title: str = Field(..., description="Part heading or virtual label")
    virtual: bool = Field(default=False)
    chapters: list[ChapterNode] = Field(default_factory=list)


class DocumentStructure(BaseModel):
    """Parts -> Chapters hierarchy over the document's word sequence."""
    total_words: int = Field(..., description="Word count of the whole document")
    parts: list[PartNode] = Field(default_factory=list)
    headings_found: bool = Field(default=False, description="Whether explicit headings drove the split")

    def chapters(self) -> list[tuple[int, int, ChapterNode]]:
        """Flatten to ``(part_index, chapter_index, chapter)`` in document order."""
        return [
            (p, c, chapter)
            for p, part in enumerate(self.parts)
            for c, chapter in enumerate(part.chapters)
        ]


# ---------------------------------------------------------------------------
# Skeleton
# ---------------------------------------------------------------------------

class MajorDivision(BaseModel):
    title: str = Field(..., description="Part/section name")
    summary: str = Field(default="", description="2-3 sentence summary")


class GlobalTerm(BaseModel):
    term: str = Field(..., description="Key term that must be used consistently")
    definition: str = Field(default="", description="How the term is used throughout")


class Commitment(BaseModel):
    type: CommitmentType = Field(default=CommitmentType.ASSERTS)
    claim: str = Field(..., description="Claim text the document commits to")


class CrossReference(BaseModel):
    source: str = Field(..., description="Topic referring")
    target: str = Field(..., description="Topic referred to")
    relationship: str = Field(default="", description="How the topics connect")


class BookSkeleton(BaseModel):
    """Document-wide invariants injected into every chunk request."""
    master_thesis: str = Field(..., description="Central argument in 1-2 sentences")
    major_divisions: list[MajorDivision] = Field(default_factory=list)
    global_terms: list[GlobalTerm] = Field(default_factory=list)
    core_commitments: list[Commitment] = Field(default_factory=list)
    cross_references: list[CrossReference] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Length budget
# ---------------------------------------------------------------------------

class LengthConfig(BaseModel):
    target_min_words: int = Field(...)
    target_max_words: int = Field(...)
    target_mid_words: int = Field(...)
    length_ratio: float = Field(..., description="target_mid_words / total input words")
    length_mode: LengthMode = Field(...)


# ---------------------------------------------------------------------------
# Chunks and deltas
# ---------------------------------------------------------------------------

class TextChunk(BaseModel):
    """A chunk produced by the chunker, before transformation."""
    index: int = Field(...)
    text: str = Field(...)
    word_count: int = Field(...)
    context_before: str = Field(default="", description="Read-only overlap from the previous chunk")


class ChunkDelta(BaseModel):
    """What a chunk transformation added or noticed."""
    new_claims: list[Any] = Field(default_factory=list)
    terms_used: list[Any] = Field(default_factory=list)
    conflicts: list[Any] = Field(default_factory=list)
    cross_refs: list[Any] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.new_claims or self.terms_used or self.conflicts or self.cross_refs)


class ChunkResult(BaseModel):
    processed_text: str = Field(default="")
    word_count: int = Field(default=0)
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    attempts: int = Field(default=0, description="Number of completion attempts made")
    accepted: bool = Field(default=False, description="Whether the last attempt met the acceptance window")
    truncated: bool = Field(default=False)


class ChapterDelta(BaseModel):
    net_contribution: str = Field(default="")
    new_commitments: list[Any] = Field(default_factory=list)
    conflicts_resolved: list[Any] = Field(default_factory=list)
    conflicts_flagged: list[Any] = Field(default_factory=list)
    cross_references: list[Any] = Field(default_factory=list)


class StitchResult(BaseModel):
    output: str = Field(...)
    delta: ChapterDelta = Field(default_factory=ChapterDelta)
    fallback_used: bool = Field(default=False, description="True when chunks were concatenated as-is")


# ---------------------------------------------------------------------------
# Coherence
# ---------------------------------------------------------------------------

class Violation(BaseModel):
    type: ViolationType = Field(...)
    severity: Severity = Field(...)
    description: str = Field(...)
    details: dict[str, Any] = Field(default_factory=dict)


class CoherenceSummary(BaseModel):
    total: int = 0
    errors: int = 0
    warnings: int = 0
    commitments_missing: int = 0
    objections_not_addressed: int = 0
    responses_not_integrated: int = 0
    terminology_drifts: int = 0


class CoherenceReport(BaseModel):
    passed: bool = Field(..., description="True iff no error-severity violations")
    violations: list[Violation] = Field(default_factory=list)
    summary: CoherenceSummary = Field(default_factory=CoherenceSummary)
    repair_attempted: bool = Field(default=False)
    repaired: bool = Field(default=False, description="Repair restored every missing commitment")


# ---------------------------------------------------------------------------
# Objections (four-stage variant)
# ---------------------------------------------------------------------------

class TargetClaim(BaseModel):
    claim_index: int = Field(...)
    claim: str = Field(...)
    location: str = Field(default="")
    reason: str = Field(default="")


class Objection(BaseModel):
    index: int = Field(..., description="1-based objection number")
    claim_targeted: str = Field(default="")
    claim_location: str = Field(default="")
    type: ObjectionType = Field(default=ObjectionType.LOGICAL)
    objection: str = Field(default="")
    response: str = Field(default="", description="Initial response from stage 2")
    severity: ObjectionSeverity = Field(default=ObjectionSeverity.MODERATE)
    enhanced_response: str = Field(default="")
    enhancement_notes: str = Field(default="")
    integrated_in_section: str | None = Field(default=None)
    integration_strategy: str | None = Field(default=None)
    integration_verified: bool = Field(default=False)


class EnhancedResponse(BaseModel):
    objection_index: int = Field(...)
    enhanced_response: str = Field(default="")
    enhancement_notes: str = Field(default="")


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------

class DocumentRecord(BaseModel):
    """One single-pass run over a text."""
    id: str = Field(default="")
    job_id: str | None = Field(default=None)
    stage: int | None = Field(default=None)
    original_text: str = Field(...)
    word_count: int = Field(...)
    structure: DocumentStructure | None = Field(default=None)
    length_config: LengthConfig | None = Field(default=None)
    custom_instructions: str | None = Field(default=None)
    book_skeleton: BookSkeleton | None = Field(default=None)
    compressed_skeleton: str = Field(default="")
    final_output: str = Field(default="")
    coherence: CoherenceReport | None = Field(default=None)
    status: DocumentStatus = Field(default=DocumentStatus.STRUCTURE_DETECTED)
    error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChapterRecord(BaseModel):
    id: str = Field(default="")
    document_id: str = Field(...)
    part_index: int = Field(...)
    chapter_index: int = Field(...)
    title: str = Field(default="")
    original_text: str = Field(default="")
    word_count: int = Field(default=0)
    output: str = Field(default="")
    delta: ChapterDelta | None = Field(default=None)
    status: ChunkStatus = Field(default=ChunkStatus.PROCESSING)


class ChunkRecord(BaseModel):
    id: str = Field(default="")
    document_id: str = Field(...)
    chapter_id: str = Field(...)
    chunk_index: int = Field(...)
    input_text: str = Field(...)
    input_words: int = Field(...)
    target_words: int = Field(default=0)
    min_words: int = Field(default=0)
    max_words: int = Field(default=0)
    output_text: str = Field(default="")
    output_words: int = Field(default=0)
    delta: ChunkDelta | None = Field(default=None)
    status: ChunkStatus = Field(default=ChunkStatus.PENDING)
    retry_count: int = Field(default=0)


class ObjectionRecord(Objection):
    id: str = Field(default="")
    job_id: str = Field(...)
    batch_index: int = Field(default=-1, description="Stage-2 batch that produced this objection")


class BatchRecord(BaseModel):
    """Checkpoint of one objection/response batch."""
    id: str = Field(default="")
    job_id: str = Field(...)
    stage: int = Field(...)
    batch_index: int = Field(...)
    input_text: str = Field(default="")
    output_text: str = Field(default="")
    status: ChunkStatus = Field(default=ChunkStatus.COMPLETED)


class StageRecord(BaseModel):
    stage: int = Field(..., description="1-based stage number")
    name: str = Field(...)
    started_at: datetime | None = Field(default=None)
    ended_at: datetime | None = Field(default=None)
    output: str = Field(default="")
    word_count: int = Field(default=0)
    skeleton: dict[str, Any] = Field(default_factory=dict)
    document_id: str | None = Field(default=None)


class JobOptions(BaseModel):
    custom_instructions: str | None = Field(default=None)
    target_audience: str | None = Field(default=None)
    objective: str | None = Field(default=None)


class PipelineJob(BaseModel):
    """Top-level state machine of a four-stage run."""
    id: str = Field(default="")
    original_text: str = Field(...)
    original_word_count: int = Field(...)
    options: JobOptions = Field(default_factory=JobOptions)
    status: JobStatus = Field(default=JobStatus.PENDING)
    current_stage: int = Field(default=1)
    stage_status: StageStatus = Field(default=StageStatus.PENDING)
    stages: dict[int, StageRecord] = Field(default_factory=dict)
    coherence: CoherenceReport | None = Field(default=None)
    repair_attempts: int = Field(default=0)
    error_message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Results returned to callers
# ---------------------------------------------------------------------------

class HccResult(BaseModel):
    """Result of one single-pass run."""
    success: bool = Field(...)
    output: str = Field(default="")
    document_id: str | None = Field(default=None)
    status: DocumentStatus | None = Field(default=None)
    skeleton: BookSkeleton | None = Field(default=None)
    coherence: CoherenceReport | None = Field(default=None)
    error: str | None = Field(default=None)


class JobStatusView(BaseModel):
    job_id: str = Field(...)
    stage: int = Field(...)
    status: JobStatus = Field(...)
    stage_status: StageStatus = Field(...)
    word_counts: dict[str, int] = Field(default_factory=dict)
    violations: list[Violation] = Field(default_factory=list)
    error: str | None = Field(default=None)


class PipelineResult(BaseModel):
    """Top-level result of a four-stage run."""
    success: bool = Field(...)
    job_id: str = Field(...)
    status: JobStatus = Field(...)
    outputs: dict[str, str] = Field(default_factory=dict)
    coherence: CoherenceReport | None = Field(default=None)
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Project Configuration (loaded from YAML or Hydra)
# ---------------------------------------------------------------------------

class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that replace the global azure block."""
    endpoint: str = Field(default="")
    api_key: str | None = Field(default=None)
    api_version: str | None = Field(default=None)
    api_type: str | None = Field(default=None, description="e.g. 'anthropic' or 'openai'")


class ModelConfig(BaseModel):
    """LLM model configuration per role."""
    default: str = Field(default="gpt-5.2", description="Default model")
    extractor: str | None = Field(default=None, description="Skeleton extraction and compression")
    transformer: str | None = Field(default=None, description="Chunk transformation")
    stitcher: str | None = Field(default=None, description="Chapter stitching and repair")
    critic: str | None = Field(default=None, description="Claims, objections and responses")
    failover: list[str] = Field(default_factory=list, description="Models tried in order after the role's model")
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)


class AzureConfig(BaseModel):
    """Azure OpenAI connection settings."""
    api_key: str = Field(default="", description="Azure OpenAI API key (or ${ENV_VAR})")
    api_version: str = Field(default="", description="API version")
    endpoint: str = Field(default="", description="Azure endpoint URL")


class ProjectConfig(BaseModel):
    """Full project configuration loaded from config.yaml."""
    project_name: str = Field(default="hcc-run")

    # File paths
    input_file: str | None = Field(default=None, description="Plain-text document to process")
    output_dir: str = Field(default="output/", description="Where stage outputs are written")
    store_dir: str | None = Field(default=None, description="Job store directory; in-memory when unset")

    # Job options
    custom_instructions: str | None = Field(default=None)
    target_audience: str | None = Field(default=None)
    objective: str | None = Field(default=None)

    # Azure OpenAI
    azure: AzureConfig = Field(default_factory=AzureConfig)

    # Models
    models: ModelConfig = Field(default_factory=ModelConfig)

    timeout: int = Field(default=120, description="LLM call timeout in seconds")
    seed: int = Field(default=42, description="LLM seed for reproducibility")

    # Structure and chunking
    virtual_part_size: int = Field(default=25000, description="Words per virtual part")
    virtual_chapter_size: int = Field(default=5000, description="Words per virtual chapter")
    target_chunk_size: int = Field(default=500, description="Max words per chunk")
    chunk_overlap_words: int = Field(default=0, description="Read-only context carried between chunks")
    max_words: int = Field(default=100000, description="Largest accepted document")

    # Chunk transformation
    chunk_delay_ms: int = Field(default=2000, description="Pause between chunk calls")
    max_chunk_retries: int = Field(default=2, description="Attempts per chunk")
    retry_delay_ms: int = Field(default=1000, description="Pause before a chunk retry")

    # Skeleton
    skeleton_sample_words: int = Field(default=8000, description="Documents above this are previewed")
    skeleton_head_words: int = Field(default=6000)
    skeleton_tail_words: int = Field(default=2000)
    skeleton_token_budget: int = Field(default=500, description="Target size of the compressed skeleton")

    # Objections
    objection_count: int = Field(default=25)
    objection_batch_size: int = Field(default=5)

    # Coherence
    coherence_repair: bool = Field(default=True, description="Attempt one repair pass on error violations")
