"""Pipeline — four-stage orchestration over the HCC pass.

Stage 1: RECONSTRUCTION — HCC pass over the original text
Stage 2: OBJECTIONS     — target claims, then objections + responses in batches
Stage 3: RESPONSES      — enhanced responses in the same batches
Stage 4: INTEGRATION    — HCC pass over the stage 1 output, integrating responses (1.1-1.3x length)

After stage 4 the coherence check runs once against the stage 1 skeleton and
the objection table.  Every stage persists its timestamps, output and
skeleton on the job, so a failed or cancelled job resumes at
``current_stage`` and completed work is never redone.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

from .agents.objections import (
    apply_enhancements,
    batches,
    enhance_responses,
    find_target_claims,
    format_objections,
    format_responses,
    generate_objections,
    objections_skeleton,
    responses_skeleton,
)
from .errors import JobCancelled, JobNotFoundError, StageError
from .hcc import CancellationToken, HccPipeline, check_and_repair
from .logging_config import NullCallbacks, PipelineCallbacks
from .models import (
    TERMINAL_JOB_STATUSES,
    BatchRecord,
    BookSkeleton,
    ChapterNode,
    ChunkStatus,
    JobOptions,
    JobStatus,
    JobStatusView,
    ObjectionRecord,
    PipelineJob,
    PipelineResult,
    ProjectConfig,
    StageRecord,
    StageStatus,
    TargetClaim,
    utcnow,
)
from .providers import CompletionProvider, RoleProviders
from .store import JobStore, new_id
from .tools.coherence import commitment_key
from .tools.length_budget import calculate_length_config, round_half_up
from .tools.structure import detect_structure
from .tools.text import count_words, slice_words, word_spans

logger = logging.getLogger(__name__)

STAGE_NAMES: dict[int, str] = {
    1: "reconstruction",
    2: "objections",
    3: "responses",
    4: "integration",
}
STAGE_DESCRIPTIONS: dict[int, str] = {
    1: "Reconstructing the document",
    2: "Generating objections",
    3: "Enhancing responses",
    4: "Integrating responses",
}
FINAL_STAGE = 4

INTEGRATION_MIN_FACTOR = 1.1
INTEGRATION_MAX_FACTOR = 1.3
INTEGRATION_RESPONSE_CHARS = 600

INTEGRATION_INSTRUCTIONS = (
    "Produce the bullet-proof version of this text: keep every argument, and weave in "
    "answers to the objections assigned to each section so the text pre-empts them. "
    "Do not list objections; integrate the responses into the prose."
)

CLAIMS_BATCH_INDEX = -1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def assign_objections(
    text: str,
    chapters: list[ChapterNode],
    objections: list[ObjectionRecord],
) -> dict[int, list[int]]:
    """Map chapter position -> objection indices.

    An objection goes to the chapter whose text contains its targeted claim
    (prefix match); the rest are spread evenly over the chapters.
    """
    assignment: dict[int, list[int]] = {i: [] for i in range(len(chapters))}
    if not chapters:
        return assignment
    spans = word_spans(text)
    lowered = [slice_words(text, ch.start, ch.end, spans).lower() for ch in chapters]

    unassigned: list[ObjectionRecord] = []
    for o in objections:
        key = commitment_key(o.claim_targeted)
        home = next((i for i, body in enumerate(lowered) if key and key in body), None)
        if home is None:
            unassigned.append(o)
        else:
            assignment[home].append(o.index)
    for n, o in enumerate(unassigned):
        assignment[(n * len(chapters)) // len(unassigned)].append(o.index)
    return assignment


class PipelineService:
    """Caller-facing API over four-stage pipeline jobs."""

    def __init__(
        self,
        config: ProjectConfig,
        store: JobStore | None = None,
        *,
        provider: CompletionProvider | None = None,
        callbacks: PipelineCallbacks | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store or JobStore(config.store_dir)
        self.provider = provider
        self.providers = RoleProviders(config, provider)
        self.callbacks = callbacks or NullCallbacks()
        self.sleep = sleep
        self._tokens: dict[str, CancellationToken] = {}

    # -----------------------------------------------------------------------
    # Job records
    # -----------------------------------------------------------------------

    def _job(self, job_id: str) -> PipelineJob:
        job = self.store.get("jobs", job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _objections(self, job_id: str) -> list[ObjectionRecord]:
        return sorted(self.store.find("objections", job_id=job_id), key=lambda o: o.index)

    def _batches(self, job_id: str, stage: int) -> dict[int, BatchRecord]:
        return {
            b.batch_index: b
            for b in self.store.find("batches", job_id=job_id, stage=stage)
            if b.status == ChunkStatus.COMPLETED
        }

    def _save_stage(self, job_id: str, record: StageRecord, **job_fields: Any) -> PipelineJob:
        job = self._job(job_id)
        stages = {**job.stages, record.stage: record}
        return self.store.update("jobs", job_id, stages=stages, **job_fields)

    def _hcc(self, token: CancellationToken) -> HccPipeline:
        return HccPipeline(
            self.config,
            self.store,
            provider=self.provider,
            callbacks=self.callbacks,
            sleep=self.sleep,
            cancel_token=token,
        )

    # -----------------------------------------------------------------------
    # Stage 1: Reconstruction
    # -----------------------------------------------------------------------

    def _run_reconstruction(self, job: PipelineJob, record: StageRecord, token: CancellationToken) -> StageRecord:
        if not record.document_id:
            record.document_id = new_id()
            self._save_stage(job.id, record)
        self.store.update("jobs", job.id, stage_status=StageStatus.CHUNK_PROCESSING)

        result = self._hcc(token).process(
            job.original_text,
            job.options.custom_instructions,
            document_id=record.document_id,
            job_id=job.id,
            stage=1,
            run_coherence=False,
        )
        if not result.success:
            raise StageError(STAGE_NAMES[1], result.error or "HCC pass failed")
        record.output = result.output
        record.skeleton = result.skeleton.model_dump(mode="json") if result.skeleton else {}
        return record

    # -----------------------------------------------------------------------
    # Stage 2: Objections
    # -----------------------------------------------------------------------

    def _target_claims(self, job: PipelineJob, skeleton: BookSkeleton, document: str) -> list[TargetClaim]:
        done = self._batches(job.id, 2).get(CLAIMS_BATCH_INDEX)
        if done is not None:
            return [TargetClaim.model_validate(c) for c in json.loads(done.output_text or "[]")]
        claims = find_target_claims(
            self.providers.for_role("claim_finder"), document, skeleton, count=self.config.objection_count,
        )
        self.store.insert("batches", BatchRecord(
            job_id=job.id,
            stage=2,
            batch_index=CLAIMS_BATCH_INDEX,
            output_text=json.dumps([c.model_dump(mode="json") for c in claims]),
        ))
        logger.info("Job %s: %d claims targeted", job.id, len(claims))
        return claims

    def _run_objections(self, job: PipelineJob, record: StageRecord, token: CancellationToken) -> StageRecord:
        stage1 = job.stages[1]
        skeleton = BookSkeleton.model_validate(stage1.skeleton)
        claims = self._target_claims(job, skeleton, stage1.output)

        self.store.update("jobs", job.id, stage_status=StageStatus.CHUNK_PROCESSING)
        done = self._batches(job.id, 2)
        provider = self.providers.for_role("objection_generator")
        claim_batches = list(batches(claims, self.config.objection_batch_size))
        for b, batch in enumerate(claim_batches):
            token.raise_if_cancelled()
            if b in done:
                continue
            self.callbacks.on_chunk_start(b, len(claim_batches), "Objections")
            # Rows left by a run that stopped before this batch was checkpointed.
            stale = self.store.delete_where("objections", job_id=job.id, batch_index=b)
            if stale:
                logger.warning("Job %s: discarded %d unchecked objection(s) from batch %d", job.id, stale, b)
            first_index = len(self._objections(job.id)) + 1
            objections, raw = generate_objections(provider, batch, skeleton, first_index=first_index)
            for o in objections:
                self.store.insert("objections", ObjectionRecord(job_id=job.id, batch_index=b, **o.model_dump()))
            self.store.insert("batches", BatchRecord(
                job_id=job.id,
                stage=2,
                batch_index=b,
                input_text=json.dumps([c.model_dump(mode="json") for c in batch]),
                output_text=raw,
            ))
            self.callbacks.on_chunk_end(b, len(claim_batches), len(objections))

        objections = self._objections(job.id)
        if len(objections) < self.config.objection_count:
            self.callbacks.on_warning(
                f"Only {len(objections)} of {self.config.objection_count} objections were generated"
            )
        record.output = format_objections(objections)
        record.skeleton = objections_skeleton(claims, objections, skeleton)
        return record

    # -----------------------------------------------------------------------
    # Stage 3: Responses
    # -----------------------------------------------------------------------

    def _run_responses(self, job: PipelineJob, record: StageRecord, token: CancellationToken) -> StageRecord:
        skeleton = BookSkeleton.model_validate(job.stages[1].skeleton)
        self.store.update("jobs", job.id, stage_status=StageStatus.CHUNK_PROCESSING)

        done = self._batches(job.id, 3)
        provider = self.providers.for_role("response_enhancer")
        objection_batches = list(batches(self._objections(job.id), self.config.objection_batch_size))
        for b, batch in enumerate(objection_batches):
            token.raise_if_cancelled()
            if b in done:
                continue
            self.callbacks.on_chunk_start(b, len(objection_batches), "Responses")
            enhanced, raw = enhance_responses(provider, batch, skeleton)
            apply_enhancements(batch, enhanced)
            for o in batch:
                self.store.update(
                    "objections", o.id,
                    enhanced_response=o.enhanced_response,
                    enhancement_notes=o.enhancement_notes,
                )
            self.store.insert("batches", BatchRecord(
                job_id=job.id,
                stage=3,
                batch_index=b,
                input_text=json.dumps([{"index": o.index, "objection": o.objection} for o in batch]),
                output_text=raw,
            ))
            self.callbacks.on_chunk_end(b, len(objection_batches), len(enhanced))

        objections = self._objections(job.id)
        record.output = format_responses(objections)
        record.skeleton = responses_skeleton(objections, job.stages[1].skeleton, job.stages[2].skeleton)
        return record

    # -----------------------------------------------------------------------
    # Stage 4: Integration
    # -----------------------------------------------------------------------

    def _run_integration(self, job: PipelineJob, record: StageRecord, token: CancellationToken) -> StageRecord:
        text = job.stages[1].output
        skeleton = BookSkeleton.model_validate(job.stages[1].skeleton)
        words = count_words(text)
        length_config = calculate_length_config(
            words,
            round_half_up(words * INTEGRATION_MIN_FACTOR),
            round_half_up(words * INTEGRATION_MAX_FACTOR),
        )

        structure = detect_structure(
            text,
            part_size=self.config.virtual_part_size,
            chapter_size=self.config.virtual_chapter_size,
        )
        chapters = [ch for _, _, ch in structure.chapters()]
        objections = self._objections(job.id)
        by_index = {o.index: o for o in objections}
        assignment = assign_objections(text, chapters, objections)
        by_range = {(ch.start, ch.end): assignment[i] for i, ch in enumerate(chapters)}

        def instructions_for(chapter: ChapterNode) -> str | None:
            indices = by_range.get((chapter.start, chapter.end), [])
            if not indices:
                return None
            lines = ["OBJECTIONS TO ANSWER IN THIS SECTION:"]
            for i in indices:
                o = by_index[i]
                response = (o.enhanced_response or o.response)[:INTEGRATION_RESPONSE_CHARS]
                lines.append(f"- Objection {o.index} ({o.type.value}): {o.objection[:200]}\n  Response: {response}")
            return "\n".join(lines)

        def mark_integrated(chapter: ChapterNode, output: str) -> None:
            for i in by_range.get((chapter.start, chapter.end), []):
                self.store.update(
                    "objections", by_index[i].id,
                    integrated_in_section=chapter.title,
                    integration_strategy="inline",
                    integration_verified=True,
                )

        if not record.document_id:
            record.document_id = new_id()
            self._save_stage(job.id, record)
        self.store.update("jobs", job.id, stage_status=StageStatus.CHUNK_PROCESSING)

        instructions = INTEGRATION_INSTRUCTIONS
        if job.options.custom_instructions:
            instructions = f"{job.options.custom_instructions}\n\n{instructions}"
        result = self._hcc(token).process(
            text,
            instructions,
            document_id=record.document_id,
            length_config=length_config,
            job_id=job.id,
            stage=4,
            run_coherence=False,
            on_chapter_done=mark_integrated,
            chapter_instructions=instructions_for,
        )
        if not result.success:
            raise StageError(STAGE_NAMES[4], result.error or "HCC pass failed")

        lowered = result.output.lower()
        record.output = result.output
        record.skeleton = {
            "commitment_reconciliation": [
                {
                    "claim": c.claim,
                    "type": c.type.value,
                    "preserved": commitment_key(c.claim) in lowered,
                }
                for c in skeleton.core_commitments
            ],
            "key_terms": [t.model_dump(mode="json") for t in skeleton.global_terms],
            "length_target": length_config.model_dump(mode="json"),
            "integrations": [
                {
                    "index": o.index,
                    "section": o.integrated_in_section,
                    "strategy": o.integration_strategy,
                }
                for o in self._objections(job.id)
            ],
        }
        return record

    # -----------------------------------------------------------------------
    # Stage driver
    # -----------------------------------------------------------------------

    def _run_stage(self, job_id: str, stage: int, token: CancellationToken) -> None:
        job = self._job(job_id)
        record = job.stages.get(stage) or StageRecord(stage=stage, name=STAGE_NAMES[stage])
        if record.ended_at is not None:
            logger.info("Job %s: stage %d already complete, skipping", job_id, stage)
            return

        token.raise_if_cancelled()
        record.started_at = record.started_at or utcnow()
        job = self._save_stage(job_id, record, current_stage=stage, stage_status=StageStatus.RUNNING)
        self.callbacks.on_stage_start(f"Stage {stage}", STAGE_DESCRIPTIONS[stage])

        runner = {
            1: self._run_reconstruction,
            2: self._run_objections,
            3: self._run_responses,
            4: self._run_integration,
        }[stage]
        try:
            record = runner(job, record, token)
        except (JobCancelled, StageError):
            self.callbacks.on_stage_end(f"Stage {stage}", False)
            raise
        except Exception as e:
            self.callbacks.on_stage_end(f"Stage {stage}", False)
            raise StageError(STAGE_NAMES[stage], str(e)) from e

        record.ended_at = utcnow()
        record.word_count = count_words(record.output)
        self._save_stage(job_id, record, stage_status=StageStatus.COMPLETE)
        self.callbacks.on_stage_end(f"Stage {stage}", True)
        logger.info("Job %s: stage %d (%s) complete, %d words", job_id, stage, record.name, record.word_count)

    def _run_coherence(self, job_id: str) -> None:
        job = self._job(job_id)
        final = job.stages[FINAL_STAGE]
        skeleton = BookSkeleton.model_validate(job.stages[1].skeleton)
        repairer = self.providers.for_role("repairer") if self.config.coherence_repair else None

        output, report = check_and_repair(final.output, skeleton, self._objections(job_id), repairer)
        if report.repaired:
            final.output = output
            final.word_count = count_words(output)
        status = (
            JobStatus.COMPLETE if report.passed or report.repaired
            else JobStatus.COMPLETED_WITH_WARNINGS
        )
        if status == JobStatus.COMPLETED_WITH_WARNINGS:
            self.callbacks.on_warning(
                f"Coherence check: {report.summary.errors} error(s), {report.summary.warnings} warning(s)"
            )
        self._save_stage(
            job_id, final,
            coherence=report,
            repair_attempts=job.repair_attempts + int(report.repair_attempted),
            status=status,
        )

    def _execute(self, job_id: str) -> PipelineResult:
        job = self._job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            logger.info("Job %s already finished (%s)", job_id, job.status.value)
            return self._result(job_id)

        token = self._tokens.get(job_id)
        if token is None or token.cancelled:
            token = self._tokens[job_id] = CancellationToken()
        self.store.update("jobs", job_id, status=JobStatus.RUNNING, error_message=None)

        try:
            for stage in range(job.current_stage, FINAL_STAGE + 1):
                self._run_stage(job_id, stage, token)
            token.raise_if_cancelled()
            self._run_coherence(job_id)
        except JobCancelled:
            logger.warning("Job %s cancelled", job_id)
            self.store.update("jobs", job_id, status=JobStatus.CANCELLED)
            self.callbacks.on_warning(f"Job {job_id} cancelled")
        except Exception as e:
            logger.exception("Pipeline job %s failed", job_id)
            self.store.update("jobs", job_id, status=JobStatus.FAILED, error_message=str(e))
            self.callbacks.on_error(str(e))
        finally:
            self._tokens.pop(job_id, None)
        return self._result(job_id)

    def _result(self, job_id: str) -> PipelineResult:
        job = self._job(job_id)
        return PipelineResult(
            success=job.status in TERMINAL_JOB_STATUSES,
            job_id=job.id,
            status=job.status,
            outputs=self.get_outputs(job_id),
            coherence=job.coherence,
            errors=[job.error_message] if job.error_message else [],
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def create_job(self, text: str, options: JobOptions | None = None) -> str:
        job = self.store.insert("jobs", PipelineJob(
            original_text=text,
            original_word_count=count_words(text),
            options=options or JobOptions(),
        ))
        logger.info("Created job %s (%d words)", job.id, job.original_word_count)
        return job.id

    def run_job(self, job_id: str) -> PipelineResult:
        """Run a job from its current stage through the coherence check."""
        return self._execute(job_id)

    def resume_job(self, job_id: str) -> PipelineResult:
        """Continue a failed, cancelled or interrupted job; a finished job is a no-op."""
        job = self._job(job_id)
        logger.info("Resuming job %s at stage %d (%s)", job_id, job.current_stage, job.status.value)
        return self._execute(job_id)

    def cancel_job(self, job_id: str) -> None:
        """Request cancellation; a running job stops at its next chunk or stage boundary."""
        job = self._job(job_id)
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        elif job.status not in TERMINAL_JOB_STATUSES:
            self.store.update("jobs", job_id, status=JobStatus.CANCELLED)

    def get_status(self, job_id: str) -> JobStatusView:
        job = self._job(job_id)
        return JobStatusView(
            job_id=job.id,
            stage=job.current_stage,
            status=job.status,
            stage_status=job.stage_status,
            word_counts={
                "original": job.original_word_count,
                **{STAGE_NAMES[n]: r.word_count for n, r in sorted(job.stages.items()) if r.ended_at},
            },
            violations=job.coherence.violations if job.coherence else [],
            error=job.error_message,
        )

    def get_outputs(self, job_id: str) -> dict[str, str]:
        """Outputs of every completed stage, keyed by stage name."""
        job = self._job(job_id)
        return {
            STAGE_NAMES[n]: r.output
            for n, r in sorted(job.stages.items())
            if r.ended_at is not None
        }

    def get_objections(self, job_id: str) -> list[ObjectionRecord]:
        self._job(job_id)
        return self._objections(job_id)
