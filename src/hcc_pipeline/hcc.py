"""HccPipeline — one hierarchical chunked pass over a document.

Structure -> skeleton -> per part / chapter: chunk, transform, stitch ->
assemble -> coherence check (+ one repair pass).  Every chunk is
checkpointed in the store before the next one starts, so a pass can be
resumed by calling :meth:`HccPipeline.process` with the same document id.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Sequence

from .agents.chunk_transformer import summarize_delta, transform_chunk
from .agents.repairer import repair_output
from .agents.skeleton import chapter_context, compress_skeleton, extract_book_skeleton
from .agents.stitcher import stitch_chapter
from .errors import JobCancelled, ProviderError
from .logging_config import NullCallbacks, PipelineCallbacks
from .models import (
    BookSkeleton,
    ChapterNode,
    ChapterRecord,
    ChunkDelta,
    ChunkRecord,
    ChunkResult,
    ChunkStatus,
    CoherenceReport,
    DocumentRecord,
    DocumentStatus,
    HccResult,
    LengthConfig,
    Objection,
    ProjectConfig,
)
from .providers import CompletionProvider, RoleProviders
from .store import JobStore
from .tools.assembler import assemble_document, assemble_part
from .tools.chunker import smart_chunk
from .tools.coherence import check_coherence, missing_commitments
from .tools.length_budget import chunk_bounds, length_config_from_instructions
from .tools.structure import detect_structure
from .tools.text import count_words, slice_words, word_spans

logger = logging.getLogger(__name__)

FINISHED_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.COMPLETE,
    DocumentStatus.COMPLETED_WITH_WARNINGS,
})

ChapterHook = Callable[[ChapterNode, str], None]
ChapterInstructions = Callable[[ChapterNode], "str | None"]


class CancellationToken:
    """Thread-safe cancellation flag, checked between chunks and stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Cancellation requested")


def check_and_repair(
    output: str,
    skeleton: BookSkeleton,
    objections: Sequence[Objection] = (),
    repair_provider: CompletionProvider | None = None,
) -> tuple[str, CoherenceReport]:
    """Coherence check plus at most one repair pass for missing commitments.

    The checker is not re-run after repair; ``report.repaired`` records
    whether every missing commitment was restored.
    """
    report = check_coherence(output, skeleton, objections)
    if report.passed or repair_provider is None:
        return output, report
    missing = missing_commitments(report)
    logger.warning("Coherence check: %d commitment(s) missing; attempting repair", len(missing))
    repaired_text, repaired = repair_output(repair_provider, output, missing, skeleton)
    report.repair_attempted = True
    report.repaired = repaired
    return (repaired_text if repaired else output), report


def _finish_status(report: CoherenceReport | None) -> DocumentStatus:
    if report is None or report.passed or report.repaired:
        return DocumentStatus.COMPLETE
    return DocumentStatus.COMPLETED_WITH_WARNINGS


class HccPipeline:
    """Single-pass hierarchical chunked coherence pipeline."""

    def __init__(
        self,
        config: ProjectConfig,
        store: JobStore | None = None,
        *,
        provider: CompletionProvider | None = None,
        callbacks: PipelineCallbacks | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.config = config
        self.store = store or JobStore(config.store_dir)
        self.providers = RoleProviders(config, provider)
        self.callbacks = callbacks or NullCallbacks()
        self.sleep = sleep
        self.cancel_token = cancel_token or CancellationToken()

    # -----------------------------------------------------------------------
    # Document record
    # -----------------------------------------------------------------------

    def _open_document(
        self,
        text: str,
        word_count: int,
        custom_instructions: str | None,
        document_id: str | None,
        length_config: LengthConfig | None,
        job_id: str | None,
        stage: int | None,
    ) -> DocumentRecord:
        if document_id:
            existing = self.store.get("documents", document_id)
            if existing is not None:
                logger.info("Resuming document %s (status %s)", document_id, existing.status.value)
                return existing

        structure = detect_structure(
            text,
            part_size=self.config.virtual_part_size,
            chapter_size=self.config.virtual_chapter_size,
        )
        record = DocumentRecord(
            id=document_id or "",
            job_id=job_id,
            stage=stage,
            original_text=text,
            word_count=word_count,
            structure=structure,
            length_config=length_config or length_config_from_instructions(word_count, custom_instructions),
            custom_instructions=custom_instructions,
            status=DocumentStatus.STRUCTURE_DETECTED,
        )
        record = self.store.insert("documents", record)
        logger.info(
            "Document %s: %d words, %d part(s), %d chapter(s), target %d-%d words (%s, ratio %.3f)",
            record.id, word_count, len(structure.parts), len(structure.chapters()),
            record.length_config.target_min_words, record.length_config.target_max_words,
            record.length_config.length_mode.value, record.length_config.length_ratio,
        )
        return record

    def _result(self, doc: DocumentRecord) -> HccResult:
        return HccResult(
            success=doc.status in FINISHED_DOCUMENT_STATUSES,
            output=doc.final_output,
            document_id=doc.id,
            status=doc.status,
            skeleton=doc.book_skeleton,
            coherence=doc.coherence,
            error=doc.error,
        )

    # -----------------------------------------------------------------------
    # Chapters and chunks
    # -----------------------------------------------------------------------

    def _chapter_record(self, doc: DocumentRecord, p: int, c: int, chapter: ChapterNode, text: str) -> ChapterRecord:
        for record in self.store.find("chapters", document_id=doc.id, part_index=p, chapter_index=c):
            return record
        return self.store.insert("chapters", ChapterRecord(
            document_id=doc.id,
            part_index=p,
            chapter_index=c,
            title=chapter.title,
            original_text=text,
            word_count=count_words(text),
        ))

    def _process_chapter(
        self,
        doc: DocumentRecord,
        chapter_rec: ChapterRecord,
        chapter_text: str,
        context: str,
        instructions: str | None,
    ) -> list[ChunkResult]:
        chunks = smart_chunk(
            chapter_text,
            target_size=self.config.target_chunk_size,
            overlap_words=self.config.chunk_overlap_words,
        )
        done = {
            r.chunk_index: r
            for r in self.store.find("chunks", chapter_id=chapter_rec.id)
        }
        transformer = self.providers.for_role("chunk_transformer")
        ratio = doc.length_config.length_ratio

        results: list[ChunkResult] = []
        previous_summary = ""
        for k, chunk in enumerate(chunks):
            self.cancel_token.raise_if_cancelled()
            record = done.get(k)
            if record is not None and record.status == ChunkStatus.COMPLETED:
                logger.debug("Chunk %d of chapter %s reused from checkpoint", k, chapter_rec.title)
                result = ChunkResult(
                    processed_text=record.output_text,
                    word_count=record.output_words,
                    delta=record.delta or ChunkDelta(),
                    attempts=record.retry_count + 1,
                    accepted=True,
                )
                results.append(result)
                previous_summary = summarize_delta(result.delta)
                continue

            target, min_words, max_words = chunk_bounds(chunk.word_count, ratio)
            if record is None:
                record = self.store.insert("chunks", ChunkRecord(
                    document_id=doc.id,
                    chapter_id=chapter_rec.id,
                    chunk_index=k,
                    input_text=chunk.text,
                    input_words=chunk.word_count,
                    target_words=target,
                    min_words=min_words,
                    max_words=max_words,
                    status=ChunkStatus.PROCESSING,
                ))
            else:
                self.store.update("chunks", record.id, status=ChunkStatus.PROCESSING)

            chunk_id = record.id

            def checkpoint(index: int, result: ChunkResult, chunk_id: str = chunk_id) -> None:
                self.store.update(
                    "chunks", chunk_id,
                    output_text=result.processed_text,
                    output_words=result.word_count,
                    delta=result.delta,
                    status=ChunkStatus.COMPLETED,
                    retry_count=max(0, result.attempts - 1),
                )
                logger.debug("Checkpoint saved for chunk %d", index)

            self.callbacks.on_chunk_start(k, len(chunks), chapter_rec.title)
            try:
                result = transform_chunk(
                    transformer,
                    chunk.text,
                    context,
                    doc.length_config,
                    chunk.word_count,
                    instructions,
                    total_chunks=len(chunks),
                    chunk_index=k,
                    previous_summary=previous_summary,
                    context_before=chunk.context_before,
                    max_retries=self.config.max_chunk_retries,
                    retry_delay_s=self.config.retry_delay_ms / 1000,
                    sleep=self.sleep,
                    on_checkpoint=checkpoint,
                )
            except ProviderError:
                self.store.update("chunks", chunk_id, status=ChunkStatus.FAILED)
                raise
            if not result.accepted:
                self.callbacks.on_warning(
                    f"{chapter_rec.title}: chunk {k + 1} kept at {result.word_count} words "
                    f"(window {min_words}-{max_words})"
                )
            self.callbacks.on_chunk_end(k, len(chunks), result.word_count)
            results.append(result)
            previous_summary = summarize_delta(result.delta)

            if k < len(chunks) - 1 and self.config.chunk_delay_ms > 0:
                self.sleep(self.config.chunk_delay_ms / 1000)
        return results

    # -----------------------------------------------------------------------
    # Coherence
    # -----------------------------------------------------------------------

    def _check_and_repair(self, output: str, doc: DocumentRecord) -> tuple[str, CoherenceReport]:
        repairer = self.providers.for_role("repairer") if self.config.coherence_repair else None
        return check_and_repair(output, doc.book_skeleton, repair_provider=repairer)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def process(
        self,
        text: str,
        custom_instructions: str | None = None,
        document_id: str | None = None,
        *,
        length_config: LengthConfig | None = None,
        job_id: str | None = None,
        stage: int | None = None,
        run_coherence: bool = True,
        on_chapter_done: ChapterHook | None = None,
        chapter_instructions: ChapterInstructions | None = None,
    ) -> HccResult:
        """Run one pass over *text*.

        Passing the id of an unfinished document resumes it: the stored
        structure, skeleton and completed chunks are reused.  A finished
        document is returned as-is.  ``JobCancelled`` propagates; any other
        failure marks the document ``failed`` and comes back as an
        unsuccessful result.
        """
        word_count = count_words(text)
        if word_count > self.config.max_words:
            message = f"Document exceeds {self.config.max_words} word limit (got {word_count})"
            logger.error(message)
            return HccResult(success=False, error=message)

        doc = self._open_document(
            text, word_count, custom_instructions, document_id, length_config, job_id, stage,
        )
        if doc.status in FINISHED_DOCUMENT_STATUSES:
            return self._result(doc)
        text = doc.original_text
        started = time.monotonic()

        try:
            if doc.book_skeleton is None:
                skeleton = extract_book_skeleton(
                    self.providers.for_role("skeleton_extractor"),
                    text,
                    sample_words=self.config.skeleton_sample_words,
                    head_words=self.config.skeleton_head_words,
                    tail_words=self.config.skeleton_tail_words,
                )
                doc = self.store.update(
                    "documents", doc.id, book_skeleton=skeleton, status=DocumentStatus.SKELETONS_EXTRACTED,
                )
            if not doc.compressed_skeleton:
                compressed = compress_skeleton(
                    self.providers.for_role("skeleton_compressor"),
                    doc.book_skeleton,
                    target_tokens=self.config.skeleton_token_budget,
                )
                doc = self.store.update("documents", doc.id, compressed_skeleton=compressed)
            doc = self.store.update("documents", doc.id, status=DocumentStatus.PROCESSING, error=None)

            context = chapter_context(doc.book_skeleton, doc.compressed_skeleton)
            stitcher = self.providers.for_role("chapter_stitcher")
            spans = word_spans(text)
            outputs: dict[tuple[int, int], str] = {}

            for p, c, chapter in doc.structure.chapters():
                self.cancel_token.raise_if_cancelled()
                chapter_text = slice_words(text, chapter.start, chapter.end, spans)
                chapter_rec = self._chapter_record(doc, p, c, chapter, chapter_text)
                if chapter_rec.status == ChunkStatus.COMPLETED:
                    outputs[(p, c)] = chapter_rec.output
                    continue
                if not chapter_text.strip():
                    self.store.update("chapters", chapter_rec.id, status=ChunkStatus.COMPLETED)
                    outputs[(p, c)] = ""
                    continue

                instructions = doc.custom_instructions
                extra = chapter_instructions(chapter) if chapter_instructions is not None else None
                if extra:
                    instructions = f"{instructions}\n\n{extra}" if instructions else extra
                results = self._process_chapter(doc, chapter_rec, chapter_text, context, instructions)
                stitched = stitch_chapter(stitcher, context, results)
                if stitched.fallback_used:
                    self.callbacks.on_warning(f"{chapter.title}: stitcher fell back to joined chunks")
                self.store.update(
                    "chapters", chapter_rec.id,
                    output=stitched.output, delta=stitched.delta, status=ChunkStatus.COMPLETED,
                )
                outputs[(p, c)] = stitched.output
                if on_chapter_done is not None:
                    on_chapter_done(chapter, stitched.output)

            final_output = assemble_document({k: v for k, v in outputs.items() if v})
            report: CoherenceReport | None = None
            if run_coherence:
                final_output, report = self._check_and_repair(final_output, doc)
                if not report.passed and not report.repaired:
                    self.callbacks.on_warning(
                        f"Coherence: {report.summary.errors} error(s), {report.summary.warnings} warning(s)"
                    )
            doc = self.store.update(
                "documents", doc.id,
                final_output=final_output, coherence=report, status=_finish_status(report),
            )
        except JobCancelled:
            self.store.update("documents", doc.id, status=DocumentStatus.CANCELLED)
            logger.warning("Document %s cancelled", doc.id)
            raise
        except Exception as e:
            logger.exception("HCC processing failed for document %s", doc.id)
            doc = self.store.update("documents", doc.id, status=DocumentStatus.FAILED, error=str(e))
            return self._result(doc)

        output_words = count_words(doc.final_output)
        logger.info(
            "Document %s done: %d -> %d words (ratio %.3f, target %.3f) in %.1fs",
            doc.id, word_count, output_words,
            output_words / word_count if word_count else 1.0,
            doc.length_config.length_ratio, time.monotonic() - started,
        )
        return self._result(doc)

    def get_partial_output(self, document_id: str) -> str:
        """Completed chapter outputs plus checkpointed chunks of the chapter in flight."""
        chapters = sorted(
            self.store.find("chapters", document_id=document_id),
            key=lambda r: (r.part_index, r.chapter_index),
        )
        pieces: list[str] = []
        for chapter in chapters:
            if chapter.status == ChunkStatus.COMPLETED:
                pieces.append(chapter.output)
                continue
            chunks = sorted(
                self.store.find("chunks", chapter_id=chapter.id, status=ChunkStatus.COMPLETED),
                key=lambda r: r.chunk_index,
            )
            pieces.extend(r.output_text for r in chunks)
        return assemble_part(p for p in pieces if p)
