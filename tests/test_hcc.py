"""End-to-end tests for HccPipeline with a deterministic echo model."""

from __future__ import annotations

import pytest

from hcc_pipeline.errors import JobCancelled
from hcc_pipeline.hcc import CancellationToken, HccPipeline
from hcc_pipeline.models import DocumentStatus, LengthMode

from conftest import SKELETON_JSON, EchoEditor, FakeProvider, document, paragraph, words


def _pipeline(config, store, provider, **kwargs) -> HccPipeline:
    return HccPipeline(config, store, provider=provider, **kwargs)


class TestProcess:
    def test_maintain_pass_echoes_document(self, config, store, echo_provider, record_sleep):
        text = document()
        result = _pipeline(config, store, echo_provider, sleep=record_sleep).process(text)

        assert result.success
        assert result.status == DocumentStatus.COMPLETE
        assert result.output == text
        assert result.skeleton.master_thesis == SKELETON_JSON["master_thesis"]
        assert result.coherence.passed
        # extract, compress, two chunks, one stitch
        assert len(echo_provider.requests) == 5

    def test_records_are_checkpointed(self, config, store, echo_provider, record_sleep):
        result = _pipeline(config, store, echo_provider, sleep=record_sleep).process(document())
        doc = store.get("documents", result.document_id)
        assert doc.length_config.length_mode == LengthMode.MAINTAIN
        assert doc.compressed_skeleton == "Compressed skeleton context."
        chunks = store.find("chunks", document_id=result.document_id)
        assert [c.chunk_index for c in chunks] == [0, 1]
        assert all(c.output_words == 500 for c in chunks)
        chapters = store.find("chapters", document_id=result.document_id)
        assert len(chapters) == 1
        assert chapters[0].title == "Section 1"

    def test_delay_between_chunks(self, config, store, echo_provider, sleeps, record_sleep):
        config.chunk_delay_ms = 2000
        _pipeline(config, store, echo_provider, sleep=record_sleep).process(document())
        assert sleeps == [2.0]

    def test_single_chunk_chapter_skips_stitcher(self, config, store, echo_provider):
        result = _pipeline(config, store, echo_provider).process(document(paragraphs=3))
        assert result.success
        assert len(echo_provider.requests) == 3

    def test_document_within_one_chunk(self, config, store, echo_provider):
        config.target_chunk_size = 1000
        text = document()
        result = _pipeline(config, store, echo_provider).process(text)

        assert result.success
        assert result.status == DocumentStatus.COMPLETE
        assert result.output == text
        assert result.coherence.violations == []
        # extract, compress, one chunk; no stitch
        assert len(echo_provider.requests) == 3
        assert sum("CHUNK TEXT:" in p for p in echo_provider.prompts) == 1
        assert not any("PROCESSED CHUNKS:" in p for p in echo_provider.prompts)
        assert len(store.find("chunks", document_id=result.document_id)) == 1

    def test_oversized_document_rejected(self, config, store, echo_provider):
        config.max_words = 10
        result = _pipeline(config, store, echo_provider).process(words(20))
        assert not result.success
        assert "10 word limit" in result.error
        assert echo_provider.requests == []
        assert store.find("documents") == []

    def test_finished_document_returned_as_is(self, config, store, echo_provider, record_sleep):
        pipeline = _pipeline(config, store, echo_provider, sleep=record_sleep)
        first = pipeline.process(document())
        calls = len(echo_provider.requests)
        again = pipeline.process(document(), document_id=first.document_id)
        assert again.output == first.output
        assert len(echo_provider.requests) == calls


class TestResume:
    def test_failed_chunk_then_resume(self, config, store, echo_editor, echo_provider, record_sleep):
        text = document()
        echo_editor.fail_chunk_containing = "Paragraph 5 sentence 0"
        pipeline = _pipeline(config, store, echo_provider, sleep=record_sleep)

        failed = pipeline.process(text)
        assert not failed.success
        assert failed.status == DocumentStatus.FAILED
        assert "[503] service unavailable" in failed.error
        assert pipeline.get_partial_output(failed.document_id) == "\n\n".join(paragraph(i) for i in range(5))

        echo_editor.fail_chunk_containing = None
        before = len(echo_provider.requests)
        resumed = pipeline.process(text, document_id=failed.document_id)

        assert resumed.success
        assert resumed.document_id == failed.document_id
        assert resumed.output == text
        # Only the failed chunk and the stitch are redone.
        assert len(echo_provider.requests) - before == 2
        assert sum("Extract and return as JSON" in p for p in echo_provider.prompts) == 1

    def test_cancelled_before_first_chapter(self, config, store, echo_provider):
        token = CancellationToken()
        token.cancel()
        pipeline = _pipeline(config, store, echo_provider, cancel_token=token)
        with pytest.raises(JobCancelled):
            pipeline.process(document())
        [doc] = store.find("documents")
        assert doc.status == DocumentStatus.CANCELLED
        assert store.find("chunks") == []


class TestCoherenceRepair:
    def _skeleton(self) -> dict:
        return {
            **SKELETON_JSON,
            "core_commitments": SKELETON_JSON["core_commitments"] + [
                {"type": "asserts", "claim": "Markets coordinate dispersed knowledge better than planners."},
            ],
        }

    def test_single_repair_pass(self, config, store, record_sleep):
        provider = FakeProvider(handler=EchoEditor(skeleton=self._skeleton()))
        result = _pipeline(config, store, provider, sleep=record_sleep).process(document())

        assert result.success
        assert result.status == DocumentStatus.COMPLETE
        assert result.coherence.passed is False
        assert result.coherence.summary.commitments_missing == 1
        assert result.coherence.repaired
        assert result.output.endswith("Markets coordinate dispersed knowledge better than planners.")
        assert sum("MISSING COMMITMENTS" in p for p in provider.prompts) == 1

    def test_repair_disabled_completes_with_warnings(self, config, store, record_sleep):
        config.coherence_repair = False
        provider = FakeProvider(handler=EchoEditor(skeleton=self._skeleton()))
        result = _pipeline(config, store, provider, sleep=record_sleep).process(document())

        assert result.success
        assert result.status == DocumentStatus.COMPLETED_WITH_WARNINGS
        assert result.output == document()
        assert not any("MISSING COMMITMENTS" in p for p in provider.prompts)
