"""Tests for the four-stage PipelineService."""

from __future__ import annotations

import pytest

from hcc_pipeline.errors import JobNotFoundError
from hcc_pipeline.logging_config import NullCallbacks
from hcc_pipeline.models import BatchRecord, ChapterNode, JobOptions, JobStatus, ObjectionRecord
from hcc_pipeline.pipeline import STAGE_NAMES, PipelineService, assign_objections

from conftest import SKELETON_JSON, EchoEditor, FakeProvider, document


@pytest.fixture
def pipeline_config(config):
    config.objection_count = 3
    config.objection_batch_size = 2
    return config


def _service(config, store, provider, record_sleep, callbacks=None) -> PipelineService:
    return PipelineService(config, store, provider=provider, callbacks=callbacks, sleep=record_sleep)


def _count(provider: FakeProvider, phrase: str) -> int:
    return sum(phrase in p for p in provider.prompts)


class _CancelAfterStage(NullCallbacks):
    def __init__(self, stage: str) -> None:
        self.stage = stage
        self.service: PipelineService | None = None
        self.job_id = ""

    def on_stage_end(self, stage: str, success: bool) -> None:
        if stage == self.stage:
            self.service.cancel_job(self.job_id)


class TestFullRun:
    def test_four_stages(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        text = document()
        job_id = service.create_job(text, JobOptions(target_audience="students"))
        result = service.run_job(job_id)

        assert result.success
        assert result.status == JobStatus.COMPLETE
        assert list(result.outputs) == [STAGE_NAMES[n] for n in (1, 2, 3, 4)]
        assert result.outputs["reconstruction"] == text
        assert result.outputs["objections"].startswith("# 3 OBJECTIONS WITH RESPONSES")
        assert result.outputs["responses"].startswith("# 3 ENHANCED RESPONSES")
        assert result.outputs["integration"] == text
        assert result.coherence.passed
        assert result.coherence.summary.responses_not_integrated == 3
        assert result.coherence.summary.objections_not_addressed == 0

        # Two claim batches (2 + 1) for objections and for responses.
        assert _count(echo_provider, "claims that could be objected to") == 1
        assert _count(echo_provider, "Generate objections and responses") == 2
        assert _count(echo_provider, "Enhance these responses") == 2

    def test_objection_records(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())
        service.run_job(job_id)

        objections = service.get_objections(job_id)
        assert [o.index for o in objections] == [1, 2, 3]
        for o in objections:
            assert o.enhanced_response == f"Enhanced answer {o.index}. More detail."
            assert o.integrated_in_section == "Section 1"
            assert o.integration_verified

    def test_integration_prompts_carry_objections(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        service.run_job(service.create_job(document()))
        integration = [p for p in echo_provider.prompts if "OBJECTIONS TO ANSWER IN THIS SECTION" in p]
        assert integration
        assert "Enhanced answer 1. More detail." in integration[0]

    def test_status_view(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())
        service.run_job(job_id)

        status = service.get_status(job_id)
        assert status.status == JobStatus.COMPLETE
        assert status.stage == 4
        assert status.word_counts["original"] == 1000
        assert status.word_counts["reconstruction"] == 1000
        assert status.word_counts["integration"] == 1000
        assert status.error is None

    def test_stage_records_persisted(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())
        service.run_job(job_id)

        job = store.get("jobs", job_id)
        assert all(job.stages[n].started_at and job.stages[n].ended_at for n in (1, 2, 3, 4))
        assert job.stages[1].skeleton["master_thesis"] == SKELETON_JSON["master_thesis"]
        assert job.stages[2].skeleton["objection_types"]["empirical"] == [1, 2, 3]
        reconciliation = job.stages[4].skeleton["commitment_reconciliation"]
        assert [r["preserved"] for r in reconciliation] == [True, True]
        assert job.stages[4].skeleton["length_target"]["target_min_words"] == 1100
        assert job.stages[4].skeleton["length_target"]["target_max_words"] == 1300


class TestFailureAndResume:
    def test_stage_failure_then_resume(self, pipeline_config, store, echo_editor, echo_provider, record_sleep):
        echo_editor.fail_on = "Enhance these responses"
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())

        failed = service.run_job(job_id)
        assert not failed.success
        assert failed.status == JobStatus.FAILED
        assert failed.errors == ["Stage 'responses' failed: [503] service unavailable"]
        assert list(service.get_outputs(job_id)) == ["reconstruction", "objections"]
        assert service.get_status(job_id).stage == 3

        echo_editor.fail_on = None
        resumed = service.resume_job(job_id)
        assert resumed.success
        assert resumed.status == JobStatus.COMPLETE
        assert resumed.errors == []
        # Stages 1 and 2 were not redone.
        assert _count(echo_provider, "claims that could be objected to") == 1
        assert _count(echo_provider, "Generate objections and responses") == 2
        assert len(service.get_objections(job_id)) == 3

    def test_crash_before_batch_checkpoint_does_not_duplicate_objections(
        self, pipeline_config, store, echo_provider, record_sleep, monkeypatch,
    ):
        insert = store.insert
        armed = [True]

        def crash_on_first_batch(collection, record):
            if armed[0] and isinstance(record, BatchRecord) and record.stage == 2 and record.batch_index == 0:
                armed[0] = False
                raise OSError("disk full")
            return insert(collection, record)

        monkeypatch.setattr(store, "insert", crash_on_first_batch)
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())

        failed = service.run_job(job_id)
        assert failed.status == JobStatus.FAILED
        assert len(store.find("objections", job_id=job_id)) == 2

        resumed = service.resume_job(job_id)
        assert resumed.status == JobStatus.COMPLETE
        assert [o.index for o in service.get_objections(job_id)] == [1, 2, 3]
        assert [o.batch_index for o in service.get_objections(job_id)] == [0, 0, 1]

    def test_resume_finished_job_is_noop(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())
        first = service.run_job(job_id)
        calls = len(echo_provider.requests)

        again = service.resume_job(job_id)
        assert again.status == first.status
        assert again.outputs == first.outputs
        assert len(echo_provider.requests) == calls

    def test_unknown_job(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        with pytest.raises(JobNotFoundError):
            service.get_status("missing")
        with pytest.raises(KeyError):
            service.resume_job("missing")


class TestCancellation:
    def test_cancel_pending_job(self, pipeline_config, store, echo_provider, record_sleep):
        service = _service(pipeline_config, store, echo_provider, record_sleep)
        job_id = service.create_job(document())
        service.cancel_job(job_id)
        assert service.get_status(job_id).status == JobStatus.CANCELLED
        assert echo_provider.requests == []

    def test_cancel_between_stages_then_resume(self, pipeline_config, store, echo_provider, record_sleep):
        callbacks = _CancelAfterStage("Stage 1")
        service = _service(pipeline_config, store, echo_provider, record_sleep, callbacks=callbacks)
        job_id = service.create_job(document())
        callbacks.service, callbacks.job_id = service, job_id

        cancelled = service.run_job(job_id)
        assert cancelled.status == JobStatus.CANCELLED
        assert not cancelled.success
        assert list(cancelled.outputs) == ["reconstruction"]
        assert _count(echo_provider, "claims that could be objected to") == 0

        callbacks.stage = ""
        resumed = service.resume_job(job_id)
        assert resumed.status == JobStatus.COMPLETE
        assert list(resumed.outputs) == list(STAGE_NAMES.values())


class TestCoherence:
    def _editor(self) -> EchoEditor:
        return EchoEditor(skeleton={
            **SKELETON_JSON,
            "core_commitments": SKELETON_JSON["core_commitments"] + [
                {"type": "asserts", "claim": "Markets coordinate dispersed knowledge better than planners."},
            ],
        })

    def test_repair_after_integration(self, pipeline_config, store, record_sleep):
        provider = FakeProvider(handler=self._editor())
        service = _service(pipeline_config, store, provider, record_sleep)
        job_id = service.create_job(document())
        result = service.run_job(job_id)

        assert result.status == JobStatus.COMPLETE
        assert result.coherence.repaired
        assert store.get("jobs", job_id).repair_attempts == 1
        assert "Markets coordinate dispersed knowledge" in result.outputs["integration"]
        # Stages 1 and 4 skip the check; it runs once at the end.
        assert _count(provider, "MISSING COMMITMENTS") == 1

    def test_repair_disabled(self, pipeline_config, store, record_sleep):
        pipeline_config.coherence_repair = False
        provider = FakeProvider(handler=self._editor())
        service = _service(pipeline_config, store, provider, record_sleep)
        result = service.run_job(service.create_job(document()))

        assert result.success
        assert result.status == JobStatus.COMPLETED_WITH_WARNINGS
        assert result.coherence.summary.commitments_missing == 1
        assert store.get("jobs", result.job_id).repair_attempts == 0


class TestAssignObjections:
    def test_claim_match_then_spread(self):
        text = "alpha beta gamma delta"
        chapters = [ChapterNode(title="A", start=0, end=2), ChapterNode(title="B", start=2, end=4)]
        objections = [
            ObjectionRecord(job_id="j", index=1, claim_targeted="gamma delta"),
            ObjectionRecord(job_id="j", index=2, claim_targeted="nowhere to be found"),
            ObjectionRecord(job_id="j", index=3, claim_targeted="something else"),
        ]
        assert assign_objections(text, chapters, objections) == {0: [2], 1: [1, 3]}

    def test_no_chapters(self):
        assert assign_objections("text", [], []) == {}
