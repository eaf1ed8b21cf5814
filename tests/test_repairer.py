"""Tests for the coherence repair pass."""

from __future__ import annotations

from hcc_pipeline.agents.repairer import repair_output
from hcc_pipeline.errors import ProviderError
from hcc_pipeline.hcc import check_and_repair
from hcc_pipeline.models import BookSkeleton

from conftest import FakeProvider

SKELETON = BookSkeleton.model_validate({
    "master_thesis": "Trade benefits both sides.",
    "core_commitments": [
        {"claim": "Trade benefits both sides."},
        {"claim": "Tariffs raise prices for consumers."},
        {"claim": "Comparative advantage drives specialization."},
    ],
})

OUTPUT = "Trade benefits both sides. Comparative advantage drives specialization."


class TestRepairOutput:
    def test_restores_missing_commitment(self):
        provider = FakeProvider([f"REPAIRED_OUTPUT:\n{OUTPUT} Tariffs raise prices for consumers."])
        text, repaired = repair_output(provider, OUTPUT, ["Tariffs raise prices for consumers."], SKELETON)
        assert repaired is True
        assert text.endswith("Tariffs raise prices for consumers.")
        assert "Tariffs raise prices for consumers." in provider.requests[0].prompt

    def test_raw_reply_accepted_without_marker(self):
        provider = FakeProvider([f"{OUTPUT} Tariffs raise prices for consumers."])
        _, repaired = repair_output(provider, OUTPUT, ["Tariffs raise prices for consumers."], SKELETON)
        assert repaired is True

    def test_unrestored_commitment_keeps_original(self):
        provider = FakeProvider(["REPAIRED_OUTPUT:\nSomething else entirely."])
        text, repaired = repair_output(provider, OUTPUT, ["Tariffs raise prices for consumers."], SKELETON)
        assert repaired is False
        assert text == OUTPUT

    def test_provider_error_is_unsuccessful_repair(self):
        provider = FakeProvider([ProviderError(503, "busy")])
        text, repaired = repair_output(provider, OUTPUT, ["Tariffs raise prices for consumers."], SKELETON)
        assert (text, repaired) == (OUTPUT, False)

    def test_nothing_missing_makes_no_call(self):
        provider = FakeProvider([])
        assert repair_output(provider, OUTPUT, [], SKELETON) == (OUTPUT, True)
        assert provider.requests == []


class TestCheckAndRepair:
    def test_three_commitments_one_repaired(self):
        provider = FakeProvider([f"REPAIRED_OUTPUT:\n{OUTPUT} Tariffs raise prices for consumers."])
        text, report = check_and_repair(OUTPUT, SKELETON, repair_provider=provider)
        assert report.passed is False
        assert report.summary.commitments_missing == 1
        assert report.repair_attempted and report.repaired
        assert "Tariffs raise prices" in text
        # Repair is single pass: exactly one call, no re-check loop.
        assert len(provider.requests) == 1

    def test_failed_repair_keeps_output(self):
        provider = FakeProvider(["REPAIRED_OUTPUT:\nGarbage."])
        text, report = check_and_repair(OUTPUT, SKELETON, repair_provider=provider)
        assert text == OUTPUT
        assert report.repair_attempted and not report.repaired

    def test_no_repair_provider(self):
        text, report = check_and_repair(OUTPUT, SKELETON)
        assert text == OUTPUT
        assert report.repair_attempted is False

    def test_passing_output_skips_repair(self):
        provider = FakeProvider([])
        full = OUTPUT + " Tariffs raise prices for consumers."
        _, report = check_and_repair(full, SKELETON, repair_provider=provider)
        assert report.passed
        assert provider.requests == []
