"""Tests for the outer pipeline stages, the full run and the CLI."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sentinel_research import pipeline
from sentinel_research.drafting import DraftSettings
from sentinel_research.gateway import WEB_FETCH, WEB_SEARCH, GatewayReply, GroundingChunk, QuotaExceededError
from sentinel_research.models import (
    DEFAULT_REPORT_STRUCTURE, Attachment, ClaimVerification, DeepResearchResult, FinalMetadata,
    IntelligenceReport, ReportSection, ResearchLink,
)
from sentinel_research.prompts import GAP_ANALYSIS_INSTRUCTION
from sentinel_research.research.harvester import HarvestSettings


def _run(coro):
    return asyncio.run(coro)


def role(call, name):
    return call.system is not None and name in call.system


class TestStrategyPhase:
    def test_pure_topic_mode_seeds_query(self, fake_gateway_factory):
        def responder(call):
            if role(call, "Target Systems Analyst"):
                return {"entities": [{"name": "Houthi movement", "type": "Organization", "context": "c"}]}
            return {"reliability_assessment": "N/A - Open Source Research Initiation"}

        gw = fake_gateway_factory(responder)
        plan, entities = _run(pipeline.run_strategy_phase(gw, "", [], "Red Sea shipping"))

        assert plan.search_queries == ["Comprehensive background research on: Red Sea shipping"]
        assert [e.name for e in entities] == ["Houthi movement"]
        assert len(gw.calls) == 2
        assert all(c.prompt == "MISSION OBJECTIVE / RESEARCH TOPIC: Red Sea shipping" for c in gw.calls)
        assert all(c.tier == "quality" for c in gw.calls)

    def test_raw_intel_mode_collects_urls(self, fake_gateway_factory):
        raw = "Report received. See https://intel.example/a and https://intel.example/b for details. " * 2

        def responder(call):
            if role(call, "Target Systems Analyst"):
                return {"entities": []}
            return {"search_queries": ["q1"], "found_urls": ["https://intel.example/a"]}

        gw = fake_gateway_factory(responder)
        plan, entities = _run(pipeline.run_strategy_phase(gw, raw, [], "", use_fallback=True))

        assert plan.search_queries == ["q1"]
        assert plan.found_urls == ["https://intel.example/a", "https://intel.example/b"]
        assert entities == []
        assert gw.calls[0].prompt.startswith("RAW INTEL: Report received.")
        assert {c.tier for c in gw.calls} == {"fallback"}

    def test_attachments_only_seeds_generic_query(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {})
        att = Attachment(name="brief.txt", text_content="notes")
        plan, _ = _run(pipeline.run_strategy_phase(gw, "", [att], ""))
        assert plan.search_queries == ["Context and background investigation for provided intelligence"]
        assert gw.calls[0].attachments == [att]

    def test_quota_cancels_sibling_call(self, fake_gateway_factory):
        cancelled = []

        async def responder(call):
            if role(call, "Target Systems Analyst"):
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(True)
                    raise
            return QuotaExceededError("quota")

        gw = fake_gateway_factory(responder)
        with pytest.raises(QuotaExceededError):
            _run(pipeline.run_strategy_phase(gw, "", [], "topic"))
        assert cancelled == [True]

    def test_errors_propagate(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("service down"))
        with pytest.raises(RuntimeError):
            _run(pipeline.run_strategy_phase(gw, "", [], "topic"))


class TestStructurePhase:
    def test_parsed_structure(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"sections": [{"title": "Background", "type": "text"}]})
        structure = _run(pipeline.run_structure_phase(gw, "context"))
        assert [s.title for s in structure.sections] == ["Background"]

    def test_empty_sections_use_default(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"sections": []})
        assert _run(pipeline.run_structure_phase(gw, "context")) == DEFAULT_REPORT_STRUCTURE

    def test_unknown_section_type_coerced_to_text(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"sections": [
            {"title": "Timeline", "type": "timeline"},
            {"title": "Key Actors", "type": "LIST"},
        ]})
        structure = _run(pipeline.run_structure_phase(gw, "context"))
        assert [(s.title, s.type) for s in structure.sections] == [("Timeline", "text"), ("Key Actors", "list")]

    def test_unparsable_uses_default(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: "no json at all")
        structure = _run(pipeline.run_structure_phase(gw, "context"))
        assert len(structure.sections) == 4
        assert structure.sections[2].type == "list"


class TestQueryHelpers:
    def test_generate_more_queries(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"queries": [" new one ", "", "new two"]})
        queries = _run(pipeline.generate_more_queries(gw, "raw", ["old"], "focus"))
        assert queries == ["new one", "new two"]
        assert 'CURRENT STRATEGY: ["old"]' in gw.calls[0].prompt

    def test_generate_more_queries_fails_open(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("boom"))
        assert _run(pipeline.generate_more_queries(gw, "raw", [], "")) == []

    def test_structural_gaps_fail_open_but_quota_propagates(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("boom"))
        assert _run(pipeline.identify_structural_gaps(gw, DEFAULT_REPORT_STRUCTURE, "ctx")) == []

        gw = fake_gateway_factory(lambda call: QuotaExceededError("quota"))
        with pytest.raises(QuotaExceededError):
            _run(pipeline.identify_structural_gaps(gw, DEFAULT_REPORT_STRUCTURE, "ctx"))

    def test_analyze_research_coverage(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"queries": ["who funds them"]})
        queries = _run(pipeline.analyze_research_coverage(gw, "ctx", ["funding"], "mission"))
        assert queries == ["who funds them"]
        assert gw.calls[0].system == GAP_ANALYSIS_INSTRUCTION


class TestFinalizePhase:
    def test_metadata(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"report_title": "RED SEA ASSESSMENT",
                                                "overall_confidence": "High Probability"})
        meta = _run(pipeline.run_finalize_phase(gw, [ReportSection("A", "text", "body")], "B2"))
        assert meta.report_title == "RED SEA ASSESSMENT"
        assert meta.overall_confidence == "High Probability"
        assert "RELIABILITY: B2" in gw.calls[0].prompt

    def test_failure_gives_draft_metadata(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("boom"))
        meta = _run(pipeline.run_finalize_phase(gw, [], "B2"))
        assert meta.report_title == "INTELLIGENCE REPORT (DRAFT)"
        assert meta.executive_summary == "Summary generation failed."

    def test_quota_propagates(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: QuotaExceededError("quota"))
        with pytest.raises(QuotaExceededError):
            _run(pipeline.run_finalize_phase(gw, [], "B2"))


class TestRefineSection:
    def _report(self):
        return IntelligenceReport(
            metadata=FinalMetadata(),
            sections=[ReportSection("Background", "text", "old text")],
        )

    def test_unknown_section(self, fake_gateway_factory):
        gw = fake_gateway_factory()
        with pytest.raises(KeyError):
            _run(pipeline.refine_section(gw, self._report(), "Missing", "shorter"))

    def test_refined_content(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"content": "new text"})
        assert _run(pipeline.refine_section(gw, self._report(), "Background", "shorter")) == "new text"

    def test_failure_keeps_current(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("boom"))
        assert _run(pipeline.refine_section(gw, self._report(), "Background", "shorter")) == "old text"


class TestVerifyClaim:
    def test_verdict_with_grounding(self, fake_gateway_factory):
        def responder(call):
            return GatewayReply(
                text='{"status": "Verified"}',
                data=ClaimVerification(status="Verified", explanation="Confirmed by wire reports."),
                grounding=[
                    GroundingChunk(url="https://www.reuters.com/a", title="Reuters"),
                    GroundingChunk(url="https://www.google.com/url?q=x"),
                ],
            )

        gw = fake_gateway_factory(responder)
        result = _run(pipeline.verify_claim(gw, "Port closed on 3 May"))

        assert result.status == "Verified"
        assert [s.url for s in result.sources] == ["https://www.reuters.com/a"]
        assert gw.calls[0].tools == [WEB_SEARCH]
        assert gw.calls[0].search_query == "Port closed on 3 May"
        assert gw.calls[0].prompt == 'Verify: "Port closed on 3 May". JSON Output.'

    def test_status_case_normalised(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: {"status": "disputed", "explanation": "Conflicting reports."})
        result = _run(pipeline.verify_claim(gw, "claim"))
        assert result.status == "Disputed"
        assert result.sources == []

    def test_failure_is_inconclusive(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("search down"))
        result = _run(pipeline.verify_claim(gw, "claim"))
        assert result.status == "Inconclusive"
        assert result.explanation == "Verification service unavailable."

    def test_quota_propagates(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: QuotaExceededError("quota"))
        with pytest.raises(QuotaExceededError):
            _run(pipeline.verify_claim(gw, "claim"))


class TestDeepResearch:
    def test_links_merged_with_grounding(self, fake_gateway_factory):
        def responder(call):
            return GatewayReply(
                text="{}",
                data=DeepResearchResult(
                    content="Funding flows through front companies.",
                    links=[ResearchLink(url="https://a.example/x", title="A", summary="s")],
                ),
                grounding=[
                    GroundingChunk(url="https://a.example/x", title="dup"),
                    GroundingChunk(url="https://b.example/y"),
                ],
            )

        gw = fake_gateway_factory(responder)
        result = _run(pipeline.conduct_deep_research(gw, "Houthi finance", "context " * 5000))

        assert result.title == "Houthi finance"
        assert [link.url for link in result.links] == ["https://a.example/x", "https://b.example/y"]
        assert result.links[0].title == "A"
        assert result.links[1].title == "B.example"
        assert result.links[1].summary == "Search Result"
        call = gw.calls[0]
        assert call.prompt.startswith('Deep research on "Houthi finance". Context: context')
        assert len(call.prompt) < 10100
        assert call.search_query == "Houthi finance"

    def test_failure_fails_open(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: RuntimeError("boom"))
        result = _run(pipeline.conduct_deep_research(gw, "topic", "ctx"))
        assert result.title == "topic"
        assert result.content == "Research subsystem unavailable."
        assert result.links == []

    def test_quota_propagates(self, fake_gateway_factory):
        gw = fake_gateway_factory(lambda call: QuotaExceededError("quota"))
        with pytest.raises(QuotaExceededError):
            _run(pipeline.conduct_deep_research(gw, "topic", "ctx"))


def _full_run_responder(call):
    if WEB_FETCH in call.tools:
        url = call.fetch_urls[0]
        return {"title": f"Page {url}", "summary": "shipping attacks summary", "facts": ["shipping fact"]}
    if WEB_SEARCH in call.tools:
        slug = call.search_query.replace(" ", "-")
        return GatewayReply(text=f"shipping findings for {call.search_query}",
                            grounding=[GroundingChunk(url=f"https://news.example/{slug}")])
    if role(call, "Senior Research Analyst Planner"):
        return {"reliability_assessment": "B2", "search_queries": ["shipping attacks"]}
    if role(call, "Target Systems Analyst"):
        return {"entities": [{"name": "Port Authority", "type": "Organization"}]}
    if call.system == GAP_ANALYSIS_INSTRUCTION:
        return {"queries": []}
    if role(call, "Report Architect"):
        return {"sections": [{"title": "Shipping Attacks", "type": "text", "guidance": "attacks on shipping"}]}
    if role(call, "Content Coverage Analyst"):
        return {"queries": ["port security upgrades"]}
    if role(call, "Intelligence Desk Officer"):
        return {"content": "Attacks rose [Source 1].", "claims": ["Attacks rose [Source 1]"]}
    if role(call, "Senior Intelligence Editor"):
        return {"verdict": "Approved"}
    if role(call, "Principal Analyst"):
        return {"report_title": "SHIPPING ASSESSMENT", "executive_summary": "Summary."}
    raise AssertionError(f"unexpected call: {call.system!r}")


def test_run_pipeline_end_to_end(fake_gateway_factory):
    gw = fake_gateway_factory(_full_run_responder)
    messages = []

    report = _run(pipeline.run_pipeline(
        gw,
        instructions="Assess Red Sea shipping",
        urls=["https://direct.example/a"],
        harvest_settings=HarvestSettings(url_dispatch_delay=0, query_batch_delay=0),
        draft_settings=DraftSettings(section_batch_delay=0),
        progress_callback=messages.append,
    ))

    assert report.metadata.report_title == "SHIPPING ASSESSMENT"
    assert report.reliability == "B2"
    assert [s.title for s in report.sections] == ["Shipping Attacks"]
    assert report.sections[0].content == "Attacks rose [Source 1]."
    assert [e.name for e in report.entities] == ["Port Authority"]
    assert {s.url for s in report.sources} == {
        "https://direct.example/a",
        "https://news.example/shipping-attacks",
        "https://news.example/port-security-upgrades",
    }
    assert report.failed_sources == []
    # Structural gap query harvested with the same dedup state
    searches = [c.search_query for c in gw.calls if WEB_SEARCH in c.tools]
    assert searches == ["shipping attacks", "port security upgrades"]
    assert any("Phase 4" in m for m in messages)

    payload = pipeline.report_to_dict(report)
    assert json.loads(json.dumps(payload))["metadata"]["report_title"] == "SHIPPING ASSESSMENT"


def test_run_pipeline_logs_progress_without_callback(fake_gateway_factory, caplog):
    caplog.set_level(logging.INFO, logger="sentinel_research.pipeline")
    gw = fake_gateway_factory(_full_run_responder)

    _run(pipeline.run_pipeline(
        gw,
        instructions="Assess Red Sea shipping",
        harvest_settings=HarvestSettings(url_dispatch_delay=0, query_batch_delay=0),
        draft_settings=DraftSettings(section_batch_delay=0),
    ))

    assert "Initiating Phase 1: Strategic Triage..." in caplog.messages
    assert "Initiating Phase 4: Drafting Content..." in caplog.messages


def test_run_pipeline_quota_is_fatal(fake_gateway_factory):
    def responder(call):
        if role(call, "Report Architect"):
            return QuotaExceededError("quota")
        return _full_run_responder(call)

    gw = fake_gateway_factory(responder)
    with pytest.raises(QuotaExceededError):
        _run(pipeline.run_pipeline(
            gw, instructions="topic",
            harvest_settings=HarvestSettings(url_dispatch_delay=0, query_batch_delay=0),
        ))


class TestCli:
    def test_requires_topic_or_input(self):
        with pytest.raises(SystemExit):
            pipeline.parse_arguments([])

    def test_arguments(self):
        args = pipeline.parse_arguments([
            "--topic", "Red Sea", "--url", "https://a.example", "--url", "https://b.example", "--fallback",
        ])
        assert args.topic == "Red Sea"
        assert args.url == ["https://a.example", "https://b.example"]
        assert args.fallback is True
        assert args.output == "report.json"

    def test_main_writes_report(self, tmp_path):
        out = tmp_path / "report.json"
        report = IntelligenceReport(
            metadata=FinalMetadata(report_title="T"),
            sections=[ReportSection("A", "list", ["x", "y"])],
        )
        fake_gateway = MagicMock()
        fake_gateway.aclose = AsyncMock()

        with patch.object(pipeline, "Gateway", return_value=fake_gateway), \
                patch.object(pipeline, "run_pipeline", new=AsyncMock(return_value=report)) as run:
            code = pipeline.main(["--topic", "Red Sea", "--output", str(out)])

        assert code == 0
        assert run.await_args.kwargs["instructions"] == "Red Sea"
        fake_gateway.aclose.assert_awaited_once()
        data = json.loads(out.read_text())
        assert data["metadata"]["report_title"] == "T"
        assert data["sections"][0]["content"] == ["x", "y"]

    def test_main_quota_exit_code(self, tmp_path):
        fake_gateway = MagicMock()
        fake_gateway.aclose = AsyncMock()

        with patch.object(pipeline, "Gateway", return_value=fake_gateway), \
                patch.object(pipeline, "run_pipeline", new=AsyncMock(side_effect=QuotaExceededError("q"))):
            code = pipeline.main(["--topic", "x", "--output", str(tmp_path / "r.json")])

        assert code == 2
        assert not (tmp_path / "r.json").exists()
