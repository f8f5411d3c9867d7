"""
Tests for report enhancement, recommendations, report updates and incident summaries.
"""

import pytest

from casualty_ai.errors import InvalidIdentifierError, NotFoundError, UpstreamUnavailableError
from conftest import INCIDENT_ID, REPORT_ID, oid, structured_response

LOCATOR_A = "https://media.example.org/evidence/a.jpg"
LOCATOR_B = "https://media.example.org/evidence/b.jpg"


async def analyze_two(analyzer, model_client):
    model_client.responses[LOCATOR_A] = structured_response(
        confidence=0.9,
        vehicles=[{"type": "sedan", "color": "red", "confidence": 0.9}],
        persons=[{"position": "driver", "confidence": 0.7}],
        weather=["rain"],
        costs=["$2,000"],
        lightingConditions="night",
    )
    model_client.responses[LOCATOR_B] = structured_response(
        confidence=0.65,
        vehicles=[
            {"type": "sedan", "color": "red"},
            {"type": "truck", "color": "white", "confidence": 0.5},
        ],
        persons=[{"position": "pedestrian"}],
        weather=["rain"],
    )
    for n, locator in ((1, LOCATOR_A), (2, LOCATOR_B)):
        await analyzer.analyze_evidence(
            oid(0xE0 + n), "image", locator, report_id=REPORT_ID, incident_id=INCIDENT_ID
        )


class TestEnhanceReport:
    """Tests for ReportEnhancer.enhance_report."""

    async def test_enhancement_from_analyses(self, enhancer, analyzer, model_client):
        """Test scores, counts and recommendations for two analyses."""
        await analyze_two(analyzer, model_client)

        enhancement = await enhancer.enhance_report(REPORT_ID)

        assert enhancement.report_id == REPORT_ID
        assert enhancement.ai_contribution == 30
        assert enhancement.overall_confidence == pytest.approx((0.9 + 0.65) / 2)
        assert "2 evidence items" in enhancement.executive_summary
        assert "2 vehicle(s) and 2 person(s)" in enhancement.executive_summary
        assert len(enhancement.vehicle_analysis) == 3
        assert enhancement.scene_analysis.weather_conditions == ["rain"]
        assert enhancement.scene_analysis.lighting_conditions == ["night"]
        assert enhancement.damage_assessment.total_estimated_cost == "$2,000"
        assert enhancement.recommendations.priority == "high"
        assert enhancement.recommendations.investigation == ["witness_statements"]
        assert enhancement.recommendations.technical == ["accident_reconstruction"]

    async def test_confidence_buckets(self, enhancer, analyzer, model_client):
        """Test high/medium/low confidence counts."""
        await analyze_two(analyzer, model_client)

        analysis = (await enhancer.enhance_report(REPORT_ID)).confidence_analysis

        assert analysis.total_analyses == 2
        assert (analysis.high_confidence_count, analysis.medium_confidence_count, analysis.low_confidence_count) == (1, 1, 0)

    async def test_contribution_is_capped(self, enhancer, analyzer):
        """Test that AI contribution never exceeds 100."""
        for n in range(7):
            await analyzer.analyze_evidence(
                oid(0xC0 + n), "image", f"https://m/{n}.jpg", report_id=REPORT_ID
            )

        enhancement = await enhancer.enhance_report(REPORT_ID)
        assert enhancement.ai_contribution == 100

    async def test_no_analyses_gives_empty_enhancement(self, enhancer):
        """Test the zero-valued result for an unanalyzed report."""
        enhancement = await enhancer.enhance_report(REPORT_ID)

        assert enhancement.ai_contribution == 0
        assert enhancement.overall_confidence == 0
        assert enhancement.vehicle_analysis == []
        assert enhancement.executive_summary == ""

    async def test_unknown_report(self, enhancer):
        """Test that enhancement requires an existing report."""
        with pytest.raises(NotFoundError):
            await enhancer.enhance_report(oid(0x404))

    async def test_invalid_report_id(self, enhancer):
        """Test identifier validation."""
        with pytest.raises(InvalidIdentifierError):
            await enhancer.enhance_report("abc")


class TestGenerateRecommendations:
    """Tests for ReportEnhancer.generate_recommendations."""

    async def test_grouped_recommendations(self, enhancer, analyzer, model_client):
        """Test grouping and the highest investigation priority."""
        await analyze_two(analyzer, model_client)

        recommendations = await enhancer.generate_recommendations(REPORT_ID)

        assert recommendations.investigation == ["witness_statements"]
        assert recommendations.legal == []
        assert recommendations.priority == "high"

    async def test_no_analyses(self, enhancer):
        """Test the default priority when nothing was analyzed."""
        recommendations = await enhancer.generate_recommendations(REPORT_ID)

        assert recommendations.investigation == []
        assert recommendations.priority == "medium"


class TestUpdateReportWithAnalysis:
    """Tests for ReportEnhancer.update_report_with_analysis."""

    async def test_analysis_is_folded_into_content(self, enhancer, analyzer, model_client, analysis_store, reports):
        """Test that the analysis lands under content.analyses and scores are refreshed."""
        await analyze_two(analyzer, model_client)
        reports.reports[REPORT_ID].content = {"narrative": "Rear-end collision at a red light."}
        oldest = (await analysis_store.find_by_report(REPORT_ID))[-1]

        report = await enhancer.update_report_with_analysis(REPORT_ID, oldest.id)

        entry = report.content["analyses"][oldest.id]
        assert entry["type"] == "image"
        assert entry["confidence"] == oldest.confidence_score
        assert entry["results"] == oldest.analysis_result
        assert report.content["narrative"] == "Rear-end collision at a red light."
        assert "last_updated" in report.content
        assert report.ai_contribution == 30
        assert report.ai_overall_confidence == pytest.approx(0.775)
        assert reports.reports[REPORT_ID] == report

    async def test_scores_match_enhancement(self, enhancer, analyzer, model_client, analysis_store):
        """Test that stored detection and scene scores use the enhancement checklist."""
        await analyze_two(analyzer, model_client)
        newest = (await analysis_store.find_by_report(REPORT_ID))[0]

        report = await enhancer.update_report_with_analysis(REPORT_ID, newest.id)
        enhancement = await enhancer.enhance_report(REPORT_ID)

        assert report.ai_object_detection == pytest.approx(enhancement.object_detection_score)
        assert report.ai_scene_reconstruction == pytest.approx(enhancement.scene_reconstruction_score)

    async def test_successive_analyses_accumulate(self, enhancer, analyzer, model_client, analysis_store, reports):
        await analyze_two(analyzer, model_client)
        records = await analysis_store.find_by_report(REPORT_ID)

        for record in records:
            await enhancer.update_report_with_analysis(REPORT_ID, record.id)

        assert set(reports.reports[REPORT_ID].content["analyses"]) == {r.id for r in records}
        assert len(reports.updates) == 2

    async def test_unknown_analysis(self, enhancer, reports):
        """Test that a missing analysis is not found and the report is untouched."""
        with pytest.raises(NotFoundError, match="Analysis not found"):
            await enhancer.update_report_with_analysis(REPORT_ID, oid(0x404))
        assert reports.updates == []

    async def test_unknown_report(self, enhancer, analyzer):
        record = await analyzer.analyze_evidence(oid(0xE1), "image", LOCATOR_A, report_id=REPORT_ID)

        with pytest.raises(NotFoundError, match="Report not found"):
            await enhancer.update_report_with_analysis(oid(0x405), record.id)

    async def test_invalid_ids(self, enhancer):
        with pytest.raises(InvalidIdentifierError):
            await enhancer.update_report_with_analysis(REPORT_ID, "xyz")


class TestIncidentSummary:
    """Tests for ReportEnhancer.generate_incident_summary."""

    async def test_model_summary(self, enhancer, analyzer, model_client):
        """Test that the model narrates the aggregated findings."""
        await analyze_two(analyzer, model_client)

        summary = await enhancer.generate_incident_summary(INCIDENT_ID)

        assert summary.incident_id == INCIDENT_ID
        assert summary.summary == model_client.summary_text
        assert summary.analysis_count == 2
        assert summary.key_findings.vehicle_count == 2
        assert summary.key_findings.person_count == 1
        assert summary.key_findings.evidence_types == ["image"]
        assert summary.key_findings.weather_conditions == ["rain"]
        assert summary.recommendations == ["witness_statements"]
        assert "Vehicle Count: 2" in model_client.generate_calls[-1]

    async def test_template_when_model_unavailable(self, enhancer, analyzer, model_client):
        """Test the template summary on an upstream failure."""
        await analyze_two(analyzer, model_client)
        model_client.summary_text = UpstreamUnavailableError("Model client unavailable")

        summary = await enhancer.generate_incident_summary(INCIDENT_ID)

        assert summary.summary.startswith("Analysis of 2 evidence items identified up to 2 vehicle(s)")
        assert summary.overall_confidence == pytest.approx(0.775)

    async def test_template_when_model_returns_nothing(self, enhancer, analyzer, model_client):
        """Test that a blank model reply falls back to the template."""
        await analyze_two(analyzer, model_client)
        model_client.summary_text = "   "

        summary = await enhancer.generate_incident_summary(INCIDENT_ID)
        assert summary.summary.startswith("Analysis of 2 evidence items")

    async def test_no_analyses_for_incident(self, enhancer):
        """Test that an incident without analyses is not found."""
        with pytest.raises(NotFoundError, match="No AI analysis results found for incident"):
            await enhancer.generate_incident_summary(INCIDENT_ID)
