"""
Tests for the campaign orchestrator.

Tests cover:
- A full run from discovery to published opportunities
- Retry backoff across drains
- Confidence threshold, filters and duplicate skipping
- Run completion, cancellation and stale-run reaping
"""

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from oppscraper.ai import AIExtractionResult, AIExtractor, OpportunityRecord
from oppscraper.errors import CampaignNotFound, InvalidTransition, PersistenceError
from oppscraper.models import (
    Campaign, CampaignFilters, ContentItem, ContentStatus, QueueStatus, RunStatus, Source,
)
from oppscraper.orchestrator import CampaignOrchestrator
from oppscraper.queue import completion_changes

from conftest import AI_PAYLOAD, StubFetcher, sitemap_xml


class TestStartCampaignRun:
    """Tests for start_campaign_run and draining."""

    def test_full_run(self, orchestrator, gateway, campaign, source):
        """Test that discovered pages become published opportunities."""
        run = orchestrator.start_campaign_run(campaign.id)

        assert run.status == RunStatus.RUNNING
        assert run.sources_processed == 1
        assert run.items_found == 2
        assert run.items_created == 2
        assert run.errors_count == 0

        items = gateway.list_queue_items(campaign_run_id=run.id)
        assert sorted(item.url for item in items) == [
            "https://example.org/fellowship-2025",
            "https://example.org/scholarship-masters",
        ]
        assert all(item.status == QueueStatus.COMPLETED for item in items)

        contents = gateway.list_content_items()
        assert len(contents) == 2
        assert all(c.status == ContentStatus.PUBLISHED for c in contents)
        assert all(c.ai_processed and c.opportunity_id for c in contents)
        assert len(gateway.list_opportunities()) == 2
        assert gateway.get_campaign(campaign.id).current_posts == 2

        opportunity = gateway.list_opportunities()[0]
        assert opportunity["url"] in {c.source_url for c in contents}

        stored_source = gateway.get_source(source.id)
        assert stored_source.total_attempts == 2
        assert stored_source.success_rate == 100.0
        assert [log.status for log in gateway.list_logs(campaign_run_id=run.id)] == ["success", "success"]

    def test_unknown_campaign(self, orchestrator):
        """Test that a missing campaign raises CampaignNotFound."""
        with pytest.raises(CampaignNotFound, match="missing-id"):
            orchestrator.start_campaign_run("missing-id")

    def test_inactive_campaign(self, orchestrator, gateway, source):
        """Test that inactive campaigns cannot be run."""
        campaign = gateway.save_campaign(Campaign(name="Off", source_ids=[source.id], is_active=False))

        with pytest.raises(CampaignNotFound):
            orchestrator.start_campaign_run(campaign.id)

    def test_no_drain(self, orchestrator, gateway, campaign):
        """Test that drain=False only queues."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)

        assert run.items_found == 0
        assert len(gateway.list_queue_items(campaign_run_id=run.id, status=QueueStatus.QUEUED)) == 2
        assert gateway.get_campaign(campaign.id).last_run_at == run.started_at

    def test_max_posts_caps_queue(self, orchestrator, gateway, source):
        """Test that max_posts limits how many URLs are queued."""
        campaign = gateway.save_campaign(Campaign(name="One", source_ids=[source.id], max_posts=1))

        run = orchestrator.start_campaign_run(campaign.id, drain=False)

        assert len(gateway.list_queue_items(campaign_run_id=run.id)) == 1

    def test_discovery_exhausted_is_recorded(self, gateway, ai_client, clock):
        """Test that a source without URLs is noted on the run and skipped."""
        source = gateway.save_source(Source(name="Empty", root_domain="empty.example"))
        campaign = gateway.save_campaign(Campaign(name="C", source_ids=[source.id]))
        orchestrator = CampaignOrchestrator(gateway, StubFetcher(), AIExtractor(ai_client), clock=clock)

        run = orchestrator.start_campaign_run(campaign.id)

        assert run.sources_processed == 1
        assert "No content URLs discovered" in run.error_details[source.id]
        assert gateway.list_queue_items() == []


class TestRetryBackoff:
    """Tests for failing items across drains."""

    def test_backoff_then_permanent_failure(self, gateway, ai_client, clock, source, campaign):
        """Test 30s then 60s rescheduling and a permanent failure on the third attempt."""
        fetcher = StubFetcher({
            "https://example.org/sitemap.xml": sitemap_xml("https://example.org/grant-gone"),
        })
        orchestrator = CampaignOrchestrator(gateway, fetcher, AIExtractor(ai_client), max_workers=1,
                                            clock=clock)

        run = orchestrator.start_campaign_run(campaign.id)
        item = gateway.list_queue_items(campaign_run_id=run.id)[0]
        assert item.status == QueueStatus.RETRYING
        assert item.attempts == 1
        assert item.scheduled_for == clock.now + timedelta(seconds=30)
        assert item.error_message == "HTTP error! status: 404"

        assert orchestrator.drain_queue(run.id).selected == 0

        clock.advance(30)
        result = orchestrator.drain_queue(run.id)
        item = gateway.get_queue_item(item.id)
        assert result.retrying == 1
        assert item.attempts == 2
        assert item.scheduled_for == clock.now + timedelta(seconds=60)

        second_schedule = item.scheduled_for
        clock.advance(60)
        result = orchestrator.drain_queue(run.id)
        item = gateway.get_queue_item(item.id)
        assert result.failed == 1
        assert item.status == QueueStatus.FAILED
        assert item.attempts == 3
        assert item.scheduled_for == second_schedule

        clock.advance(3600)
        assert orchestrator.drain_queue(run.id).selected == 0

        stored_run = gateway.get_run(run.id)
        assert stored_run.errors_count == 3
        assert stored_run.error_details["https://example.org/grant-gone"] == "HTTP error! status: 404"
        assert gateway.get_source(source.id).successful_attempts == 0

    def test_persistence_error_fails_without_retry(self, orchestrator, gateway, campaign):
        """Test that datastore failures are never retried."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)
        orchestrator.process_queue_item = MagicMock(side_effect=PersistenceError("disk full"))

        result = orchestrator.drain_queue(run.id)

        assert result.failed == 2
        statuses = {item.status for item in gateway.list_queue_items(campaign_run_id=run.id)}
        assert statuses == {QueueStatus.FAILED}

    def test_unexpected_error_is_retried(self, orchestrator, gateway, campaign):
        """Test that an unexpected exception does not escape the drain."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)
        orchestrator.process_queue_item = MagicMock(side_effect=RuntimeError("parser crashed"))

        result = orchestrator.drain_queue(run.id)

        assert result.retrying == 2
        assert result.processed == 2

    def test_publish_failure_marks_content_failed(self, orchestrator, gateway, campaign):
        """Test that content items do not stay pending when publishing fails."""
        gateway.create_opportunity = MagicMock(side_effect=PersistenceError("disk full"))

        run = orchestrator.start_campaign_run(campaign.id)

        statuses = {item.status for item in gateway.list_queue_items(campaign_run_id=run.id)}
        assert statuses == {QueueStatus.FAILED}
        contents = gateway.list_content_items()
        assert len(contents) == 2
        assert all(c.status == ContentStatus.FAILED for c in contents)
        assert all("disk full" in c.error_message for c in contents)
        assert gateway.get_run(run.id).errors_count == 2

    def test_extraction_crash_marks_content_failed(self, orchestrator, gateway, campaign):
        """Test that an AI crash fails the content item and retries the queue item."""
        orchestrator.ai_extractor.process_scraped_content = MagicMock(side_effect=RuntimeError("model crashed"))
        run = orchestrator.start_campaign_run(campaign.id, drain=False)

        result = orchestrator.drain_queue(run.id)

        assert result.retrying == 2
        assert {c.status for c in gateway.list_content_items()} == {ContentStatus.FAILED}

    def test_completed_item_is_not_overwritten(self, orchestrator, gateway, campaign, clock):
        """Test that a late error never turns a completed queue item into a failure."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)

        def complete_then_crash(item):
            gateway.update_queue_item(item.id, **completion_changes(item, clock()))
            raise RuntimeError("bookkeeping crashed")

        orchestrator.process_queue_item = complete_then_crash

        result = orchestrator.drain_queue(run.id)

        assert result.completed == 2
        statuses = {item.status for item in gateway.list_queue_items(campaign_run_id=run.id)}
        assert statuses == {QueueStatus.COMPLETED}
        assert gateway.get_run(run.id).errors_count == 0


class TestExtractionOutcomes:
    """Tests for what happens after a page is scraped."""

    def test_low_confidence_creates_no_opportunity(self, gateway, fetcher, clock, campaign):
        """Test that confidence under the threshold leaves the item pending."""
        ai_extractor = MagicMock(spec=AIExtractor)
        ai_extractor.process_scraped_content.return_value = AIExtractionResult(
            success=True,
            data=OpportunityRecord.from_payload(AI_PAYLOAD, "https://example.org/fellowship-2025"),
            confidence=0.05,
            model_version="test-model",
        )
        orchestrator = CampaignOrchestrator(gateway, fetcher, ai_extractor, max_workers=1, clock=clock)

        orchestrator.start_campaign_run(campaign.id)

        assert gateway.list_opportunities() == []
        for content in gateway.list_content_items():
            assert content.status == ContentStatus.PENDING
            assert content.ai_processed is True
            assert content.extraction_confidence == 0.05
            assert content.opportunity_id is None
        assert gateway.get_campaign(campaign.id).current_posts == 0

    def test_unusable_model_output_uses_fallback(self, gateway, fetcher, clock, campaign):
        """Test that a broken model response still yields a record from metadata."""
        client = MagicMock()
        client.generate.return_value = "I am not JSON"
        orchestrator = CampaignOrchestrator(gateway, fetcher, AIExtractor(client), max_workers=1, clock=clock)

        orchestrator.start_campaign_run(campaign.id)

        contents = gateway.list_content_items()
        assert all(c.ai_model_version == "metadata-fallback" for c in contents)
        assert all(c.extraction_metadata["fallback"] is True for c in contents)
        assert len(gateway.list_opportunities()) == 2

    def test_filters_skip_items(self, orchestrator, gateway, source):
        """Test that filtered pages complete as skipped without content."""
        campaign = gateway.save_campaign(Campaign(
            name="Filtered", source_ids=[source.id],
            filters=CampaignFilters(banned_words=["nairobi"]),
        ))

        run = orchestrator.start_campaign_run(campaign.id)

        assert run.items_found == 2
        assert run.items_created == 0
        assert gateway.list_content_items() == []
        logs = gateway.list_logs(campaign_run_id=run.id)
        assert {log.status for log in logs} == {"skipped"}
        assert all(item.status == QueueStatus.COMPLETED for item in gateway.list_queue_items())

    def test_skip_duplicates(self, orchestrator, gateway, fetcher, source):
        """Test that already stored URLs are not fetched again."""
        gateway.create_content_item(ContentItem(title="Old", content="Old", source_name="S",
                                                source_url="https://example.org/fellowship-2025"))
        campaign = gateway.save_campaign(Campaign(
            name="Dedupe", source_ids=[source.id], filters=CampaignFilters(skip_duplicates=True)))

        orchestrator.start_campaign_run(campaign.id)

        assert fetcher.calls.count("https://example.org/fellowship-2025") == 0
        assert fetcher.calls.count("https://example.org/scholarship-masters") == 1
        assert len(gateway.list_opportunities()) == 1

    def test_prompt_uses_page_content(self, orchestrator, ai_client, campaign):
        """Test that the model sees the scraped page."""
        orchestrator.start_campaign_run(campaign.id)

        assert any("Global Youth Foundation" in prompt for prompt in ai_client.prompts)
        assert json.loads(ai_client.responses[0])["title"] == "Young Leaders Fellowship"


class TestRunLifecycle:
    """Tests for completing, cancelling and reaping runs."""

    def test_complete(self, orchestrator, campaign, clock):
        """Test that completion stamps the run once."""
        run = orchestrator.start_campaign_run(campaign.id)
        clock.advance(5)

        completed = orchestrator.complete_campaign_run(run.id)

        assert completed.status == RunStatus.COMPLETED
        assert completed.completed_at == clock.now
        assert completed.execution_time_ms == 5000
        with pytest.raises(InvalidTransition):
            orchestrator.complete_campaign_run(run.id)

    def test_complete_unknown_run(self, orchestrator):
        """Test that unknown runs cannot be completed."""
        with pytest.raises(InvalidTransition):
            orchestrator.complete_campaign_run("nope")

    def test_cancel_fails_waiting_items(self, orchestrator, gateway, campaign):
        """Test that cancelling drops the run's queued items."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)

        cancelled = orchestrator.cancel_campaign_run(run.id)

        assert cancelled.status == RunStatus.CANCELLED
        items = gateway.list_queue_items(campaign_run_id=run.id)
        assert {item.status for item in items} == {QueueStatus.FAILED}
        assert {item.error_message for item in items} == {"cancelled"}
        assert orchestrator.drain_queue(run.id).selected == 0

    def test_reap_stale_runs(self, orchestrator, gateway, campaign, clock):
        """Test that old running runs are failed as stale."""
        old = orchestrator.start_campaign_run(campaign.id, drain=False)
        clock.advance(7200)
        fresh = orchestrator.start_campaign_run(campaign.id, drain=False)

        reaped = orchestrator.reap_stale_runs(3600)

        assert reaped == [old.id]
        stale = gateway.get_run(old.id)
        assert stale.status == RunStatus.FAILED
        assert stale.error_details["reason"] == "stale"
        assert gateway.get_run(fresh.id).status == RunStatus.RUNNING

    def test_queue_status_and_runs(self, orchestrator, campaign, clock):
        """Test queue counts and run listing."""
        run = orchestrator.start_campaign_run(campaign.id, drain=False)
        clock.advance(1)

        status = orchestrator.get_queue_status()

        assert status["queued"] == 2
        assert status["overdue"] == 2
        assert status["total"] == 2
        assert [r.id for r in orchestrator.get_campaign_runs(campaign.id)] == [run.id]
