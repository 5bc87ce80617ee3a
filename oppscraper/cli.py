"""
Command line interface for oppscraper
"""

import json
import logging
from typing import List, Optional

import click
from tabulate import tabulate

from .analytics import METRICS, TIMEFRAMES, Analytics
from .bulk import bulk_scrape_urls, sample_source
from .config import Settings
from .discovery import URLDiscoverer
from .errors import ScraperError
from .extraction import FieldExtractor, html_to_text
from .fetcher import Fetcher
from .models import AISettings, Campaign, CampaignFilters, Source
from .orchestrator import CampaignOrchestrator
from .scheduler import CampaignScheduler
from .sections import extract_processed_opportunity
from .sql_gateway import SQLGateway


def setup_logging(verbose: bool = False, level: str = 'INFO') -> None:
    """Configure logging based on verbosity level"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


class AppContext:
    """Lazily built collaborators shared by the commands of one invocation"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._gateway = None
        self._orchestrator = None

    @property
    def gateway(self) -> SQLGateway:
        if self._gateway is None:
            self._gateway = SQLGateway(self.settings.database_url)
        return self._gateway

    @property
    def orchestrator(self) -> CampaignOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = CampaignOrchestrator.from_settings(self.settings, self.gateway)
        return self._orchestrator

    def fetcher(self) -> Fetcher:
        return Fetcher(user_agent=self.settings.user_agent, timeout=self.settings.fetch_timeout)


def emit(data, output: Optional[str] = None) -> None:
    json_output = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    if output:
        with open(output, 'w', encoding='utf-8') as f:
            f.write(json_output)
        click.echo(f"Results saved to {output}")
    else:
        click.echo(json_output)


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--database-url', envvar='DATABASE_URL', help='Database URL (default: from settings)')
@click.pass_context
def main(ctx: click.Context, verbose: bool, database_url: Optional[str]) -> None:
    """Discover, scrape and extract opportunity listings

    Examples:
        oppscraper discover https://www.scholars4dev.com
        oppscraper scrape https://example.org/scholarship-2025 -o results.json
        oppscraper run <campaign-id>
    """
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    setup_logging(verbose, settings.log_level)
    ctx.obj = AppContext(settings)


@main.command()
@click.argument('url')
@click.pass_obj
def discover(app: AppContext, url: str) -> None:
    """Find opportunity URLs on a site via RSS, sitemap or page links"""
    with app.fetcher() as fetcher:
        result = URLDiscoverer(fetcher).discover(url)
    emit(result.to_dict())
    if not result.success:
        raise click.exceptions.Exit(1)


@main.command()
@click.argument('url')
@click.option('--output', '-o', help='Output file path (default: print to stdout)', type=click.Path())
@click.pass_obj
def extract(app: AppContext, url: str, output: Optional[str]) -> None:
    """Fetch one page and show the fields and sections pulled from it"""
    try:
        with app.fetcher() as fetcher:
            html = fetcher.get(url).text
    except ScraperError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise click.Abort()

    fields = FieldExtractor().extract(html)
    processed = extract_processed_opportunity(fields.title, url, html, html_to_text(html))
    emit({
        'title': fields.title,
        'description': fields.description,
        'organization': fields.organization,
        'deadline': fields.deadline,
        'location': fields.location,
        'amount': fields.amount,
        'requirements': fields.requirements,
        'apply_info': fields.apply_info,
        'content_length': len(fields.content),
        'sections': processed.to_dict(),
    }, output)


@main.command()
@click.argument('urls', nargs=-1, required=True)
@click.option('--output', '-o', help='Output file path (default: print to stdout)', type=click.Path())
@click.pass_obj
def scrape(app: AppContext, urls: List[str], output: Optional[str]) -> None:
    """Scrape URLs in batches of five without touching the database"""
    result = bulk_scrape_urls(list(urls), timeout=app.settings.fetch_timeout,
                              user_agent=app.settings.user_agent)
    result['results'] = [item.to_dict() for item in result['results']]
    emit(result, output)


@main.command('test-source')
@click.argument('url')
@click.pass_obj
def sample_source_command(app: AppContext, url: str) -> None:
    """Check whether a site is worth adding as a source"""
    with app.fetcher() as fetcher:
        emit(sample_source(url, fetcher))


@main.command('add-source')
@click.argument('name')
@click.argument('domain')
@click.option('--keyword', '-k', multiple=True, help='Source keyword (repeatable)')
@click.option('--inactive', is_flag=True, help='Create the source disabled')
@click.pass_obj
def add_source(app: AppContext, name: str, domain: str, keyword: List[str], inactive: bool) -> None:
    """Register a source site"""
    source = app.gateway.save_source(Source(name=name, root_domain=domain,
                                            keywords=list(keyword), is_active=not inactive))
    click.echo(source.id)


@main.command('add-campaign')
@click.argument('name')
@click.option('--source-id', '-s', 'source_ids', multiple=True, required=True, help='Source id (repeatable)')
@click.option('--frequency', default=6, type=int, help='Run every N units')
@click.option('--unit', default='hours', type=click.Choice(['minutes', 'hours', 'days']))
@click.option('--max-posts', default=0, type=int, help='Cap on URLs queued per run (0 = no cap)')
@click.option('--min-length', type=int, help='Skip pages with less content than this')
@click.option('--required-word', multiple=True, help='Word every page must contain')
@click.option('--banned-word', multiple=True, help='Word that disqualifies a page')
@click.option('--skip-duplicates', is_flag=True, help='Skip URLs that were already scraped')
@click.pass_obj
def add_campaign(app: AppContext, name: str, source_ids: List[str], frequency: int, unit: str,
                 max_posts: int, min_length: Optional[int], required_word: List[str],
                 banned_word: List[str], skip_duplicates: bool) -> None:
    """Create a campaign over existing sources"""
    campaign = app.gateway.save_campaign(Campaign(
        name=name,
        source_ids=list(source_ids),
        frequency=frequency,
        frequency_unit=unit,
        max_posts=max_posts,
        filters=CampaignFilters(min_length=min_length, required_words=list(required_word),
                                banned_words=list(banned_word), skip_duplicates=skip_duplicates),
        ai_settings=AISettings(),
    ))
    click.echo(campaign.id)


@main.command()
@click.argument('campaign_id')
@click.option('--no-complete', is_flag=True, help='Leave the run open after draining')
@click.pass_obj
def run(app: AppContext, campaign_id: str, no_complete: bool) -> None:
    """Run a campaign now: discover, drain the queue and complete the run"""
    orchestrator = app.orchestrator
    try:
        campaign_run = orchestrator.start_campaign_run(campaign_id, drain=False)
        while orchestrator.drain_queue(campaign_run.id).processed:
            pass
        if not no_complete:
            campaign_run = orchestrator.complete_campaign_run(campaign_run.id)
        else:
            campaign_run = app.gateway.get_run(campaign_run.id)
    except ScraperError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise click.Abort()
    finally:
        orchestrator.close()
    emit(campaign_run.to_dict())


@main.command()
@click.option('--run-id', help='Only drain items queued by this run')
@click.pass_obj
def drain(app: AppContext, run_id: Optional[str]) -> None:
    """Process one batch of due queue items"""
    result = app.orchestrator.drain_queue(run_id)
    app.orchestrator.close()
    emit(result.to_dict())


@main.command()
@click.argument('run_id')
@click.pass_obj
def complete(app: AppContext, run_id: str) -> None:
    """Mark a running campaign run as completed"""
    try:
        emit(app.orchestrator.complete_campaign_run(run_id).to_dict())
    except ScraperError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise click.Abort()


@main.command()
@click.argument('run_id')
@click.pass_obj
def cancel(app: AppContext, run_id: str) -> None:
    """Cancel a running campaign run and drop its queued items"""
    try:
        emit(app.orchestrator.cancel_campaign_run(run_id).to_dict())
    except ScraperError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise click.Abort()


@main.command()
@click.option('--max-age', type=float, help='Seconds after which a running run is stale')
@click.pass_obj
def reap(app: AppContext, max_age: Optional[float]) -> None:
    """Fail runs stuck in running for too long"""
    reaped = app.orchestrator.reap_stale_runs(max_age or app.settings.stale_run_timeout)
    click.echo(f"Reaped {len(reaped)} stale runs")


@main.command()
@click.option('--campaign-id', help='Only show runs of this campaign')
@click.option('--limit', default=50, type=int)
@click.pass_obj
def runs(app: AppContext, campaign_id: Optional[str], limit: int) -> None:
    """List recent campaign runs"""
    rows = [["Run", "Campaign", "Status", "Started", "Found", "Created", "Errors", "Time (ms)"]]
    for item in app.orchestrator.get_campaign_runs(campaign_id, limit):
        rows.append([
            item.id[:8], item.campaign_id[:8], item.status.value,
            item.started_at.strftime('%Y-%m-%d %H:%M:%S'), item.items_found,
            item.items_created, item.errors_count, item.execution_time_ms or '',
        ])
    click.echo(tabulate(rows, headers="firstrow", tablefmt="grid"))


@main.command('queue-status')
@click.pass_obj
def queue_status(app: AppContext) -> None:
    """Show queue item counts per status"""
    status = app.orchestrator.get_queue_status()
    click.echo(tabulate(sorted(status.items()), headers=["Status", "Items"], tablefmt="grid"))


@main.command()
@click.argument('metric', type=click.Choice(METRICS), default='overview')
@click.option('--timeframe', default='7d', type=click.Choice(sorted(TIMEFRAMES)))
@click.option('--campaign-id', help='Restrict to one campaign')
@click.pass_obj
def analytics(app: AppContext, metric: str, timeframe: str, campaign_id: Optional[str]) -> None:
    """Print dashboard metrics as JSON"""
    emit(Analytics(app.gateway).report(metric, timeframe, campaign_id))


@main.command()
@click.option('--poll-interval', type=float, help='Seconds between scheduler ticks')
@click.pass_obj
def schedule(app: AppContext, poll_interval: Optional[float]) -> None:
    """Run the campaign scheduler in the foreground until interrupted"""
    scheduler = CampaignScheduler(
        app.orchestrator,
        poll_interval=poll_interval or app.settings.scheduler_poll_interval,
        stale_run_timeout=app.settings.stale_run_timeout,
    )
    scheduler.start()
    try:
        while scheduler.is_running:
            scheduler.wait(1.0)
    except KeyboardInterrupt:
        click.echo("\nScheduler interrupted by user", err=True)
    finally:
        scheduler.stop()
        app.orchestrator.close()


if __name__ == '__main__':
    main()
