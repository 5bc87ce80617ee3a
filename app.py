"""
Admin control surface for oppscraper
"""

import logging
import os
import time
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from oppscraper.analytics import DEFAULT_TIMEFRAME, Analytics
from oppscraper.bulk import bulk_scrape_urls
from oppscraper.config import Settings
from oppscraper.errors import CampaignNotFound, InvalidTransition
from oppscraper.orchestrator import CampaignOrchestrator
from oppscraper.persistence import PersistenceGateway
from oppscraper.scheduler import CampaignScheduler
from oppscraper.sql_gateway import SQLGateway

logger = logging.getLogger(__name__)

MAX_BULK_URLS = 50


def _normalize_url(url: str) -> str:
    url = url.strip()
    if not (url.startswith('http://') or url.startswith('https://')):
        url = 'https://' + url
    return url


def create_app(settings: Optional[Settings] = None,
               gateway: Optional[PersistenceGateway] = None,
               orchestrator: Optional[CampaignOrchestrator] = None,
               scheduler: Optional[CampaignScheduler] = None) -> Flask:
    """Wire settings, gateway, orchestrator and scheduler into a Flask app"""
    settings = settings or Settings.from_env()
    gateway = gateway or (orchestrator.gateway if orchestrator else SQLGateway(settings.database_url))
    orchestrator = orchestrator or CampaignOrchestrator.from_settings(settings, gateway)
    scheduler = scheduler or CampaignScheduler(
        orchestrator,
        poll_interval=settings.scheduler_poll_interval,
        stale_run_timeout=settings.stale_run_timeout,
    )
    analytics = Analytics(gateway)

    app = Flask(__name__)
    CORS(app)
    app.extensions['oppscraper'] = {
        'settings': settings,
        'gateway': gateway,
        'orchestrator': orchestrator,
        'scheduler': scheduler,
    }

    @app.route('/health')
    def health():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': 'oppscraper',
            'version': '0.1.0',
            'scheduler': scheduler.status(),
        })

    @app.route('/api/campaigns/<campaign_id>/run', methods=['POST'])
    def run_campaign(campaign_id):
        data = request.get_json(silent=True) or {}
        try:
            run = orchestrator.start_campaign_run(campaign_id, drain=bool(data.get('drain', True)))
        except CampaignNotFound as exc:
            return jsonify({'success': False, 'error': str(exc)}), 404
        return jsonify({'success': True, 'run': run.to_dict()})

    @app.route('/api/queue/drain', methods=['POST'])
    def drain_queue():
        data = request.get_json(silent=True) or {}
        result = orchestrator.drain_queue(data.get('campaignRunId'))
        return jsonify({'success': True, 'result': result.to_dict()})

    @app.route('/api/runs/<run_id>/complete', methods=['POST'])
    def complete_run(run_id):
        try:
            run = orchestrator.complete_campaign_run(run_id)
        except InvalidTransition as exc:
            return jsonify({'success': False, 'error': str(exc)}), 409
        return jsonify({'success': True, 'run': run.to_dict()})

    @app.route('/api/runs/<run_id>/cancel', methods=['POST'])
    def cancel_run(run_id):
        try:
            run = orchestrator.cancel_campaign_run(run_id)
        except InvalidTransition as exc:
            return jsonify({'success': False, 'error': str(exc)}), 409
        return jsonify({'success': True, 'run': run.to_dict()})

    @app.route('/api/runs')
    def list_runs():
        campaign_id = request.args.get('campaignId')
        runs = orchestrator.get_campaign_runs(campaign_id)
        return jsonify({'success': True, 'runs': [run.to_dict() for run in runs]})

    @app.route('/api/queue/status')
    def queue_status():
        return jsonify({'success': True, 'queueStatus': orchestrator.get_queue_status()})

    @app.route('/api/scheduler/<action>', methods=['POST'])
    def control_scheduler(action):
        if action == 'start':
            changed = scheduler.start()
        elif action == 'stop':
            changed = scheduler.stop(timeout=5.0)
        else:
            return jsonify({'success': False, 'error': f"Unknown action: {action}"}), 400
        return jsonify({'success': True, 'changed': changed, 'scheduler': scheduler.status()})

    @app.route('/api/scrape', methods=['POST'])
    def scrape_endpoint():
        """Bulk scrape a list of URLs without queueing them"""
        start_time = time.time()
        data = request.get_json(silent=True) or {}
        urls = data.get('urls') or []
        if not isinstance(urls, list) or not urls:
            return jsonify({'error': 'urls must be a non-empty list'}), 400
        if len(urls) > MAX_BULK_URLS:
            return jsonify({'error': f"At most {MAX_BULK_URLS} URLs per request"}), 400

        urls = [_normalize_url(str(url)) for url in urls]
        logger.info(f"Starting bulk scrape of {len(urls)} URLs")
        result = bulk_scrape_urls(urls, timeout=settings.fetch_timeout, user_agent=settings.user_agent)

        processing_time = time.time() - start_time
        logger.info(f"Bulk scrape completed in {processing_time:.2f}s")
        return jsonify({
            'success': result['success'],
            'results': [item.to_dict() for item in result['results']],
            'failed': result['failed'],
            'summary': result['summary'],
            'processing_time': round(processing_time, 2),
        })

    @app.route('/api/discover', methods=['POST'])
    def discover_endpoint():
        data = request.get_json(silent=True) or {}
        url = (data.get('url') or '').strip()
        if not url:
            return jsonify({'error': 'URL is required'}), 400
        result = orchestrator.discoverer.discover(_normalize_url(url))
        return jsonify(result.to_dict())

    @app.route('/api/analytics')
    def analytics_endpoint():
        metric = request.args.get('metric', 'overview')
        timeframe = request.args.get('timeframe', DEFAULT_TIMEFRAME)
        try:
            data = analytics.report(metric, timeframe, request.args.get('campaignId'))
        except ValueError as exc:
            return jsonify({'success': False, 'error': str(exc)}), 400
        return jsonify({'success': True, 'metric': metric, 'data': data})

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    port = int(os.environ.get('PORT', settings.port))
    create_app(settings).run(debug=False, host='0.0.0.0', port=port)
