# api/jobs.py
"""
Job submission and queue inspection endpoints
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from core.exceptions import InvalidJobOptions, JobNotFound
from core.jobs import DEFAULT_QUEUE, Job, JobKind, JobState
from services.campaigns import options_for

logger = logging.getLogger(__name__)

jobs_bp = Blueprint('jobs', __name__)


def _pipeline():
    return current_app.extensions['pipeline']


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidJobOptions("Request body must be a JSON object")
    return data


@jobs_bp.route('/jobs', methods=['POST'])
def submit_job():
    """Enqueue one job: ``{kind, payload, options?, queue?}``"""
    data = _json_body()
    job = _pipeline().campaigns.submit(
        data.get('kind'),
        data.get('payload'),
        data.get('options'),
        queue_name=data.get('queue') or DEFAULT_QUEUE,
    )
    return jsonify(job.to_dict()), 201


@jobs_bp.route('/jobs/bulk', methods=['POST'])
def submit_jobs_bulk():
    """
    Enqueue many jobs: ``{jobs: [...]}``

    Items succeed or fail independently; the response lists one entry per
    submitted item, in order.
    """
    data = _json_body()
    items = data.get('jobs')
    if not isinstance(items, list) or not items:
        raise InvalidJobOptions("jobs must be a non-empty list")

    specs = []
    for item in items:
        spec = dict(item) if isinstance(item, dict) else item
        if isinstance(spec, dict):
            try:
                spec['options'] = options_for(JobKind.parse(spec.get('kind')), spec.get('options'))
            except InvalidJobOptions:
                pass  # Reported per item by the queue
        specs.append(spec)

    results = []
    for outcome in _pipeline().job_queue.enqueue_bulk(specs):
        if isinstance(outcome, Job):
            results.append({'ok': True, 'job': outcome.to_dict()})
        else:
            results.append({'ok': False, 'error': str(outcome), 'type': type(outcome).__name__})

    accepted = sum(1 for result in results if result['ok'])
    return jsonify({'accepted': accepted, 'rejected': len(results) - accepted, 'results': results}), 200


@jobs_bp.route('/jobs/<job_id>', methods=['GET'])
def get_job(job_id):
    job = _pipeline().job_queue.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)
    return jsonify(job.to_dict())


@jobs_bp.route('/jobs/<job_id>', methods=['DELETE'])
def delete_job(job_id):
    job_queue = _pipeline().job_queue
    job = job_queue.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)
    if job.state == JobState.ACTIVE or not job_queue.remove_job(job_id):
        return jsonify({
            'error': 'Conflict',
            'message': f"Job {job_id} is active and cannot be removed",
            'status_code': 409
        }), 409
    return jsonify({'removed': True, 'id': job_id})


@jobs_bp.route('/queues/<queue_name>/stats', methods=['GET'])
def queue_stats(queue_name):
    return jsonify(_pipeline().job_queue.stats(queue_name))


@jobs_bp.route('/queues/<queue_name>/retry-failed', methods=['POST'])
def retry_failed(queue_name):
    data = request.get_json(silent=True) or {}
    limit = data.get('limit', 100)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise InvalidJobOptions("limit must be a positive integer")
    retried = _pipeline().job_queue.retry_failed(queue_name, limit=limit)
    return jsonify({'queue': queue_name, 'retried': retried})


@jobs_bp.route('/queues/<queue_name>/pause', methods=['POST'])
def pause_queue(queue_name):
    _pipeline().job_queue.pause(queue_name)
    return jsonify({'queue': queue_name, 'paused': True})


@jobs_bp.route('/queues/<queue_name>/resume', methods=['POST'])
def resume_queue(queue_name):
    _pipeline().job_queue.resume(queue_name)
    return jsonify({'queue': queue_name, 'paused': False})


@jobs_bp.route('/jobs/<job_id>/promote', methods=['POST'])
def promote_job(job_id):
    """Run a delayed job now instead of waiting out its delay or backoff"""
    job = _pipeline().job_queue.promote_job(job_id)
    return jsonify(job.to_dict())
