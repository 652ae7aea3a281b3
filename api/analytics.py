# api/analytics.py
"""
Analytics API endpoints for campaign reporting
"""

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from core.exceptions import InvalidJobOptions

logger = logging.getLogger(__name__)

analytics_bp = Blueprint('analytics', __name__)


def _analytics():
    return current_app.extensions['pipeline'].analytics


def _since_arg():
    raw = request.args.get('since')
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidJobOptions(f"since must be an ISO 8601 timestamp, got {raw!r}")


@analytics_bp.route('/analytics/events', methods=['GET'])
def get_event_counts():
    """Event totals per name and day, optionally from ``?since=``"""
    since = _since_arg()
    counts = _analytics().event_counts(since=since)

    rows = [
        {'event': row['event_name'], 'date': row['date'].isoformat(), 'count': int(row['count'])}
        for row in counts.to_dict('records')
    ]
    return jsonify({
        'since': since.isoformat() if since else None,
        'counts': rows,
        'total': sum(row['count'] for row in rows),
    })


@analytics_bp.route('/analytics/delivery', methods=['GET'])
def get_delivery_summary():
    """Sent/failed totals and success rate, optionally for one ``?userId=``"""
    user_id = request.args.get('userId')
    summary = _analytics().delivery_summary(user_id=user_id)
    logger.debug(f"Delivery summary for {user_id or 'all users'}: {summary}")
    return jsonify(dict(summary, userId=user_id))
