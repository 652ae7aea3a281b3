# api/templates.py
"""
Email template management endpoints

Templates are stored in the shared database, so ``send-template`` jobs on
any worker render the version saved here.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from core.exceptions import InvalidJobOptions, TemplateNotFound

logger = logging.getLogger(__name__)

templates_bp = Blueprint('templates', __name__)


def _templates():
    return current_app.extensions['pipeline'].templates


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidJobOptions("Request body must be a JSON object")
    return data


@templates_bp.route('/templates', methods=['GET'])
def list_templates():
    templates = _templates().list_templates()
    return jsonify({'templates': [template.to_dict() for template in templates]})


@templates_bp.route('/templates', methods=['POST'])
def create_template():
    """Register a template: ``{name, subject, html?, text?}``"""
    data = _json_body()
    template = _templates().create_template(
        data.get('name'),
        data.get('subject'),
        html=data.get('html'),
        text=data.get('text'),
    )
    return jsonify(template.to_dict()), 201


@templates_bp.route('/templates/<name>', methods=['GET'])
def get_template(name):
    return jsonify(_templates().get_template(name).to_dict())


@templates_bp.route('/templates/<name>', methods=['PUT'])
def update_template(name):
    """Replace the parts present in the body; omitted parts are kept"""
    data = _json_body()
    template = _templates().update_template(
        name,
        subject=data.get('subject'),
        html=data.get('html'),
        text=data.get('text'),
    )
    return jsonify(template.to_dict())


@templates_bp.route('/templates/<name>', methods=['DELETE'])
def delete_template(name):
    if not _templates().delete_template(name):
        raise TemplateNotFound(f"Template {name} does not exist")
    return jsonify({'removed': True, 'name': name})
