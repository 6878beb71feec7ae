"""
sourcing/routes.py

Flask Blueprint for reports, shortlists, sourcing requests, leads and
admin settings.

Endpoints:
    Reports:
        GET    /api/reports - Current user's reports, newest first
        POST   /api/reports - Generate a report (1 credit)
        GET    /api/reports/<id> - One report (owner only)
        POST   /api/reports/<id>/retry - Re-run a failed report (free)
        DELETE /api/reports/<id> - Delete a report

    Shortlists:
        GET    /api/shortlists[?category=] - Catalog (premium entries locked for non-Pro)
        GET    /api/shortlists/<id> - Detail (premium requires Pro)
        POST   /api/admin/shortlists - Create
        PATCH  /api/admin/shortlists/<id> - Update
        DELETE /api/admin/shortlists/<id> - Delete

    Sourcing requests:
        POST   /api/sourcing-requests - Open a request (10 credits)
        GET    /api/sourcing-requests - Current user's requests
        GET    /api/admin/sourcing-requests[?status=] - Queue
        PATCH  /api/admin/sourcing-requests/<id> - Status / notes / suppliers

    Leads:
        POST   /api/leads - Public buyer inquiry
        GET    /api/admin/leads[?supplierId=] - All inquiries

    Settings:
        GET    /api/admin/settings/<key>
        PUT    /api/admin/settings/<key> - {"value": ...}

Version History:
    2026-01-12: Initial implementation
"""

from flask import Blueprint, request, jsonify
from flask_login import current_user

from billing.decorators import requires_auth, requires_admin, requires_verified_email
from errors import ValidationError
from sourcing import leads, settings, shortlists, sourcing_requests
from sourcing.reports import get_pipeline, validate_report_input


sourcing_bp = Blueprint('sourcing_bp', __name__, url_prefix='/api')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _viewer_id():
    return current_user.id if current_user.is_authenticated else None


# =============================================================================
# REPORTS
# =============================================================================

@sourcing_bp.route('/reports', methods=['GET'])
@requires_auth
def list_reports():
    reports = get_pipeline().list_reports(current_user.id)
    return jsonify([report.to_dict() for report in reports])


@sourcing_bp.route('/reports', methods=['POST'])
@requires_verified_email
def create_report():
    """
    Spend one credit and start generating a report.

    Request:
        {
            "title": "Steel bottles Q3",
            "category": "Housewares",
            "formData": {"productName": "Steel water bottle", "quantity": "5000", ...}
        }

    Response (201):
        The report, status "generating" (or its final status when
        generation ran inline)

    Errors:
        402 INSUFFICIENT_CREDITS - no report is created
    """
    title, category, form_data = validate_report_input(_json_body())
    report = get_pipeline().submit(current_user.id, title, category, form_data)
    return jsonify(report.to_dict()), 201


@sourcing_bp.route('/reports/<int:report_id>', methods=['GET'])
@requires_auth
def get_report(report_id):
    return jsonify(get_pipeline().get_report(current_user.id, report_id).to_dict())


@sourcing_bp.route('/reports/<int:report_id>/retry', methods=['POST'])
@requires_auth
def retry_report(report_id):
    report = get_pipeline().retry(current_user.id, report_id)
    return jsonify(report.to_dict())


@sourcing_bp.route('/reports/<int:report_id>', methods=['DELETE'])
@requires_auth
def delete_report(report_id):
    get_pipeline().delete_report(current_user.id, report_id)
    return jsonify({'success': True})


# =============================================================================
# SHORTLISTS
# =============================================================================

@sourcing_bp.route('/shortlists', methods=['GET'])
def list_shortlists():
    return jsonify(shortlists.list_shortlists(_viewer_id(), request.args.get('category')))


@sourcing_bp.route('/shortlists/<int:shortlist_id>', methods=['GET'])
@requires_auth
def get_shortlist(shortlist_id):
    return jsonify(shortlists.get_shortlist(current_user.id, shortlist_id))


@sourcing_bp.route('/admin/shortlists', methods=['POST'])
@requires_admin
def admin_create_shortlist():
    shortlist = shortlists.create_shortlist(_json_body())
    return jsonify(shortlist.to_dict()), 201


@sourcing_bp.route('/admin/shortlists/<int:shortlist_id>', methods=['PATCH'])
@requires_admin
def admin_update_shortlist(shortlist_id):
    shortlist = shortlists.update_shortlist(shortlist_id, _json_body())
    return jsonify(shortlist.to_dict())


@sourcing_bp.route('/admin/shortlists/<int:shortlist_id>', methods=['DELETE'])
@requires_admin
def admin_delete_shortlist(shortlist_id):
    shortlists.delete_shortlist(shortlist_id)
    return jsonify({'success': True})


# =============================================================================
# SOURCING REQUESTS
# =============================================================================

@sourcing_bp.route('/sourcing-requests', methods=['POST'])
@requires_verified_email
def create_sourcing_request():
    """
    Open a premium sourcing request.

    Request:
        {"title": "...", "description": "What to find, volumes, certifications"}
    """
    title, description = sourcing_requests.validate_request_input(_json_body())
    sourcing_request = sourcing_requests.create_request(current_user.id, title, description)
    return jsonify(sourcing_request.to_dict()), 201


@sourcing_bp.route('/sourcing-requests', methods=['GET'])
@requires_auth
def list_sourcing_requests():
    return jsonify([r.to_dict() for r in sourcing_requests.list_for_user(current_user.id)])


@sourcing_bp.route('/admin/sourcing-requests', methods=['GET'])
@requires_admin
def admin_list_sourcing_requests():
    return jsonify([r.to_dict() for r in sourcing_requests.list_all(request.args.get('status'))])


@sourcing_bp.route('/admin/sourcing-requests/<int:request_id>', methods=['PATCH'])
@requires_admin
def admin_update_sourcing_request(request_id):
    """
    Request:
        {"status": "in_progress", "adminNotes": "...", "supplierList": [...]}

    Errors:
        409 INVALID_TRANSITION - e.g. completed -> pending
    """
    sourcing_request = sourcing_requests.admin_update(request_id, _json_body(), admin_id=current_user.id)
    return jsonify(sourcing_request.to_dict())


# =============================================================================
# LEADS
# =============================================================================

@sourcing_bp.route('/leads', methods=['POST'])
def create_lead():
    lead = leads.create_lead(_json_body(), user_id=_viewer_id())
    return jsonify(lead.to_dict()), 201


@sourcing_bp.route('/admin/leads', methods=['GET'])
@requires_admin
def admin_list_leads():
    return jsonify([lead.to_dict() for lead in leads.list_leads(request.args.get('supplierId'))])


# =============================================================================
# SETTINGS
# =============================================================================

@sourcing_bp.route('/admin/settings/<key>', methods=['GET'])
@requires_admin
def admin_get_setting(key):
    return jsonify(settings.get_setting(key).to_dict())


@sourcing_bp.route('/admin/settings/<key>', methods=['PUT'])
@requires_admin
def admin_put_setting(key):
    data = _json_body()
    if 'value' not in data:
        raise ValidationError('value is required')
    return jsonify(settings.put_setting(key, data['value'], admin_id=current_user.id).to_dict())
