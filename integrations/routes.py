"""
integrations/routes.py

Flask Blueprint for procurement-platform connections.

Endpoints:
    GET    /api/integrations - Every provider with connected/configured flags
    GET    /api/integrations/<slug>/authorize - Consent URL ({url}, or 302 with ?redirect=1)
    GET    /api/integrations/oauth/callback?code=&state= - Provider redirect target
    DELETE /api/integrations/<slug> - Disconnect

The callback never answers with JSON: the browser is sent back to the
frontend's /integrations page with ?connected=<provider> or ?error=<message>.

Version History:
    2026-01-12: Initial implementation
"""

from urllib.parse import urlencode

from flask import Blueprint, request, jsonify, redirect
from flask_login import current_user

from billing.decorators import requires_auth
from config import FRONTEND_URL
from errors import AppError, NotFound
from integrations.connector import get_connector
from integrations.providers import resolve_provider


integrations_bp = Blueprint('integrations_bp', __name__, url_prefix='/api/integrations')


def _provider_from_slug(slug: str) -> str:
    provider = resolve_provider(slug)
    if provider is None:
        raise NotFound(f'Unknown integration: {slug}')
    return provider


def _frontend_redirect(**params):
    return redirect(f"{FRONTEND_URL}/integrations?{urlencode(params)}")


@integrations_bp.route('', methods=['GET'])
@requires_auth
def list_integrations():
    return jsonify(get_connector().get_user_integrations(current_user.id))


@integrations_bp.route('/<slug>/authorize', methods=['GET'])
@requires_auth
def authorize(slug):
    """
    Start connecting a provider.

    Response:
        {"url": "https://login.salesforce.com/services/oauth2/authorize?..."}
        or 302 to that URL when called with ?redirect=1
    """
    provider = _provider_from_slug(slug)

    url, _state = get_connector().get_authorization_url(provider, current_user.id, request.host_url)

    if request.args.get('redirect') in ('1', 'true'):
        return redirect(url)
    return jsonify({'url': url})


@integrations_bp.route('/oauth/callback', methods=['GET'])
def oauth_callback():
    """
    Provider redirect target.

    The state identifies both the user and the provider, so no session
    cookie is needed here.
    """
    if request.args.get('error'):
        message = request.args.get('error_description') or request.args.get('error')
        print(f"[Integrations] Provider returned error: {message}")
        return _frontend_redirect(error=message)

    code = request.args.get('code', '')
    state = request.args.get('state', '')

    connector = get_connector()

    try:
        provider = connector.provider_for_state(state)
        connector.exchange_code_for_tokens(provider, code, state)
    except AppError as e:
        return _frontend_redirect(error=e.message)

    return _frontend_redirect(connected=provider)


@integrations_bp.route('/<slug>', methods=['DELETE'])
@requires_auth
def disconnect(slug):
    provider = _provider_from_slug(slug)
    get_connector().disconnect_integration(current_user.id, provider)
    return jsonify({'success': True})
