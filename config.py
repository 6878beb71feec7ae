"""
smartseek/config.py

Application configuration.

All values are read from the environment once, at import. Integration
credentials are collected into an explicit provider map here and handed to
the IntegrationConnector; nothing else reads INTEGRATION_* variables.

Environment:
    SECRET_KEY                  Flask session signing key
    FRONTEND_URL                Where OAuth callbacks send the browser back to
    INTEGRATION_REDIRECT_URI    Callback path appended to the request base URL
    INTEGRATION_{NAME}_CLIENT_ID / INTEGRATION_{NAME}_CLIENT_SECRET
    SENDGRID_API_KEY, SENDGRID_FROM_EMAIL
    REPORT_API_URL, REPORT_API_KEY, REPORT_MODEL

Version History:
    2026-01-12: Initial implementation
"""

import os
from typing import Dict, Mapping, Optional

from integrations.providers import PROVIDER_ENDPOINTS, ProviderConfig


# =============================================================================
# FLASK
# =============================================================================

SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-key-change-in-prod')
FRONTEND_URL = os.environ.get('FRONTEND_URL', '').rstrip('/')

if SECRET_KEY == 'dev-key-change-in-prod':
    print("[Config] WARNING: SECRET_KEY not set, using development key")


# =============================================================================
# INTEGRATIONS
# =============================================================================

INTEGRATION_REDIRECT_URI = os.environ.get(
    'INTEGRATION_REDIRECT_URI', '/api/integrations/oauth/callback'
)

OAUTH_STATE_TTL_MINUTES = 10


def load_integration_configs(environ: Optional[Mapping[str, str]] = None) -> Dict[str, ProviderConfig]:
    """
    Build the provider map from INTEGRATION_{NAME}_CLIENT_ID/SECRET variables.

    Every supported provider is present in the result; providers without
    both values come back with empty credentials (configured == False).
    """
    if environ is None:
        environ = os.environ

    configs = {}
    for key, endpoints in PROVIDER_ENDPOINTS.items():
        prefix = f"INTEGRATION_{endpoints.env_name}"
        configs[key] = ProviderConfig(
            key=key,
            auth_url=endpoints.auth_url,
            token_url=endpoints.token_url,
            scope=endpoints.scope,
            client_id=environ.get(f"{prefix}_CLIENT_ID", ''),
            client_secret=environ.get(f"{prefix}_CLIENT_SECRET", ''),
        )
    return configs


# =============================================================================
# EMAIL
# =============================================================================

SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY', '')
SENDGRID_FROM_EMAIL = os.environ.get('SENDGRID_FROM_EMAIL', 'no-reply@smartseek.app')

VERIFICATION_TOKEN_HOURS = 24
PASSWORD_RESET_TOKEN_HOURS = 1


# =============================================================================
# REPORT GENERATION
# =============================================================================

# Any OpenAI-compatible chat completions endpoint
REPORT_API_URL = os.environ.get('REPORT_API_URL', 'https://api.openai.com/v1/chat/completions')
REPORT_API_KEY = os.environ.get('REPORT_API_KEY', '')
REPORT_MODEL = os.environ.get('REPORT_MODEL', 'gpt-4o-mini')
REPORT_TIMEOUT_SECONDS = int(os.environ.get('REPORT_TIMEOUT_SECONDS', '120'))
REPORT_WORKERS = int(os.environ.get('REPORT_WORKERS', '2'))
