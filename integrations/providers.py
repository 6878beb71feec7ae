"""
integrations/providers.py

Catalog of supported procurement platforms and their OAuth2 endpoints.

The catalog is static. Credentials are not read here: config.py pairs each
entry with client credentials from the environment and produces the
ProviderConfig map the connector is constructed with.

Version History:
    2026-01-12: Initial implementation
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class ProviderEndpoints:
    """Static OAuth2 endpoints for one provider."""
    auth_url: str
    token_url: str
    scope: str
    env_name: str          # INTEGRATION_{env_name}_CLIENT_ID
    display_name: str


@dataclass(frozen=True)
class ProviderConfig:
    """Endpoints plus client credentials for one provider."""
    key: str
    auth_url: str
    token_url: str
    scope: str
    client_id: str = ''
    client_secret: str = ''

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def display_name(self) -> str:
        endpoints = PROVIDER_ENDPOINTS.get(self.key)
        if endpoints:
            return endpoints.display_name
        return self.key.replace('_', ' ').title()


PROVIDER_ENDPOINTS: Dict[str, ProviderEndpoints] = {
    'sap_ariba': ProviderEndpoints(
        auth_url='https://auth.ariba.com/oauth/authorize',
        token_url='https://auth.ariba.com/oauth/token',
        scope='api',
        env_name='SAP_ARIBA',
        display_name='SAP Ariba',
    ),
    'oracle': ProviderEndpoints(
        auth_url='https://login.oraclecloud.com/oauth2/v1/authorize',
        token_url='https://login.oraclecloud.com/oauth2/v1/token',
        scope='urn:opc:resource:consumer::all',
        env_name='ORACLE',
        display_name='Oracle',
    ),
    'salesforce': ProviderEndpoints(
        auth_url='https://login.salesforce.com/services/oauth2/authorize',
        token_url='https://login.salesforce.com/services/oauth2/token',
        scope='api refresh_token',
        env_name='SALESFORCE',
        display_name='Salesforce',
    ),
    'microsoft_dynamics': ProviderEndpoints(
        auth_url='https://login.microsoftonline.com/common/oauth2/v2.0/authorize',
        token_url='https://login.microsoftonline.com/common/oauth2/v2.0/token',
        scope='https://dynamics.microsoft.com/.default offline_access',
        env_name='MICROSOFT',
        display_name='Microsoft Dynamics',
    ),
    'coupa': ProviderEndpoints(
        auth_url='https://api.coupa.com/oauth/authorize',
        token_url='https://api.coupa.com/oauth/token',
        scope='read write',
        env_name='COUPA',
        display_name='Coupa',
    ),
    'jaggaer': ProviderEndpoints(
        auth_url='https://api.jaggaer.com/oauth/authorize',
        token_url='https://api.jaggaer.com/oauth/token',
        scope='api',
        env_name='JAGGAER',
        display_name='Jaggaer',
    ),
}

# Short URL slugs used by the authorize/disconnect endpoints
SLUG_TO_PROVIDER: Dict[str, str] = {
    'sap': 'sap_ariba',
    'oracle': 'oracle',
    'salesforce': 'salesforce',
    'microsoft': 'microsoft_dynamics',
    'coupa': 'coupa',
    'jaggaer': 'jaggaer',
}


def resolve_provider(slug_or_key: str) -> Optional[str]:
    """Map a URL slug or a provider key to the provider key."""
    if slug_or_key in SLUG_TO_PROVIDER:
        return SLUG_TO_PROVIDER[slug_or_key]
    if slug_or_key in PROVIDER_ENDPOINTS:
        return slug_or_key
    return None
