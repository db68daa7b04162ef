"""Configuration settings for the CRM sync service."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = "crm-sync-service"
    port: int = 8000
    environment: str = "development"
    debug: bool = False

    # Security
    secret_key: str
    encryption_key: str
    token_salt: str = "crm-sync-token-salt"

    # Database
    database_url: str = "sqlite+aiosqlite:///./crm_sync.db"
    database_echo: bool = False

    # Auth Service
    auth_service_url: str = "http://localhost:8001"

    # OAuth Credentials
    # Salesforce
    salesforce_client_id: Optional[str] = None
    salesforce_client_secret: Optional[str] = None
    salesforce_redirect_uri: Optional[str] = None
    salesforce_login_url: str = "https://login.salesforce.com"

    # HubSpot
    hubspot_client_id: Optional[str] = None
    hubspot_client_secret: Optional[str] = None
    hubspot_redirect_uri: Optional[str] = None

    # Sync engine
    token_refresh_buffer_seconds: int = 300
    default_token_lifetime_seconds: int = 7200
    http_timeout_seconds: float = 20.0
    oauth_state_ttl_seconds: int = 600
    admin_ui_url: str = "http://localhost:3000/admin/crm"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Provider specific configurations
PROVIDER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "salesforce": {
        "name": "Salesforce",
        "description": "Sync training sessions to Salesforce as Activities",
        "auth_path": "/services/oauth2/authorize",
        "token_path": "/services/oauth2/token",
        "api_version": "v59.0",
        "object_type": "Task",
        "scopes": ["api", "refresh_token", "offline_access"],
    },
    "hubspot": {
        "name": "HubSpot",
        "description": "Sync training sessions to HubSpot as Engagements",
        "auth_url": "https://app.hubspot.com/oauth/authorize",
        "token_url": "https://api.hubapi.com/oauth/v1/token",
        "api_base_url": "https://api.hubapi.com",
        "object_type": "Engagement",
        "scopes": [
            "crm.objects.contacts.read",
            "crm.objects.contacts.write",
            "crm.objects.deals.read",
            "crm.objects.deals.write",
            "sales-email-read",
        ],
    },
}


def get_oauth_client_config(provider: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Resolve OAuth endpoints and client credentials for a provider."""
    settings = settings or get_settings()
    config = PROVIDER_CONFIGS[provider]

    if provider == "salesforce":
        login_url = settings.salesforce_login_url.rstrip("/")
        return {
            "client_id": settings.salesforce_client_id,
            "client_secret": settings.salesforce_client_secret,
            "redirect_uri": settings.salesforce_redirect_uri,
            "auth_url": f"{login_url}{config['auth_path']}",
            "token_url": f"{login_url}{config['token_path']}",
            "scopes": config["scopes"],
        }

    return {
        "client_id": getattr(settings, f"{provider}_client_id"),
        "client_secret": getattr(settings, f"{provider}_client_secret"),
        "redirect_uri": getattr(settings, f"{provider}_redirect_uri"),
        "auth_url": config["auth_url"],
        "token_url": config["token_url"],
        "scopes": config["scopes"],
    }


def is_provider_configured(provider: str, settings: Optional[Settings] = None) -> bool:
    """Check whether OAuth client credentials exist for a provider."""
    if provider not in PROVIDER_CONFIGS:
        return False
    client = get_oauth_client_config(provider, settings)
    return bool(client["client_id"] and client["client_secret"] and client["redirect_uri"])
