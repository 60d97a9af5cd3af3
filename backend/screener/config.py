from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    environment: str = "development"
    log_level: str = "INFO"

    # Supabase storage (session artifacts + uploaded images)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = "screener-sessions"

    # Model providers
    anthropic_api_key: str = ""
    claude_model: str = "claude-sonnet-4-5"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    keyword_model: str = "gpt-4o-mini"   # premium search keywords

    # Visual search + valuation services
    searchapi_key: str = ""
    valuer_agent_url: str = "https://valuer-agent-856401495068.us-central1.run.app"

    # SendGrid
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    sendgrid_sender_name: str = "Andrés - Art Expert"

    # Google Sheets / Pub/Sub (service account)
    google_credentials_file: str = ""
    sheets_id: str = ""
    gcp_project_id: str = ""
    crm_topic: str = "CRM-tasks"

    # Pipeline tuning
    self_base_url: str = ""              # when set, stages self-heal through HTTP
    stage_timeout_s: float = 60.0
    wait_max_retries: int = 5
    wait_retry_delay_ms: int = 2000
    personal_offer_delay_s: int = 3600

    premium_subscription_key: str = ""

    # base64 of 32 random bytes; AES-256-GCM key for stored email addresses
    encryption_key: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"  # Allow extra environment variables

@lru_cache()
def get_settings():
    return Settings()
