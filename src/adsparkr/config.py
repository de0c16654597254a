from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file for local runs.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    site_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    # Supabase
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    project_files_bucket: str = "project-files"
    ad_images_bucket: str = "ad-images"

    # AI keys
    gemini_api_key: str | None = None
    openai_api_key: str | None = None

    # Models
    gemini_image_model: str = "gemini-2.5-flash-image-preview"
    openai_text_model: str = "gpt-4o-mini"
    openai_vision_model: str = "gpt-4o"

    # Meta
    meta_app_id: str | None = None
    meta_app_secret: str | None = None
    meta_graph_version: str = "v18.0"
    # App-level token used for interest search when the user has not connected Meta.
    meta_access_token: str | None = None
    meta_oauth_scopes: str = (
        "email,public_profile,ads_management,business_management,ads_read,"
        "pages_show_list,pages_read_engagement,read_insights"
    )
    exchange_rate_url: str = "https://api.exchangerate-api.com/v4/latest/USD"

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_monthly_price_id: str | None = None
    stripe_annual_price_id: str | None = None
    stripe_api_version: str | None = None

    # Rendering
    creative_sizes: dict[str, tuple[int, int]] = {
        "1:1": (1080, 1080),
        "9:16": (1080, 1920),
    }


settings = Settings()
