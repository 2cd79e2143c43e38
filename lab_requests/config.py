from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite:///./lab_requests.db"
    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    allowed_origins: str = "http://localhost:3000"
    session_ttl_hours: int = 12

    # IANA zone used to format timestamps for the viewer; empty means server local time.
    display_timezone: str = ""
    # Per user; the oldest of that user's views is closed past this.
    max_open_views: int = 20
    seed_demo_data: bool = False


settings = Settings()
