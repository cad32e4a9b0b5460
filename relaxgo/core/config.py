from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "RelaxGo Booking Core"
    API_V1_STR: str = "/api"

    # Server
    PORT: int = 8000
    ENVIRONMENT: str = "development"

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""

    # "supabase" or "memory" (local development without a backend)
    STORE_BACKEND: str = "supabase"

    # Bookings are entered as local date + time of day in this zone
    TIMEZONE: str = "Europe/Bucharest"

    # Reconciliation
    PROVIDER_POLL_INTERVAL_SECONDS: float = 30.0
    CUSTOMER_POLL_INTERVAL_SECONDS: float = 30.0
    BUS_RECONNECT_INITIAL_DELAY_SECONDS: float = 1.0
    BUS_RECONNECT_MAX_DELAY_SECONDS: float = 30.0

    # Completion sweep
    COMPLETION_SWEEP_INTERVAL_SECONDS: float = 300.0
    COMPLETION_GRACE_MINUTES: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    ERROR_LOG_PATH: str = "logs/errors.log"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
