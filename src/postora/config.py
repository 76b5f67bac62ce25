from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://app:devpassword@db:5432/postora"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Supabase signs its access tokens with the project JWT secret (HS256)
    SUPABASE_JWT_SECRET: str = ""
    JWT_AUDIENCE: str = "authenticated"

    APP_ENV: str = "development"

    DEFAULT_SIGNUP_CREDITS: int = 3
    FREE_TRIAL_CREDITS: int = 5

    # plan_id -> credits granted per purchase / billing cycle
    PLAN_CREDITS: dict[str, int] = {
        "pay-as-you-go": 15,
        "starter": 50,
        "pro": 200,
        "premium": 500,
    }
    # Plans billed through a one-time payment rather than a subscription
    ONE_TIME_PLANS: list[str] = ["pay-as-you-go"]

    LEDGER_WRITE_MAX_ATTEMPTS: int = 5
    LEDGER_RETRY_MIN_WAIT: float = 0.05
    LEDGER_RETRY_MAX_WAIT: float = 1.0

    HISTORY_MAX_LIMIT: int = 100

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
