from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Worker Fleet Job Service"

    DATABASE_URL: str = "sqlite:///workerfleet.db"
    DB_ECHO: bool = False

    # Job execution
    JOB_CONCURRENCY: int = 3  # max tasks of one job in flight at once
    JOB_LIST_LIMIT: int = 50

    # Cloudflare API
    CF_API_BASE_URL: str = "https://api.cloudflare.com/client/v4"
    CF_API_TIMEOUT: float = 30.0

    LOG_LEVEL: str = "INFO"

    def get_database_url(self) -> str:
        return self.DATABASE_URL

    class Config:
        env_file = ".env"
        extra = "ignore" # Ignore extra fields in .env

settings = Settings()
