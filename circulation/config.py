import os


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")
AUTH_KEY = os.getenv("AUTH_KEY", "dev-secret-key-12345")

# "development" exposes internal error text in 500 responses; anything else hides it.
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def is_development() -> bool:
    return ENVIRONMENT.lower() == "development"
