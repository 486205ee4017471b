import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./healthcare.db")

SECRET_KEY = os.environ.get("SECRET_KEY", "your_secret_key_here_change_later")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

APP_ENV = os.environ.get("APP_ENV", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Upper bound for a single store call (connect / lock wait)
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5"))


def is_production() -> bool:
    return APP_ENV.lower() == "production"
