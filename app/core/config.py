import os
from dotenv import load_dotenv
load_dotenv()


class Settings:
    APP_NAME = os.getenv("APP_NAME", "Rent Ledger Service")
    APP_ENV = os.getenv("APP_ENV", "development").lower()
    APP_URL = os.getenv("APP_URL", "http://localhost:3000")
    MONGO_URL = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DATABASE = os.getenv("MONGO_DATABASE", "rent_ledger")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_JSON = os.getenv("LOG_JSON", "true").lower() == "true"
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", None)
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", None)
    # how many times a ledger write re-reads and retries after losing a race
    LEDGER_WRITE_ATTEMPTS = int(os.getenv("LEDGER_WRITE_ATTEMPTS", "5"))


settings = Settings()
