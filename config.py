"""Configuration module for the POS catalog sync backend."""
import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Base configuration."""
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)
    JWT_ALGORITHM = "HS256"

    # Database
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(os.path.dirname(os.path.abspath(__file__)), 'pos_sync.db')}"
    )

    # Logging
    LOG_PATH = os.getenv("LOG_PATH", os.path.join(os.getcwd(), 'logs'))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # POS OAuth application
    POS_CLIENT_ID = os.getenv("POS_CLIENT_ID")
    POS_CLIENT_SECRET = os.getenv("POS_CLIENT_SECRET")
    POS_REDIRECT_URI = os.getenv("POS_REDIRECT_URI", "http://localhost:3001/api/pos/oauth/callback")
    POS_ENVIRONMENT = os.getenv("POS_ENVIRONMENT", "sandbox")
    POS_OAUTH_SCOPES = os.getenv(
        "POS_OAUTH_SCOPES",
        "ITEMS_READ ITEMS_WRITE INVENTORY_READ INVENTORY_WRITE MERCHANT_PROFILE_READ"
    )
    POS_REQUEST_TIMEOUT = int(os.getenv("POS_REQUEST_TIMEOUT", "30"))

    # Credential storage
    POS_TOKEN_ENCRYPTION_KEY = os.getenv("POS_TOKEN_ENCRYPTION_KEY")
    POS_TOKEN_REFRESH_BUFFER_SECONDS = int(os.getenv("POS_TOKEN_REFRESH_BUFFER_SECONDS", "86400"))  # 1 day

    # Batch execution
    POS_BATCH_SIZE = int(os.getenv("POS_BATCH_SIZE", "100"))
    POS_MAX_CONCURRENT = int(os.getenv("POS_MAX_CONCURRENT", "5"))
    POS_RETRY_ATTEMPTS = int(os.getenv("POS_RETRY_ATTEMPTS", "3"))
    POS_RETRY_DELAY = float(os.getenv("POS_RETRY_DELAY", "1.0"))  # seconds
    POS_REQUESTS_PER_MINUTE = int(os.getenv("POS_REQUESTS_PER_MINUTE", "100"))
    POS_REQUESTS_PER_SECOND = int(os.getenv("POS_REQUESTS_PER_SECOND", "10"))

    # Conflict resolution
    POS_PRICE_CONFLICT_THRESHOLD = float(os.getenv("POS_PRICE_CONFLICT_THRESHOLD", "10.0"))
    POS_REVIEW_QUEUE_LIMIT = int(os.getenv("POS_REVIEW_QUEUE_LIMIT", "1000"))

    @classmethod
    def pos_base_url(cls) -> str:
        """Vendor base URL for the configured environment."""
        if cls.POS_ENVIRONMENT == 'production':
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    POS_ENVIRONMENT = os.getenv("POS_ENVIRONMENT", "production")


class TestingConfig(Config):
    """Testing configuration."""
    DEBUG = True
    TESTING = True
    DATABASE_URL = "sqlite:///:memory:"
    JWT_SECRET_KEY = "test-secret-key"
    POS_CLIENT_ID = "test-client-id"
    POS_CLIENT_SECRET = "test-client-secret"
    POS_RETRY_DELAY = 0.0


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
