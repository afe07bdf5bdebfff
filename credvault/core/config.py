# =====================================================
# FILE: credvault/core/config.py
# Application Configuration Settings
# =====================================================
from pydantic_settings import BaseSettings
from pydantic import field_validator, ConfigDict
from typing import Optional, List
from dotenv import load_dotenv
from urllib.parse import quote_plus

# Load environment variables
load_dotenv()

class Settings(BaseSettings):
    # Application Settings
    APP_NAME: str = "CredVault"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS Settings
    CORS_ORIGINS: List[str] = ["*"]

    # Database Configuration
    DB_HOST: Optional[str] = None
    DB_PORT: int = 3306
    DB_USER: Optional[str] = None
    DB_PASSWORD: Optional[str] = None
    DB_NAME: Optional[str] = None
    DATABASE_URL: Optional[str] = None

    # Database Pool Settings
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_PRE_PING: bool = True
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False

    # Security
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 120
    LOGIN_NONCE_TTL_MINUTES: int = 5

    # Per-document keys are wrapped under this secret before they reach the database
    MASTER_ENCRYPTION_KEY: str = "default-master-key-change-in-production"

    # Upload limits
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024
    ALLOWED_MIME_TYPES: List[str] = [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/jpeg",
        "image/png",
    ]

    # Object store (IPFS)
    IPFS_PROVIDER: str = "local"
    IPFS_GATEWAY_URL: str = "https://ipfs.io/ipfs/"
    PINATA_API_URL: str = "https://api.pinata.cloud"
    PINATA_JWT: Optional[str] = None
    LOCAL_IPFS_PATH: str = "./uploads/ipfs"
    OBJECT_STORE_MAX_IN_FLIGHT: int = 16

    # Blockchain Configuration
    LEDGER_MODE: str = "memory"
    ETHEREUM_RPC_URL: str = "http://localhost:8545"
    CHAIN_ID: int = 11155111
    ISSUER_PRIVATE_KEY: Optional[str] = None
    CONTRACT_ADDRESS_DOCUMENT_REGISTRY: Optional[str] = None
    CONTRACT_ADDRESS_ACCESS_CONTROL: Optional[str] = None
    BLOCKCHAIN_EXPLORER_URL: str = "https://sepolia.etherscan.io"
    LEDGER_CONFIRMATIONS: int = 1
    LEDGER_TX_TIMEOUT: float = 120.0
    LEDGER_MAX_IN_FLIGHT: int = 8
    GAS_LIMIT_MULTIPLIER: float = 1.2

    # QR codes
    VERIFICATION_BASE_URL: str = "http://localhost:3000/verify"

    # Registration pipeline
    REQUEST_TIMEOUT: float = 180.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0
    ISSUER_DAILY_QUOTA: int = 500

    # Reconciler
    RECONCILE_INTERVAL_SECONDS: int = 300
    RECONCILE_STALE_AFTER_SECONDS: int = 600
    RECONCILE_BATCH_SIZE: int = 50

    # Privacy / retention
    DELETION_CODE_TTL_HOURS: int = 24
    EXPORT_TTL_DAYS: int = 7
    EXPORT_MAX_DOWNLOADS: int = 3
    DEFAULT_RETENTION_DAYS: int = 2555
    RETENTION_SWEEP_HOUR: int = 2

    # Scheduler
    SCHEDULER_ENABLED: bool = True

    @field_validator('LEDGER_MODE', 'IPFS_PROVIDER', mode='before')
    @classmethod
    def lower_mode(cls, v):
        """Modes are matched case-insensitively"""
        return v.lower().strip() if isinstance(v, str) else v

    @field_validator('VERIFICATION_BASE_URL')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    # Pydantic v2 configuration
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def get_database_url(self) -> str:
        """Construct database URL from components"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DB_HOST and self.DB_USER and self.DB_NAME:
            return f"mysql+pymysql://{self.DB_USER}:{quote_plus(self.DB_PASSWORD or '')}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        return "sqlite:///./credvault.db"

# Create settings instance
settings = Settings()
