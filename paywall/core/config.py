# paywall/core/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Paywall"
    API_PREFIX: str = "/api"

    # x402 resource server
    X402_ENABLED: bool = True
    X402_NETWORK: str = "eip155:5042002"  # Arc testnet
    X402_PAY_TO_ADDRESS: Optional[str] = None
    X402_MERCHANT_WALLET_ID: Optional[str] = None  # custodial payee, used when no address is pinned
    X402_MAX_TIMEOUT_SECONDS: int = 300
    X402_PAYEE_CACHE_TTL_SECONDS: float = 30.0

    # Facilitator (verify/settle). Leave the URL unset to verify and settle in-process.
    X402_FACILITATOR_URL: Optional[str] = None
    X402_FACILITATOR_WALLET_ID: Optional[str] = None
    X402_FACILITATOR_ADDRESS: Optional[str] = None
    X402_SETTLE_POLL_ATTEMPTS: int = 60
    X402_SETTLE_POLL_INTERVAL_SECONDS: float = 1.0

    # Retry policy for signer / RPC transport failures
    X402_BACKEND_RETRY_ATTEMPTS: int = 3
    X402_BACKEND_RETRY_BASE_DELAY: float = 0.5

    # Audit trail
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Execution backend
    RPC_URL: str = "https://rpc.testnet.arc.network"

    # Circle developer-controlled wallets
    CIRCLE_API_URL: str = "https://api.circle.com"
    CIRCLE_API_KEY: Optional[str] = None
    CIRCLE_ENTITY_SECRET: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
