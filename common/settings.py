import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    service_name: str = os.getenv("SERVICE_NAME", "solclaw-gateway")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = int(os.getenv("PORT", "8000"))

    rpc_url: str = os.getenv("RPC_URL", "https://api.devnet.solana.com")
    rpc_commitment: str = os.getenv("RPC_COMMITMENT", "confirmed")
    rpc_timeout_seconds: float = float(os.getenv("RPC_TIMEOUT_SECONDS", "10"))

    program_id: str = os.getenv("PROGRAM_ID", "J4qipHcPyaPkVs8ymCLcpgqSDJeoSn3k1LJLK7Q9DZ5H")
    usdc_mint: str = os.getenv("USDC_MINT", "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU")

    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))
    webhook_max_workers: int = int(os.getenv("WEBHOOK_MAX_WORKERS", "16"))
    webhook_store: str = os.getenv("WEBHOOK_STORE", "memory")  # memory|redis
    webhook_key_prefix: str = os.getenv("WEBHOOK_KEY_PREFIX", "webhook")

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

settings = Settings()
