from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    commitment: str = "confirmed"
    rpc_timeout_seconds: float = 30
    issuer_keypair_path: Optional[str] = None
    pinata_jwt: Optional[str] = None
    pinata_gateway: str = "https://gateway.pinata.cloud/ipfs"
    pinata_api_url: str = "https://api.pinata.cloud"
    pinata_timeout_seconds: float = 60
    # Byte limits for metadata strings, matching common Solana metadata conventions.
    max_name_bytes: int = 32
    max_symbol_bytes: int = 10
    max_uri_bytes: int = 200
    default_decimals: int = 9

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc


@lru_cache
def get_settings() -> Settings:
    return Settings()
