"""Network and wallet collaborators used by the issuer.

``RpcConnection`` wraps the solana-py HTTP client and turns its failures
into the issuance error taxonomy. ``KeypairSigner`` plays the wallet: it
adds the fee-payer signature to a partially signed transaction and hands
it to the connection for broadcast.
"""

import base64
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from solana.rpc.api import Client
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from errors import NetworkError, NetworkQueryError, ValidationError
from models import IssuanceTransaction

logger = logging.getLogger("launchpad.rpc")

ALREADY_EXISTS_MARKERS = ("already in use", "already exists", "alreadyinuse")


@dataclass(frozen=True)
class AccountSnapshot:
    owner: Pubkey
    lamports: int
    data: bytes


class Connection(Protocol):
    def get_rent_exempt_minimum(self, space_bytes: int) -> int: ...

    def get_freshness_token(self) -> Hash: ...

    def submit(self, tx: VersionedTransaction) -> str: ...

    def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]: ...


class Signer(Protocol):
    @property
    def public_key(self) -> Pubkey: ...

    def sign_and_send(self, tx: IssuanceTransaction) -> str: ...


def is_already_exists(exc: BaseException) -> bool:
    text = str(exc).lower().replace(" ", "")
    return any(marker.replace(" ", "") in text for marker in ALREADY_EXISTS_MARKERS)


def _account_data(raw) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    # handle (data, encoding) tuple/list shape
    data_b64 = raw[0] if isinstance(raw, (list, tuple)) else raw
    return base64.b64decode(data_b64)


class RpcConnection:
    def __init__(self, rpc_url: str, commitment: str = "confirmed", timeout: float = 30, client: Optional[Client] = None):
        self.commitment = commitment
        self.client = client or Client(rpc_url, commitment=commitment, timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "RpcConnection":
        return cls(settings.rpc_url, commitment=settings.commitment, timeout=settings.rpc_timeout_seconds)

    def get_rent_exempt_minimum(self, space_bytes: int) -> int:
        try:
            resp = self.client.get_minimum_balance_for_rent_exemption(space_bytes)
        except Exception as exc:  # noqa: BLE001
            raise NetworkQueryError(f"getMinimumBalanceForRentExemption({space_bytes}) failed: {exc}") from exc
        return int(resp.value)

    def get_freshness_token(self) -> Hash:
        try:
            resp = self.client.get_latest_blockhash(commitment=self.commitment)
        except Exception as exc:  # noqa: BLE001
            raise NetworkQueryError(f"getLatestBlockhash failed: {exc}") from exc
        return resp.value.blockhash

    def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        try:
            resp = self.client.get_account_info(address, commitment=self.commitment)
        except Exception as exc:  # noqa: BLE001
            raise NetworkQueryError(f"getAccountInfo({address}) failed: {exc}") from exc
        value = resp.value
        if value is None:
            return None
        return AccountSnapshot(owner=value.owner, lamports=value.lamports, data=_account_data(value.data))

    def submit(self, tx: VersionedTransaction) -> str:
        """Broadcast and block until the cluster reports the transaction at our commitment."""
        try:
            resp = self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_confirmation=True, skip_preflight=False, preflight_commitment=self.commitment),
            )
        except Exception as exc:  # noqa: BLE001
            raise NetworkError(f"send_transaction rejected: {exc}") from exc
        sig = resp.value
        logger.info("tx_sent signature=%s", sig)
        try:
            status_resp = self.client.confirm_transaction(sig, commitment=self.commitment)
        except Exception as exc:  # noqa: BLE001
            raise NetworkError(f"transaction {sig} was not confirmed: {exc}") from exc
        status = status_resp.value[0] if status_resp.value else None
        if status is None:
            raise NetworkError(f"transaction {sig} has no status after confirmation")
        if status.err:
            raise NetworkError(f"transaction {sig} failed on-chain: {status.err}")
        return str(sig)


class KeypairSigner:
    def __init__(self, keypair: Keypair, connection: Connection):
        self.keypair = keypair
        self.connection = connection

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def sign_and_send(self, tx: IssuanceTransaction) -> str:
        tx.sign(self.keypair)
        missing = tx.missing_signers()
        if missing:
            raise ValidationError(f"{tx.step.value} transaction is missing signatures from {[str(k) for k in missing]}")
        return self.connection.submit(tx.to_transaction())


def load_keypair(path: str) -> Keypair:
    keypair_path = Path(path).expanduser()
    if not keypair_path.exists():
        raise FileNotFoundError(f"Missing keypair at {keypair_path}")
    raw = json.loads(keypair_path.read_text(encoding="utf-8"))
    if isinstance(raw, list):
        secret = bytes(raw)
    elif isinstance(raw, dict) and "secretKey" in raw:
        secret = bytes(raw["secretKey"])
    else:
        raise ValueError("Unsupported keypair file format")
    return Keypair.from_bytes(secret)
