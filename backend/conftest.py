import struct
from typing import Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from errors import NetworkError, NetworkQueryError
from models import TokenDescriptor
from rpc import AccountSnapshot, KeypairSigner
from tx_builder import ASSOCIATED_TOKEN_PROGRAM_ID, SYS_PROGRAM_ID, TOKEN_2022_PROGRAM_ID

ACCOUNT_STORAGE_OVERHEAD = 128
LAMPORTS_PER_BYTE = 6960
TOKEN_ACCOUNT_SIZE = 165


def rent_for(space: int) -> int:
    return (ACCOUNT_STORAGE_OVERHEAD + space) * LAMPORTS_PER_BYTE


def mint_data(authority: Pubkey, decimals: int, supply: int = 0) -> bytes:
    return (
        struct.pack("<I", 1)
        + bytes(authority)
        + struct.pack("<Q", supply)
        + bytes([decimals, 1])
        + struct.pack("<I", 0)
        + bytes(32)
    )


def token_account_data(mint: Pubkey, owner: Pubkey, amount: int = 0) -> bytes:
    data = bytes(mint) + bytes(owner) + struct.pack("<Q", amount)
    return data + bytes(TOKEN_ACCOUNT_SIZE - len(data))


class FakeConnection:
    """In-memory ledger that applies the instructions the issuer submits."""

    def __init__(
        self,
        fail_rent: Optional[Exception] = None,
        fail_submit_at: Optional[int] = None,
        submit_error: str = "Transaction simulation failed: blockhash not found",
        apply_before_fail: bool = False,
    ):
        self.fail_rent = fail_rent
        self.fail_submit_at = fail_submit_at
        self.submit_error = submit_error
        self.apply_before_fail = apply_before_fail
        self.rent_queries: List[int] = []
        self.blockhashes: List[Hash] = []
        self.submitted: List[VersionedTransaction] = []
        self.accounts: Dict[Pubkey, AccountSnapshot] = {}
        self.balances: Dict[Pubkey, int] = {}

    def add_account(self, address: Pubkey, owner: Pubkey, data: bytes) -> None:
        self.accounts[address] = AccountSnapshot(owner=owner, lamports=rent_for(len(data)), data=data)

    def get_rent_exempt_minimum(self, space_bytes: int) -> int:
        if self.fail_rent is not None:
            raise self.fail_rent
        self.rent_queries.append(space_bytes)
        return rent_for(space_bytes)

    def get_freshness_token(self) -> Hash:
        blockhash = Hash.new_unique()
        self.blockhashes.append(blockhash)
        return blockhash

    def get_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        return self.accounts.get(address)

    def submit(self, tx: VersionedTransaction) -> str:
        index = len(self.submitted)
        self.submitted.append(tx)
        if not all(tx.verify_with_results()):
            raise NetworkError("signature verification failed")
        if index == self.fail_submit_at:
            if self.apply_before_fail:
                self._apply(tx)
            raise NetworkError(self.submit_error)
        self._apply(tx)
        return str(tx.signatures[0])

    def _apply(self, tx: VersionedTransaction) -> None:
        keys = list(tx.message.account_keys)
        for ix in tx.message.instructions:
            program = keys[ix.program_id_index]
            accounts = [keys[i] for i in ix.accounts]
            data = bytes(ix.data)
            if program == SYS_PROGRAM_ID:
                _, lamports, space = struct.unpack_from("<IQQ", data)
                owner = Pubkey.from_bytes(data[20:52])
                self.accounts[accounts[1]] = AccountSnapshot(owner=owner, lamports=lamports, data=bytes(space))
            elif program == ASSOCIATED_TOKEN_PROGRAM_ID:
                if accounts[1] not in self.accounts:
                    self.add_account(accounts[1], TOKEN_2022_PROGRAM_ID, token_account_data(accounts[3], accounts[2]))
            elif program == TOKEN_2022_PROGRAM_ID and data[0] == 20:
                snap = self.accounts[accounts[0]]
                new_data = mint_data(Pubkey.from_bytes(data[2:34]), data[1]) + snap.data[82:]
                self.accounts[accounts[0]] = AccountSnapshot(owner=snap.owner, lamports=snap.lamports, data=new_data)
            elif program == TOKEN_2022_PROGRAM_ID and data[0] == 7:
                amount = struct.unpack_from("<Q", data, 1)[0]
                self.balances[accounts[1]] = self.balances.get(accounts[1], 0) + amount
                snap = self.accounts[accounts[0]]
                supply = struct.unpack_from("<Q", snap.data, 36)[0] + amount
                new_data = snap.data[:36] + struct.pack("<Q", supply) + snap.data[44:]
                self.accounts[accounts[0]] = AccountSnapshot(owner=snap.owner, lamports=snap.lamports, data=new_data)


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def issuer_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def signer(issuer_keypair, connection) -> KeypairSigner:
    return KeypairSigner(issuer_keypair, connection)


@pytest.fixture
def descriptor() -> TokenDescriptor:
    return TokenDescriptor(name="Test", symbol="TST", decimals=9, initial_supply=1000, uri="ipfs://abc")


@pytest.fixture
def rpc_down() -> NetworkQueryError:
    return NetworkQueryError("getMinimumBalanceForRentExemption failed: connection refused")
