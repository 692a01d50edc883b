import base64
import struct

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from errors import BuildError
from metadata_codec import INITIALIZE_DISCRIMINATOR
from models import AccountLayout, ExtensionType, TokenDescriptor
from tx_builder import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYS_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    U64_MAX,
    build_create_holding_ix,
    build_create_mint_ixs,
    build_mint_supply_ix,
    holding_address,
    instruction_to_dict,
    message_from_instructions,
)

LAYOUT = AccountLayout(
    extensions=frozenset({ExtensionType.METADATA_POINTER}),
    mint_space_bytes=234,
    metadata_space_bytes=101,
    rent_exempt_lamports=3_222_480,
)


@pytest.fixture
def owner() -> Pubkey:
    return Keypair().pubkey()


@pytest.fixture
def mint() -> Pubkey:
    return Keypair().pubkey()


def test_holding_address_is_deterministic(owner, mint):
    first = holding_address(owner, mint)
    assert first == holding_address(owner, mint)
    expected, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_2022_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    assert first == expected
    assert not first.is_on_curve()


def test_holding_address_depends_on_all_inputs(owner, mint):
    base = holding_address(owner, mint)
    assert holding_address(owner, Keypair().pubkey()) != base
    assert holding_address(Keypair().pubkey(), mint) != base
    assert holding_address(owner, mint, TOKEN_PROGRAM_ID) != base


def test_create_mint_instruction_order(owner, mint, descriptor):
    ixs = build_create_mint_ixs(owner, mint, descriptor, LAYOUT)
    assert [ix.program_id for ix in ixs] == [SYS_PROGRAM_ID] + [TOKEN_2022_PROGRAM_ID] * 3
    assert ixs[1].data[0] == 39
    assert ixs[2].data[0] == 20
    assert ixs[3].data[:8] == INITIALIZE_DISCRIMINATOR


def test_create_account_sized_for_mint_funded_for_metadata(owner, mint, descriptor):
    create = build_create_mint_ixs(owner, mint, descriptor, LAYOUT)[0]
    tag, lamports, space = struct.unpack_from("<IQQ", bytes(create.data))
    assert tag == 0
    assert lamports == LAYOUT.rent_exempt_lamports
    assert space == LAYOUT.mint_space_bytes
    assert Pubkey.from_bytes(bytes(create.data)[20:52]) == TOKEN_2022_PROGRAM_ID
    assert [m.pubkey for m in create.accounts] == [owner, mint]
    assert all(m.is_signer for m in create.accounts)


def test_metadata_pointer_targets_mint(owner, mint, descriptor):
    pointer = build_create_mint_ixs(owner, mint, descriptor, LAYOUT)[1]
    data = bytes(pointer.data)
    assert data[:2] == bytes([39, 0])
    assert data[2:34] == bytes(owner)
    assert data[34:66] == bytes(mint)
    assert [m.pubkey for m in pointer.accounts] == [mint]


def test_initialize_mint2_encoding(owner, mint, descriptor):
    init = build_create_mint_ixs(owner, mint, descriptor, LAYOUT)[2]
    assert bytes(init.data) == bytes([20, 9]) + bytes(owner) + b"\x00"


def test_initialize_metadata_accounts(owner, mint, descriptor):
    meta = build_create_mint_ixs(owner, mint, descriptor, LAYOUT)[3]
    assert [m.pubkey for m in meta.accounts] == [mint, owner, mint, owner]
    assert [m.is_signer for m in meta.accounts] == [False, False, False, True]
    assert meta.accounts[0].is_writable


def test_separate_mint_authority(owner, mint, descriptor):
    authority = Keypair().pubkey()
    ixs = build_create_mint_ixs(owner, mint, descriptor, LAYOUT, authority=authority)
    assert bytes(ixs[2].data)[2:34] == bytes(authority)
    assert ixs[3].accounts[3].pubkey == authority


@pytest.mark.parametrize(
    "decimals,supply",
    [(10, 1), (9, U64_MAX + 1), (9, 2**60)],
)
def test_out_of_range_numbers_rejected(owner, mint, decimals, supply):
    d = TokenDescriptor(name="Test", symbol="TST", decimals=decimals, initial_supply=supply, uri="ipfs://abc")
    with pytest.raises(BuildError):
        build_create_mint_ixs(owner, mint, d, LAYOUT)


def test_create_holding_is_idempotent_variant(owner, mint):
    ix = build_create_holding_ix(owner, owner, mint)
    assert ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
    assert bytes(ix.data) == b"\x01"
    keys = [m.pubkey for m in ix.accounts]
    assert keys == [owner, holding_address(owner, mint), owner, mint, SYS_PROGRAM_ID, TOKEN_2022_PROGRAM_ID]


def test_mint_supply_targets_derived_holding(owner, mint):
    ix = build_mint_supply_ix(mint, owner, owner, 1000 * 10**9)
    assert bytes(ix.data) == bytes([7]) + (1000 * 10**9).to_bytes(8, "little")
    assert [m.pubkey for m in ix.accounts] == [mint, holding_address(owner, mint), owner]
    assert ix.accounts[2].is_signer


def test_mint_supply_overflow(owner, mint):
    with pytest.raises(BuildError):
        build_mint_supply_ix(mint, owner, owner, U64_MAX + 1)


def test_instruction_to_dict(owner, mint):
    ix = build_create_holding_ix(owner, owner, mint)
    as_dict = instruction_to_dict(ix)
    assert as_dict["program_id"] == str(ASSOCIATED_TOKEN_PROGRAM_ID)
    assert base64.b64decode(as_dict["data"]) == b"\x01"
    assert as_dict["keys"][0] == {"pubkey": str(owner), "is_signer": True, "is_writable": True}


def test_message_from_instructions(owner, mint):
    ix = build_create_holding_ix(owner, owner, mint)
    encoded = message_from_instructions([ix], owner, "11111111111111111111111111111111")
    assert base64.b64decode(encoded)
