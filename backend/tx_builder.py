import base64
from typing import List, Optional

from borsh_construct import CStruct, Option, U64, U8
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account

from errors import BuildError
from metadata_codec import DEFAULT_LIMITS, FieldLimits, encode_initialize
from models import MAX_DECIMALS, AccountLayout, TokenDescriptor

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

U64_MAX = 2**64 - 1

# Token program instruction tags.
MINT_TO = 7
INITIALIZE_MINT2 = 20
METADATA_POINTER_EXTENSION = 39
METADATA_POINTER_INITIALIZE = 0
# Associated token account program: 0 = Create, 1 = CreateIdempotent.
ATA_CREATE_IDEMPOTENT = 1

MetadataPointerInitLayout = CStruct(
    "instruction" / U8,
    "sub_instruction" / U8,
    "authority" / U8[32],
    "metadata_address" / U8[32],
)
InitializeMint2Layout = CStruct(
    "instruction" / U8,
    "decimals" / U8,
    "mint_authority" / U8[32],
    "freeze_authority" / Option(U8[32]),
)
MintToLayout = CStruct("instruction" / U8, "amount" / U64)


def to_pubkey(value: str) -> Pubkey:
    return Pubkey.from_string(value)


def holding_address(owner: Pubkey, mint: Pubkey, program_id: Pubkey = TOKEN_2022_PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(program_id), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


def check_decimals(decimals: int) -> None:
    if not 0 <= decimals <= MAX_DECIMALS:
        raise BuildError(f"decimals must be between 0 and {MAX_DECIMALS}, got {decimals}")


def check_amount(amount: int) -> None:
    if not 0 <= amount <= U64_MAX:
        raise BuildError(f"amount {amount} does not fit in an unsigned 64-bit integer")


def check_descriptor(descriptor: TokenDescriptor) -> None:
    check_decimals(descriptor.decimals)
    check_amount(descriptor.initial_supply)
    check_amount(descriptor.raw_supply)


def encode_initialize_metadata_pointer(authority: Optional[Pubkey], metadata_address: Optional[Pubkey]) -> bytes:
    # OptionalNonZeroPubkey: all zeros means none.
    return MetadataPointerInitLayout.build(
        {
            "instruction": METADATA_POINTER_EXTENSION,
            "sub_instruction": METADATA_POINTER_INITIALIZE,
            "authority": list(bytes(authority)) if authority else [0] * 32,
            "metadata_address": list(bytes(metadata_address)) if metadata_address else [0] * 32,
        }
    )


def encode_initialize_mint2(decimals: int, mint_authority: Pubkey, freeze_authority: Optional[Pubkey]) -> bytes:
    check_decimals(decimals)
    return InitializeMint2Layout.build(
        {
            "instruction": INITIALIZE_MINT2,
            "decimals": decimals,
            "mint_authority": list(bytes(mint_authority)),
            "freeze_authority": list(bytes(freeze_authority)) if freeze_authority else None,
        }
    )


def encode_mint_to(amount: int) -> bytes:
    check_amount(amount)
    return MintToLayout.build({"instruction": MINT_TO, "amount": amount})


def build_create_mint_account_ix(payer: Pubkey, mint: Pubkey, layout: AccountLayout) -> Instruction:
    # Space covers the mint only; lamports already cover the metadata realloc.
    return create_account(
        CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=mint,
            lamports=layout.rent_exempt_lamports,
            space=layout.mint_space_bytes,
            owner=TOKEN_2022_PROGRAM_ID,
        )
    )


def build_initialize_metadata_pointer_ix(mint: Pubkey, authority: Pubkey, metadata_address: Pubkey) -> Instruction:
    accounts = [AccountMeta(pubkey=mint, is_signer=False, is_writable=True)]
    data = encode_initialize_metadata_pointer(authority, metadata_address)
    return Instruction(program_id=TOKEN_2022_PROGRAM_ID, data=data, accounts=accounts)


def build_initialize_mint2_ix(
    mint: Pubkey,
    decimals: int,
    mint_authority: Pubkey,
    freeze_authority: Optional[Pubkey] = None,
) -> Instruction:
    accounts = [AccountMeta(pubkey=mint, is_signer=False, is_writable=True)]
    data = encode_initialize_mint2(decimals, mint_authority, freeze_authority)
    return Instruction(program_id=TOKEN_2022_PROGRAM_ID, data=data, accounts=accounts)


def build_initialize_metadata_ix(
    metadata: Pubkey,
    update_authority: Pubkey,
    mint: Pubkey,
    mint_authority: Pubkey,
    descriptor: TokenDescriptor,
    limits: FieldLimits = DEFAULT_LIMITS,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=metadata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=update_authority, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint_authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_2022_PROGRAM_ID, data=encode_initialize(descriptor, limits), accounts=accounts)


def build_create_mint_ixs(
    payer: Pubkey,
    mint: Pubkey,
    descriptor: TokenDescriptor,
    layout: AccountLayout,
    authority: Optional[Pubkey] = None,
    limits: FieldLimits = DEFAULT_LIMITS,
) -> List[Instruction]:
    """Create and initialize a metadata-carrying mint in one atomic list.

    Order matters: the pointer extension must exist before InitializeMint2,
    and the mint must be initialized before metadata is written into it.
    """
    check_descriptor(descriptor)
    authority = authority or payer
    return [
        build_create_mint_account_ix(payer, mint, layout),
        build_initialize_metadata_pointer_ix(mint, authority, mint),
        build_initialize_mint2_ix(mint, descriptor.decimals, authority),
        build_initialize_metadata_ix(mint, authority, mint, authority, descriptor, limits),
    ]


def build_create_holding_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    ata = holding_address(owner, mint)
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_2022_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=bytes([ATA_CREATE_IDEMPOTENT]), accounts=accounts)


def build_mint_supply_ix(mint: Pubkey, owner: Pubkey, authority: Pubkey, amount: int) -> Instruction:
    destination = holding_address(owner, mint)
    accounts = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_2022_PROGRAM_ID, data=encode_mint_to(amount), accounts=accounts)


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }


def compile_message(payer: Pubkey, blockhash: Hash, ixs: List[Instruction]) -> MessageV0:
    return MessageV0.try_compile(payer, ixs, [], blockhash)


def message_from_instructions(ixs: List[Instruction], payer: Pubkey, blockhash: str) -> str:
    message = compile_message(payer, Hash.from_string(blockhash), ixs)
    return base64.b64encode(bytes(message)).decode()
