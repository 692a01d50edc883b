import logging
from typing import Iterable, Optional

from errors import BuildError, NetworkQueryError
from metadata_codec import DEFAULT_LIMITS, FieldLimits, tlv_length
from models import AccountLayout, ExtensionType, TokenDescriptor

logger = logging.getLogger("launchpad.sizer")

MINT_SIZE = 82
# Token-2022 pads every extended mint to the token-account length before the account type byte.
BASE_ACCOUNT_SIZE = 165
ACCOUNT_TYPE_SIZE = 1
MULTISIG_SIZE = 355
TLV_HEADER_SIZE = 4

# Fixed data size of each mint extension; TOKEN_METADATA is variable and sized by the codec.
EXTENSION_DATA_SIZE = {
    ExtensionType.TRANSFER_FEE_CONFIG: 108,
    ExtensionType.MINT_CLOSE_AUTHORITY: 32,
    ExtensionType.DEFAULT_ACCOUNT_STATE: 1,
    ExtensionType.NON_TRANSFERABLE: 0,
    ExtensionType.INTEREST_BEARING_CONFIG: 52,
    ExtensionType.PERMANENT_DELEGATE: 32,
    ExtensionType.TRANSFER_HOOK: 64,
    ExtensionType.METADATA_POINTER: 64,
    ExtensionType.GROUP_POINTER: 64,
    ExtensionType.GROUP_MEMBER_POINTER: 64,
}

METADATA_EXTENSIONS = frozenset({ExtensionType.METADATA_POINTER})


def required_mint_space(extensions: Iterable[ExtensionType]) -> int:
    extensions = set(extensions)
    if not extensions:
        return MINT_SIZE
    space = BASE_ACCOUNT_SIZE + ACCOUNT_TYPE_SIZE
    for ext in sorted(extensions):
        if ext not in EXTENSION_DATA_SIZE:
            raise BuildError(f"{ext.name} has no fixed size; it cannot be preallocated on the mint")
        space += TLV_HEADER_SIZE + EXTENSION_DATA_SIZE[ext]
    # A length equal to the multisig length would be read as a multisig account.
    if space == MULTISIG_SIZE:
        space += 2
    return space


def rent_exempt_cost(connection, total_space_bytes: int) -> int:
    try:
        lamports = connection.get_rent_exempt_minimum(total_space_bytes)
    except NetworkQueryError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise NetworkQueryError(f"rent exemption query for {total_space_bytes} bytes failed: {exc}") from exc
    return int(lamports)


def compute_layout(
    connection,
    descriptor: TokenDescriptor,
    extensions: Iterable[ExtensionType] = METADATA_EXTENSIONS,
    limits: Optional[FieldLimits] = None,
) -> AccountLayout:
    """Size the mint and fund it for the metadata the initialize instruction will append.

    The account is created with ``mint_space_bytes`` only; the metadata
    initialize instruction reallocates it, so the deposit must already
    cover mint space plus the metadata TLV entry.
    """
    extensions = frozenset(extensions)
    mint_space = required_mint_space(extensions)
    metadata_space = tlv_length(descriptor, limits=limits or DEFAULT_LIMITS)
    total = mint_space + metadata_space
    lamports = rent_exempt_cost(connection, total)
    logger.info(
        "account_layout mint_space=%s metadata_space=%s total=%s lamports=%s",
        mint_space,
        metadata_space,
        total,
        lamports,
    )
    return AccountLayout(
        extensions=extensions,
        mint_space_bytes=mint_space,
        metadata_space_bytes=metadata_space,
        rent_exempt_lamports=lamports,
    )
