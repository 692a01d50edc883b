"""Token-2022 metadata-interface record codec.

The record stored inside the mint account is laid out as::

    update_authority  32 bytes (all zero when absent)
    mint              32 bytes
    name, symbol, uri u32 length + UTF-8 bytes each
    additional        u32 count + (u32 length + key, u32 length + value) pairs

Inside the account it sits in a TLV entry: 2-byte extension type,
2-byte length, then the record.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from borsh_construct import CStruct, String, U8, U16, Vec
from solders.pubkey import Pubkey

from errors import EncodingError
from models import ExtensionType, TokenDescriptor

TYPE_SIZE = 2
LENGTH_SIZE = 2
PUBKEY_SIZE = 32
STRING_PREFIX_SIZE = 4
VEC_PREFIX_SIZE = 4

INITIALIZE_DISCRIMINATOR = hashlib.sha256(b"spl_token_metadata_interface:initialize_account").digest()[:8]

KeyValueLayout = CStruct("key" / String, "value" / String)
TokenMetadataLayout = CStruct(
    "update_authority" / U8[32],
    "mint" / U8[32],
    "name" / String,
    "symbol" / String,
    "uri" / String,
    "additional_metadata" / Vec(KeyValueLayout),
)
TlvHeaderLayout = CStruct("type" / U16, "length" / U16)
InitializeLayout = CStruct("name" / String, "symbol" / String, "uri" / String)


@dataclass(frozen=True)
class FieldLimits:
    name: int = 32
    symbol: int = 10
    uri: int = 200

    @classmethod
    def from_settings(cls, settings) -> "FieldLimits":
        return cls(
            name=settings.max_name_bytes,
            symbol=settings.max_symbol_bytes,
            uri=settings.max_uri_bytes,
        )


DEFAULT_LIMITS = FieldLimits()


def _zeroable(pubkey: Optional[Pubkey]) -> list:
    if pubkey is None:
        return [0] * PUBKEY_SIZE
    return list(bytes(pubkey))


def utf8_size(label: str, value: str) -> int:
    try:
        return len(value.encode("utf-8"))
    except UnicodeEncodeError as exc:
        raise EncodingError(f"{label} is not valid UTF-8 text: {exc}") from exc


def check_additional_metadata(additional_metadata: Sequence[Tuple[str, str]]) -> None:
    for key, value in additional_metadata:
        utf8_size("additional metadata key", key)
        utf8_size(f"additional metadata value for {key!r}", value)


def check_field_lengths(descriptor: TokenDescriptor, limits: FieldLimits = DEFAULT_LIMITS) -> None:
    for label in ("name", "symbol", "uri"):
        size = utf8_size(label, getattr(descriptor, label))
        limit = getattr(limits, label)
        if size > limit:
            raise EncodingError(f"{label} is {size} bytes, maximum is {limit}")


def encode(
    descriptor: TokenDescriptor,
    update_authority: Optional[Pubkey] = None,
    mint: Optional[Pubkey] = None,
    additional_metadata: Sequence[Tuple[str, str]] = (),
    limits: FieldLimits = DEFAULT_LIMITS,
) -> bytes:
    check_field_lengths(descriptor, limits)
    check_additional_metadata(additional_metadata)
    return TokenMetadataLayout.build(
        {
            "update_authority": _zeroable(update_authority),
            "mint": _zeroable(mint),
            "name": descriptor.name,
            "symbol": descriptor.symbol,
            "uri": descriptor.uri,
            "additional_metadata": [{"key": k, "value": v} for k, v in additional_metadata],
        }
    )


def encoded_length(
    descriptor: TokenDescriptor,
    additional_metadata: Sequence[Tuple[str, str]] = (),
    limits: FieldLimits = DEFAULT_LIMITS,
) -> int:
    """Exact length of ``encode(descriptor)``; the pubkey fields are fixed size."""
    check_field_lengths(descriptor, limits)
    size = 2 * PUBKEY_SIZE
    for value in (descriptor.name, descriptor.symbol, descriptor.uri):
        size += STRING_PREFIX_SIZE + len(value.encode("utf-8"))
    size += VEC_PREFIX_SIZE
    check_additional_metadata(additional_metadata)
    for key, value in additional_metadata:
        size += STRING_PREFIX_SIZE + len(key.encode("utf-8"))
        size += STRING_PREFIX_SIZE + len(value.encode("utf-8"))
    return size


def tlv_length(
    descriptor: TokenDescriptor,
    additional_metadata: Sequence[Tuple[str, str]] = (),
    limits: FieldLimits = DEFAULT_LIMITS,
) -> int:
    return TYPE_SIZE + LENGTH_SIZE + encoded_length(descriptor, additional_metadata, limits)


def encode_tlv(
    descriptor: TokenDescriptor,
    update_authority: Optional[Pubkey] = None,
    mint: Optional[Pubkey] = None,
    limits: FieldLimits = DEFAULT_LIMITS,
) -> bytes:
    body = encode(descriptor, update_authority, mint, limits=limits)
    if len(body) > 0xFFFF:
        raise EncodingError(f"metadata record is {len(body)} bytes, TLV length field holds at most 65535")
    header = TlvHeaderLayout.build({"type": int(ExtensionType.TOKEN_METADATA), "length": len(body)})
    return header + body


def decode(data: bytes) -> dict:
    parsed = TokenMetadataLayout.parse(data)
    update_authority = bytes(parsed.update_authority)
    return {
        "update_authority": None if update_authority == bytes(PUBKEY_SIZE) else Pubkey.from_bytes(update_authority),
        "mint": Pubkey.from_bytes(bytes(parsed.mint)),
        "name": parsed.name,
        "symbol": parsed.symbol,
        "uri": parsed.uri,
        "additional_metadata": [(item.key, item.value) for item in parsed.additional_metadata],
    }


def encode_initialize(descriptor: TokenDescriptor, limits: FieldLimits = DEFAULT_LIMITS) -> bytes:
    check_field_lengths(descriptor, limits)
    data = InitializeLayout.build(
        {"name": descriptor.name, "symbol": descriptor.symbol, "uri": descriptor.uri}
    )
    return INITIALIZE_DISCRIMINATOR + data
