from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from errors import ValidationError, describe

MAX_DECIMALS = 9


class ExtensionType(enum.IntEnum):
    # Token-2022 extension type codes; only mint-side extensions are listed.
    TRANSFER_FEE_CONFIG = 1
    MINT_CLOSE_AUTHORITY = 3
    DEFAULT_ACCOUNT_STATE = 6
    NON_TRANSFERABLE = 9
    INTEREST_BEARING_CONFIG = 10
    PERMANENT_DELEGATE = 12
    TRANSFER_HOOK = 14
    METADATA_POINTER = 18
    TOKEN_METADATA = 19
    GROUP_POINTER = 20
    GROUP_MEMBER_POINTER = 22


class Step(str, enum.Enum):
    CREATE_MINT = "create_mint"
    CREATE_HOLDING = "create_holding"
    MINT_SUPPLY = "mint_supply"


class IssuanceState(str, enum.Enum):
    IDLE = "idle"
    MINT_BUILT = "mint_built"
    MINT_SUBMITTED = "mint_submitted"
    HOLDING_SUBMITTED = "holding_submitted"
    SUPPLY_MINTED = "supply_minted"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (IssuanceState.DONE, IssuanceState.FAILED)


@dataclass(frozen=True)
class TokenDescriptor:
    name: str
    symbol: str
    decimals: int
    initial_supply: int
    uri: str

    def validate(self) -> None:
        for label in ("name", "symbol", "uri"):
            value = getattr(self, label)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{label} must be a non-empty string")
        if isinstance(self.decimals, bool) or not isinstance(self.decimals, int) or self.decimals < 0:
            raise ValidationError(f"decimals must be a non-negative integer, got {self.decimals!r}")
        if isinstance(self.initial_supply, bool) or not isinstance(self.initial_supply, int) or self.initial_supply < 0:
            raise ValidationError(f"initial_supply must be a non-negative integer, got {self.initial_supply!r}")

    @property
    def raw_supply(self) -> int:
        return self.initial_supply * (10 ** self.decimals)


@dataclass(frozen=True)
class AccountLayout:
    extensions: FrozenSet[ExtensionType]
    mint_space_bytes: int
    metadata_space_bytes: int
    rent_exempt_lamports: int

    @property
    def total_space_bytes(self) -> int:
        return self.mint_space_bytes + self.metadata_space_bytes


@dataclass
class IssuanceTransaction:
    """One step's compiled message plus the signatures gathered so far.

    Signature slots follow the message's signer order; the fee payer is
    always slot 0 and stays empty until the wallet signs.
    """

    step: Step
    instructions: List[Instruction]
    message: MessageV0
    extra_signers: List[Pubkey] = field(default_factory=list)
    signatures: List[Signature] = field(default_factory=list)
    completed: bool = False

    def __post_init__(self) -> None:
        if not self.signatures:
            required = self.message.header.num_required_signatures
            self.signatures = [Signature.default() for _ in range(required)]

    @property
    def fee_payer(self) -> Pubkey:
        return self.message.account_keys[0]

    @property
    def signer_keys(self) -> List[Pubkey]:
        required = self.message.header.num_required_signatures
        return list(self.message.account_keys[:required])

    def sign(self, keypair: Keypair) -> None:
        try:
            index = self.signer_keys.index(keypair.pubkey())
        except ValueError:
            raise ValidationError(f"{keypair.pubkey()} is not a signer of the {self.step.value} transaction") from None
        self.signatures[index] = keypair.sign_message(to_bytes_versioned(self.message))

    def missing_signers(self) -> List[Pubkey]:
        default = Signature.default()
        return [key for key, sig in zip(self.signer_keys, self.signatures) if sig == default]

    def to_transaction(self) -> VersionedTransaction:
        return VersionedTransaction.populate(self.message, self.signatures)


@dataclass(frozen=True)
class IssuanceEntry:
    step: Optional[Step]
    state: IssuanceState
    message: str
    reference: Optional[str] = None
    error: Optional[dict] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "step": self.step.value if self.step else None,
            "state": self.state.value,
            "message": self.message,
            "reference": self.reference,
            "error": self.error,
            "created_at": self.created_at,
        }


@dataclass
class IssuanceResult:
    entries: List[IssuanceEntry] = field(default_factory=list)
    state: IssuanceState = IssuanceState.IDLE
    mint: Optional[Pubkey] = None
    holding: Optional[Pubkey] = None
    failed_step: Optional[Step] = None
    cause: Optional[BaseException] = None

    def record(
        self,
        step: Optional[Step],
        message: str,
        reference: Optional[str] = None,
        state: Optional[IssuanceState] = None,
    ) -> IssuanceEntry:
        if self.state.terminal:
            raise RuntimeError(f"issuance already finished in state {self.state.value}")
        if state is not None:
            self.state = state
        entry = IssuanceEntry(step=step, state=self.state, message=message, reference=reference)
        self.entries.append(entry)
        return entry

    def fail(self, step: Step, cause: BaseException) -> IssuanceEntry:
        if self.state.terminal:
            raise RuntimeError(f"issuance already finished in state {self.state.value}")
        self.state = IssuanceState.FAILED
        self.failed_step = step
        self.cause = cause
        entry = IssuanceEntry(
            step=step,
            state=IssuanceState.FAILED,
            message=f"{step.value} failed: {cause}",
            error=describe(cause),
        )
        self.entries.append(entry)
        return entry

    @property
    def succeeded(self) -> bool:
        return self.state == IssuanceState.DONE
