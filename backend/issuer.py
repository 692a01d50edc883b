"""Token issuance orchestrator.

One ``TokenIssuer.issue_token`` call runs one attempt::

    IDLE -> MINT_BUILT -> MINT_SUBMITTED -> HOLDING_SUBMITTED -> SUPPLY_MINTED -> DONE

and stops in FAILED at the first error. Each step waits for confirmation
before the next one is built; nothing is retried internally.

Ledger state is not rolled back. If an attempt is abandoned or fails after
the mint transaction confirmed, the mint account stays on-chain and its
rent deposit is spent. Callers finish such a mint with
``resume_issuance`` instead of starting over; a failed or abandoned
CreateMint step is retried with a brand new mint keypair.
"""

import logging
import struct
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_sizer import METADATA_EXTENSIONS, compute_layout
from errors import BuildError, IssuanceError, NetworkError, ValidationError
from metadata_codec import DEFAULT_LIMITS, FieldLimits, check_field_lengths
from models import (
    ExtensionType,
    IssuanceEntry,
    IssuanceResult,
    IssuanceState,
    IssuanceTransaction,
    Step,
    TokenDescriptor,
)
from rpc import AccountSnapshot, Connection, Signer, is_already_exists
from tx_builder import (
    TOKEN_2022_PROGRAM_ID,
    build_create_holding_ix,
    build_create_mint_ixs,
    build_mint_supply_ix,
    check_descriptor,
    compile_message,
    holding_address,
    instruction_to_dict,
)

logger = logging.getLogger("launchpad.issuer")

MINT_BASE_SIZE = 82
TOKEN_ACCOUNT_MIN_SIZE = 64


def parse_mint(data: bytes) -> dict:
    # Base mint layout: COption<Pubkey> authority, u64 supply, u8 decimals, bool initialized, COption<Pubkey> freeze.
    if len(data) < MINT_BASE_SIZE:
        raise ValidationError(f"Mint account too short: {len(data)} bytes")
    o = 0
    mint_auth_opt = struct.unpack_from("<I", data, o)[0]; o += 4
    mint_auth: Optional[Pubkey] = None
    if mint_auth_opt != 0:
        mint_auth = Pubkey.from_bytes(data[o:o + 32])
    o += 32
    supply = struct.unpack_from("<Q", data, o)[0]; o += 8
    decimals = data[o]; o += 1
    is_init = data[o] == 1
    return {
        "mint_authority": mint_auth,
        "supply": supply,
        "decimals": decimals,
        "is_initialized": is_init,
    }


def verify_holding_account(snapshot: AccountSnapshot, address: Pubkey, mint: Pubkey, owner: Pubkey) -> None:
    """An existing account at the derived address only counts if it really is (mint, owner)'s token account."""
    if snapshot.owner != TOKEN_2022_PROGRAM_ID:
        raise ValidationError(f"Account {address} is owned by {snapshot.owner}, not the Token-2022 program")
    if len(snapshot.data) < TOKEN_ACCOUNT_MIN_SIZE:
        raise ValidationError(f"Account {address} is too short to be a token account: {len(snapshot.data)} bytes")
    onchain_mint = Pubkey.from_bytes(snapshot.data[0:32])
    onchain_owner = Pubkey.from_bytes(snapshot.data[32:64])
    if onchain_mint != mint or onchain_owner != owner:
        raise ValidationError(
            f"Account {address} holds mint {onchain_mint} for {onchain_owner}, expected mint {mint} for {owner}"
        )


class TokenIssuer:
    def __init__(
        self,
        connection: Connection,
        signer: Signer,
        limits: FieldLimits = DEFAULT_LIMITS,
        extensions: Iterable[ExtensionType] = METADATA_EXTENSIONS,
    ):
        self.connection = connection
        self.signer = signer
        self.limits = limits
        self.extensions = frozenset(extensions)
        self.last_result: Optional[IssuanceResult] = None

    def issue_token(self, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
        """Run one issuance attempt, yielding log entries as they are recorded.

        The final entry is always DONE or FAILED; the full log is kept on
        ``last_result``.
        """
        result = IssuanceResult()
        self.last_result = result
        logger.info("issuance_start issuer=%s name=%s symbol=%s", issuer, descriptor.name, descriptor.symbol)
        steps = [
            (Step.CREATE_MINT, self._create_mint),
            (Step.CREATE_HOLDING, self._create_holding),
            (Step.MINT_SUPPLY, self._mint_supply),
        ]
        yield from self._run(result, descriptor, issuer, steps)

    def resume_issuance(self, descriptor: TokenDescriptor, issuer: Pubkey, mint: Pubkey) -> Iterator[IssuanceEntry]:
        """Finish an attempt whose mint transaction already confirmed.

        Steps already reflected on-chain are recorded without resubmitting:
        an existing holding account is reused and a supply that was already
        minted is not minted again.
        """
        result = IssuanceResult()
        self.last_result = result
        logger.info("issuance_resume issuer=%s mint=%s", issuer, mint)
        steps = [
            (Step.CREATE_MINT, self._attach_existing_mint(mint)),
            (Step.CREATE_HOLDING, self._create_holding),
            (Step.MINT_SUPPLY, self._resume_supply),
        ]
        yield from self._run(result, descriptor, issuer, steps)

    def _run(self, result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey, steps) -> Iterator[IssuanceEntry]:
        step = Step.CREATE_MINT
        try:
            for step, run_step in steps:
                yield from run_step(result, descriptor, issuer)
        except IssuanceError as exc:
            logger.warning(
                "issuance_failed step=%s state=%s mint=%s error=%s",
                step.value,
                result.state.value,
                result.mint,
                exc,
                exc_info=True,
            )
            yield result.fail(step, exc)
            return
        logger.info("issuance_done mint=%s holding=%s", result.mint, result.holding)
        yield result.record(
            None,
            f"Issued {descriptor.initial_supply} {descriptor.symbol} to {result.holding}",
            reference=str(result.mint),
            state=IssuanceState.DONE,
        )

    def validate(self, descriptor: TokenDescriptor, issuer: Pubkey) -> None:
        descriptor.validate()
        check_field_lengths(descriptor, self.limits)
        check_descriptor(descriptor)
        if self.signer.public_key != issuer:
            raise ValidationError(f"Signer {self.signer.public_key} cannot pay for issuer {issuer}")

    def prepare(
        self,
        step: Step,
        payer: Pubkey,
        ixs: List[Instruction],
        local_signers: Sequence[Keypair] = (),
    ) -> IssuanceTransaction:
        blockhash = self.connection.get_freshness_token()
        try:
            message = compile_message(payer, blockhash, ixs)
        except Exception as exc:  # noqa: BLE001
            raise BuildError(f"{step.value} message failed to compile: {exc}") from exc
        tx = IssuanceTransaction(
            step=step,
            instructions=ixs,
            message=message,
            extra_signers=[kp.pubkey() for kp in local_signers],
        )
        for kp in local_signers:
            tx.sign(kp)
        return tx

    def _send(self, tx: IssuanceTransaction) -> str:
        signature = self.signer.sign_and_send(tx)
        tx.completed = True
        logger.info("issuance_step_confirmed step=%s signature=%s", tx.step.value, signature)
        return signature

    def _create_mint(self, result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
        step = Step.CREATE_MINT
        self.validate(descriptor, issuer)
        mint_keypair = Keypair()
        try:
            mint = mint_keypair.pubkey()
            layout = compute_layout(self.connection, descriptor, self.extensions, self.limits)
            ixs = build_create_mint_ixs(issuer, mint, descriptor, layout, authority=issuer, limits=self.limits)
            tx = self.prepare(step, issuer, ixs, local_signers=[mint_keypair])
            result.mint = mint
            yield result.record(
                step,
                f"Mint transaction built: {layout.mint_space_bytes} bytes, "
                f"{layout.rent_exempt_lamports} lamports for {layout.total_space_bytes} bytes",
                reference=str(mint),
                state=IssuanceState.MINT_BUILT,
            )
            yield result.record(step, "Awaiting wallet signature for mint creation", reference=str(mint))
            signature = self._send(tx)
        finally:
            # The keypair is single-use; a retry must generate a new mint address.
            del mint_keypair
        yield result.record(step, f"Mint account created at {mint}", reference=signature, state=IssuanceState.MINT_SUBMITTED)

    def _read_mint(self, mint: Pubkey, descriptor: TokenDescriptor) -> dict:
        """Parse an existing mint; its supply must be zero or exactly the requested raw supply."""
        snapshot = self.connection.get_account(mint)
        if snapshot is None:
            raise ValidationError(f"Mint {mint} not found on-chain")
        if snapshot.owner != TOKEN_2022_PROGRAM_ID:
            raise ValidationError(f"Mint {mint} is owned by {snapshot.owner}, not the Token-2022 program")
        parsed = parse_mint(snapshot.data)
        if parsed["supply"] not in (0, descriptor.raw_supply):
            raise ValidationError(
                f"Mint {mint} already has a supply of {parsed['supply']}, expected 0 or {descriptor.raw_supply}"
            )
        return parsed

    def _attach_existing_mint(self, mint: Pubkey):
        def attach(result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
            step = Step.CREATE_MINT
            self.validate(descriptor, issuer)
            parsed = self._read_mint(mint, descriptor)
            if parsed["decimals"] != descriptor.decimals:
                raise ValidationError(f"Mint {mint} has {parsed['decimals']} decimals, expected {descriptor.decimals}")
            if parsed["mint_authority"] != issuer:
                raise ValidationError(f"Mint authority of {mint} is {parsed['mint_authority']}, not {issuer}")
            result.mint = mint
            yield result.record(step, f"Resuming with existing mint {mint}", reference=str(mint), state=IssuanceState.MINT_SUBMITTED)

        return attach

    def _resume_supply(self, result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
        # A MintTo that landed after its confirmation timed out must not be sent twice.
        parsed = self._read_mint(result.mint, descriptor)
        if parsed["supply"] == 0:
            yield from self._mint_supply(result, descriptor, issuer)
            return
        logger.info("supply_already_minted mint=%s supply=%s", result.mint, parsed["supply"])
        yield result.record(
            Step.MINT_SUPPLY,
            f"Supply of {parsed['supply']} base units already minted",
            reference=str(result.mint),
            state=IssuanceState.SUPPLY_MINTED,
        )

    def resumable_mint(self, result: Optional[IssuanceResult] = None) -> Optional[Pubkey]:
        """Mint address a failed attempt can be finished with, or None when no mint exists."""
        result = result or self.last_result
        if result is None or result.mint is None or result.state != IssuanceState.FAILED:
            return None
        if result.failed_step != Step.CREATE_MINT:
            return result.mint
        # The CreateMint transaction may have landed even though its confirmation failed.
        if self.connection.get_account(result.mint) is None:
            return None
        return result.mint

    def _create_holding(self, result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
        step = Step.CREATE_HOLDING
        mint = result.mint
        holding = holding_address(issuer, mint)
        result.holding = holding
        existing = self.connection.get_account(holding)
        if existing is not None:
            verify_holding_account(existing, holding, mint, issuer)
            logger.info("holding_account_exists holding=%s mint=%s", holding, mint)
            yield result.record(
                step,
                f"Holding account {holding} already exists",
                reference=str(holding),
                state=IssuanceState.HOLDING_SUBMITTED,
            )
            return
        tx = self.prepare(step, issuer, [build_create_holding_ix(issuer, issuer, mint)])
        yield result.record(step, f"Creating holding account {holding}", reference=str(holding))
        try:
            signature = self._send(tx)
        except NetworkError as exc:
            if not is_already_exists(exc):
                raise
            existing = self.connection.get_account(holding)
            if existing is None:
                raise
            verify_holding_account(existing, holding, mint, issuer)
            logger.info("holding_account_created_concurrently holding=%s", holding)
            signature = str(holding)
        yield result.record(
            step,
            f"Holding account ready at {holding}",
            reference=signature,
            state=IssuanceState.HOLDING_SUBMITTED,
        )

    def _mint_supply(self, result: IssuanceResult, descriptor: TokenDescriptor, issuer: Pubkey) -> Iterator[IssuanceEntry]:
        step = Step.MINT_SUPPLY
        amount = descriptor.raw_supply
        tx = self.prepare(step, issuer, [build_mint_supply_ix(result.mint, issuer, issuer, amount)])
        yield result.record(step, f"Minting {amount} base units to {result.holding}", reference=str(result.holding))
        signature = self._send(tx)
        yield result.record(step, f"Minted {amount} base units", reference=signature, state=IssuanceState.SUPPLY_MINTED)

    def preview(self, descriptor: TokenDescriptor, issuer: Pubkey) -> Dict[str, object]:
        """Sizes and instructions an issuance would submit, using a throwaway mint address."""
        descriptor.validate()
        check_field_lengths(descriptor, self.limits)
        check_descriptor(descriptor)
        mint = Keypair().pubkey()
        layout = compute_layout(self.connection, descriptor, self.extensions, self.limits)
        holding = holding_address(issuer, mint)
        steps = {
            Step.CREATE_MINT: build_create_mint_ixs(issuer, mint, descriptor, layout, authority=issuer, limits=self.limits),
            Step.CREATE_HOLDING: [build_create_holding_ix(issuer, issuer, mint)],
            Step.MINT_SUPPLY: [build_mint_supply_ix(mint, issuer, issuer, descriptor.raw_supply)],
        }
        return {
            "mint": str(mint),
            "holding": str(holding),
            "mint_space_bytes": layout.mint_space_bytes,
            "metadata_space_bytes": layout.metadata_space_bytes,
            "rent_exempt_lamports": layout.rent_exempt_lamports,
            "raw_supply": descriptor.raw_supply,
            "steps": {step.value: [instruction_to_dict(ix) for ix in ixs] for step, ixs in steps.items()},
        }
