import base64
import logging
import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import nonce_dispatch.constants as C
from nonce_dispatch.errors import InvalidAddressError
from nonce_dispatch.keys import Keypair, decode_address, encode_address
from nonce_dispatch.nonce import NonceAccountHandle

log = logging.getLogger("nonce_dispatch.txn")


@dataclass(frozen=True, slots=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True, slots=True)
class Instruction:
    program_id: str
    accounts: tuple[AccountMeta, ...]
    data: bytes


@dataclass(frozen=True)
class TransferIntent:
    payer: Keypair
    main_recipient: str
    main_amount: int  # lamports
    fee_recipients: Mapping[str, str] = field(default_factory=dict)  # endpoint name -> fee recipient
    fee_amount: int = 0  # lamports

    def fee_recipient(self, endpoint: str) -> str:
        try:
            return self.fee_recipients[endpoint]
        except KeyError:
            raise InvalidAddressError(f"no fee recipient configured for endpoint {endpoint!r}") from None


@dataclass(frozen=True, slots=True)
class SignedTransactionVariant:
    endpoint: str
    instructions: tuple[Instruction, ...]
    replay_value: bytes
    signature: bytes
    wire_bytes: bytes

    @property
    def signature_b58(self) -> str:
        return encode_address(self.signature)

    def encoded(self) -> str:
        return base64.b64encode(self.wire_bytes).decode("ascii")

    def __str__(self):
        return f"{self.endpoint} -- {self.signature_b58}"


def encode_length(n: int) -> bytes:
    """Compact-u16 length prefix."""
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _lamports(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 <= amount <= C.MAX_LAMPORTS:
        raise ValueError(f"amount must be an integer number of lamports in u64 range, got {amount!r}")
    return amount


# =============================================================================
# Instruction builders - System program only
# =============================================================================

def advance_nonce(nonce_account: str, authority: str) -> Instruction:
    return Instruction(
        program_id=C.SYSTEM_PROGRAM,
        accounts=(
            AccountMeta(nonce_account, is_signer=False, is_writable=True),
            AccountMeta(C.SYSVAR_RECENT_BLOCKHASHES, is_signer=False, is_writable=False),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ),
        data=struct.pack("<I", C.IX_ADVANCE_NONCE),
    )


def transfer(source: str, destination: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=C.SYSTEM_PROGRAM,
        accounts=(
            AccountMeta(source, is_signer=True, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
        ),
        data=struct.pack("<IQ", C.IX_TRANSFER, _lamports(lamports)),
    )


def compile_message(payer: str, instructions: Sequence[Instruction], recent_blockhash: bytes) -> bytes:
    """Serialize a legacy message.

    Account keys: payer first, then writable signers, readonly signers,
    writable non-signers, readonly non-signers, each by first appearance.
    """
    signer: dict[str, bool] = {payer: True}
    writable: dict[str, bool] = {payer: True}
    for ix in instructions:
        for meta in ix.accounts:
            signer[meta.pubkey] = signer.get(meta.pubkey, False) or meta.is_signer
            writable[meta.pubkey] = writable.get(meta.pubkey, False) or meta.is_writable
        signer.setdefault(ix.program_id, False)
        writable.setdefault(ix.program_id, False)

    keys = sorted(signer, key=lambda k: (k != payer, not signer[k], not writable[k]))
    index = {k: i for i, k in enumerate(keys)}

    num_signers = sum(1 for k in keys if signer[k])
    readonly_signed = sum(1 for k in keys if signer[k] and not writable[k])
    readonly_unsigned = sum(1 for k in keys if not signer[k] and not writable[k])

    out = bytearray([num_signers, readonly_signed, readonly_unsigned])
    out += encode_length(len(keys))
    for k in keys:
        out += decode_address(k)
    out += recent_blockhash
    out += encode_length(len(instructions))
    for ix in instructions:
        out.append(index[ix.program_id])
        out += encode_length(len(ix.accounts))
        out += bytes(index[m.pubkey] for m in ix.accounts)
        out += encode_length(len(ix.data))
        out += ix.data
    return bytes(out)


class TransactionFactory:
    """Builds one signed variant per endpoint, all bound to the same replay value.

    Building is pure: the same (intent, replay_value, endpoint) always yields
    byte-identical output, since ed25519 signing is deterministic.
    """

    def __init__(self, nonce_account: NonceAccountHandle) -> None:
        self.nonce_account = nonce_account

    def instructions(self, intent: TransferIntent, endpoint: str) -> tuple[Instruction, ...]:
        payer = intent.payer.address
        # Order is fixed: the advance must come first.
        return (
            advance_nonce(self.nonce_account.address, self.nonce_account.authority),
            transfer(payer, intent.main_recipient, intent.main_amount),
            transfer(payer, intent.fee_recipient(endpoint), intent.fee_amount),
        )

    def validate(self, intent: TransferIntent, endpoints: Sequence[str]) -> None:
        """Everything ``build`` checks that does not depend on the nonce read."""
        decode_address(intent.main_recipient)
        for endpoint in endpoints:
            decode_address(intent.fee_recipient(endpoint))
        if self.nonce_account.authority != intent.payer.address:
            raise InvalidAddressError(
                f"nonce authority {self.nonce_account.authority} must be the payer {intent.payer.address}"
            )
        _lamports(intent.main_amount)
        _lamports(intent.fee_amount)

    def build(self, intent: TransferIntent, replay_value: bytes, endpoint: str) -> SignedTransactionVariant:
        if len(replay_value) != C.REPLAY_VALUE_LEN:
            raise ValueError(f"replay value must be {C.REPLAY_VALUE_LEN} bytes, got {len(replay_value)}")
        self.validate(intent, [endpoint])

        ixs = self.instructions(intent, endpoint)
        message = compile_message(intent.payer.address, ixs, bytes(replay_value))
        signature = intent.payer.sign(message)
        wire = encode_length(1) + signature + message

        variant = SignedTransactionVariant(
            endpoint=endpoint,
            instructions=ixs,
            replay_value=bytes(replay_value),
            signature=signature,
            wire_bytes=wire,
        )
        log.debug("Built %s (%d bytes)", variant, len(wire))
        return variant
