"""Durable-nonce transfer dispatch across multiple landing services."""

from nonce_dispatch.connection import EndpointConnection, EndpointPool, RateGate, RawResponse
from nonce_dispatch.dispatch import DispatchCoordinator
from nonce_dispatch.keys import Keypair
from nonce_dispatch.nonce import NonceAccountHandle, NonceLedgerReader, NonceSnapshot, decode_nonce_account
from nonce_dispatch.results import BatchResult, DispatchOutcome, aggregate
from nonce_dispatch.txn_factory import SignedTransactionVariant, TransactionFactory, TransferIntent

__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "DispatchCoordinator",
    "DispatchOutcome",
    "EndpointConnection",
    "EndpointPool",
    "Keypair",
    "NonceAccountHandle",
    "NonceLedgerReader",
    "NonceSnapshot",
    "RateGate",
    "RawResponse",
    "SignedTransactionVariant",
    "TransactionFactory",
    "TransferIntent",
    "aggregate",
    "decode_nonce_account",
]
