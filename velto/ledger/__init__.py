"""
Ledger package.

This package contains the session context, contract ABIs, read and write
paths, permit signing and revert decoding.
"""

from velto.ledger.error_decoder import decode_contract_error
from velto.ledger.permit import PermitSignature, PermitSigner, permit_deadline
from velto.ledger.reader import LedgerReader
from velto.ledger.session import SessionContext
from velto.ledger.writer import LedgerWriter, TxOutcome, parse_closed_pnl, parse_opened_position_id

__all__ = [
    "decode_contract_error",
    "PermitSignature",
    "PermitSigner",
    "permit_deadline",
    "LedgerReader",
    "SessionContext",
    "LedgerWriter",
    "TxOutcome",
    "parse_closed_pnl",
    "parse_opened_position_id",
]
