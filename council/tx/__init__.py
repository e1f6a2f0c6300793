"""
Transaction model, multisig scripts and spend building.
"""

from .model import SIGHASH_ALL, SignatureObject, Transaction, TxInput, TxOutput
from .script import multisig_redeem_script, parse_multisig_script, script_address

__all__ = [
    "SIGHASH_ALL",
    "SignatureObject",
    "Transaction",
    "TxInput",
    "TxOutput",
    "multisig_redeem_script",
    "parse_multisig_script",
    "script_address",
]
