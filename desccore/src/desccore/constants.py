"""
Bitcoin protocol constants used by the transaction pipeline.

Dust handling follows Bitcoin Core's relay policy:
- DUST_RELAY_FEE_RATE: 3 sat/vB, the rate GetDustThreshold() is evaluated at
- an output is dust when its value is below the cost of creating and
  spending it at that rate
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Fee rate (sat/vB) at which Bitcoin Core evaluates dust outputs
DUST_RELAY_FEE_RATE = 3

# Change below CHANGE_DUST_MULTIPLIER x (fee to add the change output) is
# folded into the fee instead
CHANGE_DUST_MULTIPLIER = 3

WITNESS_SCALE_FACTOR = 4

# Non-witness bytes of an input without its scriptSig: outpoint + sequence
TXIN_BASE_SIZE = 32 + 4 + 4

# Version + locktime
TX_FIXED_SIZE = 4 + 4

# Segwit marker and flag, counted in witness units
SEGWIT_MARKER_WEIGHT = 2

# DER signature (up to 71 bytes) + sighash byte, plus its push length
SIGNATURE_WITNESS_SIZE = 73

# Compressed public key plus its push length
PUBKEY_WITNESS_SIZE = 34

COMPRESSED_PUBKEY_SIZE = 33

# nLockTime below this value is a block height, otherwise a UNIX timestamp
LOCKTIME_THRESHOLD = 500_000_000

# Relative lock-time in nSequence is in units of 512 seconds when set
SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31
SEQUENCE_LOCKTIME_MASK = 0x0000FFFF

SEQUENCE_FINAL = 0xFFFFFFFF
# Enables nLockTime without signalling replaceability
SEQUENCE_LOCKTIME_ENABLED = 0xFFFFFFFE
# BIP125 opt-in replace-by-fee
SEQUENCE_RBF = 0xFFFFFFFD

SIGHASH_ALL = 0x01

TX_VERSION = 2

# Maximum keys in a CHECKMULTISIG fragment
MAX_MULTISIG_KEYS = 20

# Timelock values must fit in 31 bits
MAX_TIMELOCK = 0x7FFFFFFF

BIP32_HARDENED = 0x80000000
