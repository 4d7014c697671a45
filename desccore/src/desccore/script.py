"""
Bitcoin Script building blocks: opcodes, data pushes and hashing helpers.
"""

from __future__ import annotations

import hashlib

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60
OP_IF = 0x63
OP_NOTIF = 0x64
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_VERIFY = 0x69
OP_TOALTSTACK = 0x6B
OP_FROMALTSTACK = 0x6C
OP_IFDUP = 0x73
OP_DUP = 0x76
OP_SWAP = 0x7C
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_0NOTEQUAL = 0x92
OP_ADD = 0x93
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD
OP_CHECKMULTISIG = 0xAE
OP_CHECKMULTISIGVERIFY = 0xAF
OP_CHECKLOCKTIMEVERIFY = 0xB1
OP_CHECKSEQUENCEVERIFY = 0xB2

# Opcodes with a VERIFY twin, used by the v: wrapper
VERIFY_VARIANTS = {
    OP_EQUAL: OP_EQUALVERIFY,
    OP_CHECKSIG: OP_CHECKSIGVERIFY,
    OP_CHECKMULTISIG: OP_CHECKMULTISIGVERIFY,
}


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def push_data(data: bytes) -> bytes:
    """Minimal push of arbitrary bytes."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    raise ValueError(f"Push of {length} bytes not supported")


def script_number(n: int) -> bytes:
    """Minimal CScriptNum encoding (little-endian, sign bit in the last byte)."""
    if n == 0:
        return b""
    negative = n < 0
    value = abs(n)
    result = bytearray()
    while value:
        result.append(value & 0xFF)
        value >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def push_int(n: int) -> bytes:
    """Push an integer with the smallest opcode that encodes it."""
    if n == 0:
        return bytes([OP_0])
    if n == -1:
        return bytes([OP_1NEGATE])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])
    return push_data(script_number(n))


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    """OP_HASH160 <20-byte-hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + script_hash + bytes([OP_EQUAL])


def p2wpkh_script(pubkey: bytes) -> bytes:
    """OP_0 <20-byte-pubkeyhash>"""
    return bytes([OP_0, 0x14]) + hash160(pubkey)


def p2wsh_script(witness_script: bytes) -> bytes:
    """OP_0 <32-byte-scripthash>"""
    return bytes([OP_0, 0x20]) + sha256(witness_script)
