"""
BIP32 HD keys and output descriptor key expressions.

Key expressions follow the descriptor syntax:

    [d34db33f/84'/1'/0']tpubD6NzVbkrYhZ4.../0/*
    02a1633cafcc01ebfb6d78e39f687a1f0995c62fc95f51ead10a02ee0be551b5dc
    cVt4o7BGAig1UXywgGSmARhxMdzP5qvQsxKkSsc1XEkw3tDTQFpy
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass

import base58
from coincurve import PrivateKey, PublicKey

from desccore.constants import BIP32_HARDENED, COMPRESSED_PUBKEY_SIZE
from desccore.errors import KeyParseError
from desccore.models import NetworkType
from desccore.script import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

XPRV_MAINNET = bytes.fromhex("0488ade4")
XPUB_MAINNET = bytes.fromhex("0488b21e")
XPRV_TESTNET = bytes.fromhex("04358394")
XPUB_TESTNET = bytes.fromhex("043587cf")

WIF_MAINNET = 0x80
WIF_TESTNET = 0xEF

_ORIGIN_RE = re.compile(r"^\[([0-9a-fA-F]{8})((?:/[0-9]+['hH]?)*)\](.*)$")


def is_mainnet(network: NetworkType | str) -> bool:
    return NetworkType(network) == NetworkType.MAINNET


def parse_path(path: str) -> tuple[int, ...]:
    """
    Parse a derivation path ("m/84'/1'/0'", "84h/1h/0h" or "/0/1").

    ' or h indicates hardened derivation.
    """
    parts = path.strip().split("/")
    if parts and parts[0] in ("m", ""):
        parts = parts[1:]

    result = []
    for part in parts:
        if not part:
            raise KeyParseError(f"Empty step in derivation path: {path}")
        hardened = part[-1] in "'hH"
        index_str = part[:-1] if hardened else part
        if not index_str.isdigit():
            raise KeyParseError(f"Invalid derivation step '{part}' in {path}")
        index = int(index_str)
        if index >= BIP32_HARDENED:
            raise KeyParseError(f"Derivation index out of range: {part}")
        result.append(index + BIP32_HARDENED if hardened else index)
    return tuple(result)


def format_path(path: tuple[int, ...] | list[int], prefix: str = "m") -> str:
    steps = [f"{i - BIP32_HARDENED}'" if i >= BIP32_HARDENED else str(i) for i in path]
    return "/".join([prefix, *steps]) if prefix else "".join(f"/{s}" for s in steps)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation for both private (xprv) and public (xpub) keys.
    """

    def __init__(
        self,
        public_key: PublicKey,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
        network: NetworkType = NetworkType.MAINNET,
    ):
        self._private_key = private_key
        self._public_key = public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.network = NetworkType(network)

    @property
    def private_key(self) -> PrivateKey | None:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes, network: NetworkType | str = NetworkType.MAINNET) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)
        return cls(
            private_key.public_key,
            chain_code,
            private_key=private_key,
            network=NetworkType(network),
        )

    @classmethod
    def from_string(cls, encoded: str) -> HDKey:
        """Parse a base58check xprv/xpub/tprv/tpub."""
        try:
            data = base58.b58decode_check(encoded)
        except ValueError as e:
            raise KeyParseError(f"Invalid extended key encoding: {e}") from e
        if len(data) != 78:
            raise KeyParseError(f"Invalid extended key length: {len(data)}")

        version = data[:4]
        if version not in (XPRV_MAINNET, XPUB_MAINNET, XPRV_TESTNET, XPUB_TESTNET):
            raise KeyParseError(f"Unknown extended key version: {version.hex()}")

        network = (
            NetworkType.MAINNET if version in (XPRV_MAINNET, XPUB_MAINNET) else NetworkType.TESTNET
        )
        depth = data[4]
        parent_fingerprint = data[5:9]
        child_number = int.from_bytes(data[9:13], "big")
        chain_code = data[13:45]
        key_data = data[45:78]

        try:
            if version in (XPRV_MAINNET, XPRV_TESTNET):
                if key_data[0] != 0x00:
                    raise KeyParseError("Invalid private key padding in extended key")
                private_key = PrivateKey(key_data[1:])
                return cls(
                    private_key.public_key,
                    chain_code,
                    private_key=private_key,
                    depth=depth,
                    parent_fingerprint=parent_fingerprint,
                    child_number=child_number,
                    network=network,
                )
            public_key = PublicKey(key_data)
        except ValueError as e:
            raise KeyParseError(f"Invalid key material in extended key: {e}") from e
        return cls(
            public_key,
            chain_code,
            depth=depth,
            parent_fingerprint=parent_fingerprint,
            child_number=child_number,
            network=network,
        )

    def to_string(self, private: bool = True) -> str:
        """Serialize as xprv/xpub (mainnet) or tprv/tpub (any test network)."""
        mainnet = is_mainnet(self.network)
        if private and self._private_key is not None:
            version = XPRV_MAINNET if mainnet else XPRV_TESTNET
            key_data = b"\x00" + self._private_key.secret
        else:
            version = XPUB_MAINNET if mainnet else XPUB_TESTNET
            key_data = self.get_public_key_bytes()
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(payload).decode()

    def neuter(self) -> HDKey:
        """Return the public-only version of this key."""
        return HDKey(
            self._public_key,
            self.chain_code,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            network=self.network,
        )

    def derive(self, path: str | tuple[int, ...] | list[int]) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        or a sequence of child indexes.
        """
        steps = parse_path(path) if isinstance(path, str) else tuple(path)
        key = self
        for index in steps:
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= BIP32_HARDENED

        if hardened:
            if self._private_key is None:
                raise KeyParseError("Cannot derive hardened child from a public key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise KeyParseError("Invalid child key")

        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + int.from_bytes(key_offset, "big")) % SECP256K1_N
            if child_key_int == 0:
                raise KeyParseError("Invalid child key")
            child_private = PrivateKey(child_key_int.to_bytes(32, "big"))
            child_public = child_private.public_key
        else:
            child_private = None
            child_public = self._public_key.add(key_offset)

        return HDKey(
            child_public,
            child_chain,
            private_key=child_private,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            network=self.network,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        if self._private_key is None:
            raise KeyParseError("Public extended key has no private key")
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)


def decode_wif(wif: str) -> tuple[PrivateKey, NetworkType, bool]:
    """Decode a WIF private key into (key, network, compressed)."""
    try:
        data = base58.b58decode_check(wif)
    except ValueError as e:
        raise KeyParseError(f"Invalid WIF encoding: {e}") from e

    if data[0] not in (WIF_MAINNET, WIF_TESTNET):
        raise KeyParseError(f"Unknown WIF version: {data[0]:#x}")
    if len(data) == 34 and data[33] == 0x01:
        compressed = True
    elif len(data) == 33:
        compressed = False
    else:
        raise KeyParseError("Invalid WIF payload length")

    network = NetworkType.MAINNET if data[0] == WIF_MAINNET else NetworkType.TESTNET
    try:
        return PrivateKey(data[1:33]), network, compressed
    except ValueError as e:
        raise KeyParseError(f"Invalid WIF private key: {e}") from e


def encode_wif(private_key: PrivateKey, network: NetworkType | str) -> str:
    version = WIF_MAINNET if is_mainnet(network) else WIF_TESTNET
    return base58.b58encode_check(bytes([version]) + private_key.secret + b"\x01").decode()


@dataclass(frozen=True)
class KeyOrigin:
    fingerprint: bytes
    path: tuple[int, ...]

    def __str__(self) -> str:
        return f"[{self.fingerprint.hex()}{format_path(self.path, prefix='')}]"


class DescriptorKey:
    """
    A key expression inside an output descriptor.

    Exactly one of `xkey`, `private_key` or `pubkey` describes the key
    material; `path` and `wildcard` only apply to extended keys.
    """

    def __init__(
        self,
        *,
        origin: KeyOrigin | None = None,
        xkey: HDKey | None = None,
        private_key: PrivateKey | None = None,
        pubkey: bytes | None = None,
        path: tuple[int, ...] = (),
        wildcard: bool = False,
        hardened_wildcard: bool = False,
        network: NetworkType = NetworkType.MAINNET,
    ):
        self.origin = origin
        self.xkey = xkey
        self.private_key = private_key
        self.path = path
        self.wildcard = wildcard
        self.hardened_wildcard = hardened_wildcard
        self.network = NetworkType(network)
        if private_key is not None:
            pubkey = private_key.public_key.format(compressed=True)
        self._pubkey = pubkey
        self._derived: dict[int, HDKey] = {}

    @classmethod
    def parse(cls, text: str, network: NetworkType | str | None = None) -> DescriptorKey:
        """
        Parse a descriptor key expression.

        Args:
            text: The key expression
            network: When given, extended keys and WIF keys must match it

        Raises:
            KeyParseError: On malformed keys or network mismatch
        """
        text = text.strip()
        expected = NetworkType(network) if network is not None else None
        origin = None

        match = _ORIGIN_RE.match(text)
        if match:
            origin_path = parse_path(match.group(2)) if match.group(2) else ()
            origin = KeyOrigin(bytes.fromhex(match.group(1).lower()), origin_path)
            text = match.group(3)
        elif text.startswith("["):
            raise KeyParseError(f"Malformed key origin in '{text}'")

        if not text:
            raise KeyParseError("Empty key expression")

        # Single hex public key
        if all(c in "0123456789abcdefABCDEF" for c in text):
            raw = bytes.fromhex(text) if len(text) % 2 == 0 else b""
            if len(raw) == 65:
                raise KeyParseError("Uncompressed keys are not allowed in segwit descriptors")
            if len(raw) != COMPRESSED_PUBKEY_SIZE or raw[0] not in (0x02, 0x03):
                raise KeyParseError(f"Invalid public key: {text}")
            try:
                PublicKey(raw)
            except ValueError as e:
                raise KeyParseError(f"Invalid public key: {text}") from e
            return cls(origin=origin, pubkey=raw, network=expected or NetworkType.MAINNET)

        parts = text.split("/")
        head, steps = parts[0], parts[1:]

        if head[:4] in ("xprv", "xpub", "tprv", "tpub"):
            xkey = HDKey.from_string(head)
            wildcard = False
            hardened_wildcard = False
            if steps and steps[-1] in ("*", "*'", "*h", "*H"):
                wildcard = True
                hardened_wildcard = steps[-1] != "*"
                steps = steps[:-1]
            if any("*" in s for s in steps):
                raise KeyParseError(f"Wildcard must be the last derivation step: {text}")
            path = parse_path("/" + "/".join(steps)) if steps else ()
            if (hardened_wildcard or any(i >= BIP32_HARDENED for i in path)) and not xkey.is_private:
                raise KeyParseError("Hardened derivation requires a private extended key")
            if expected is not None:
                if is_mainnet(expected) != is_mainnet(xkey.network):
                    raise KeyParseError(f"Extended key {head[:4]}... is not valid on {expected.value}")
                xkey.network = expected
            return cls(
                origin=origin,
                xkey=xkey,
                path=path,
                wildcard=wildcard,
                hardened_wildcard=hardened_wildcard,
                network=xkey.network,
            )

        if steps:
            raise KeyParseError(f"Derivation steps are only allowed on extended keys: {text}")

        private_key, wif_network, compressed = decode_wif(head)
        if not compressed:
            raise KeyParseError("Uncompressed keys are not allowed in segwit descriptors")
        if expected is not None and is_mainnet(expected) != is_mainnet(wif_network):
            raise KeyParseError(f"WIF key is not valid on {expected.value}")
        return cls(origin=origin, private_key=private_key, network=expected or wif_network)

    @property
    def is_wildcard(self) -> bool:
        return self.wildcard

    @property
    def is_private(self) -> bool:
        if self.xkey is not None:
            return self.xkey.is_private
        return self.private_key is not None

    def _child_path(self, index: int) -> tuple[int, ...]:
        if not self.wildcard:
            return self.path
        if self.hardened_wildcard:
            index += BIP32_HARDENED
        return self.path + (index,)

    def _derive(self, index: int) -> HDKey:
        assert self.xkey is not None
        if index not in self._derived:
            self._derived[index] = self.xkey.derive(self._child_path(index))
        return self._derived[index]

    def pubkey_at(self, index: int = 0) -> bytes:
        """Compressed public key for the given wildcard index."""
        if self.xkey is not None:
            return self._derive(index).get_public_key_bytes()
        assert self._pubkey is not None
        return self._pubkey

    def private_key_at(self, index: int = 0) -> PrivateKey | None:
        if self.xkey is not None:
            if not self.xkey.is_private:
                return None
            return self._derive(index).private_key
        return self.private_key

    def derivation_at(self, index: int = 0) -> tuple[bytes, tuple[int, ...]]:
        """(master fingerprint, full path) as recorded in PSBT BIP32 derivation fields."""
        if self.xkey is not None:
            child = self._child_path(index)
            if self.origin is not None:
                return self.origin.fingerprint, self.origin.path + child
            return self.xkey.fingerprint, child
        if self.origin is not None:
            return self.origin.fingerprint, self.origin.path
        return hash160(self.pubkey_at())[:4], ()

    def private_key_for(
        self, pubkey: bytes, fingerprint: bytes, path: tuple[int, ...]
    ) -> PrivateKey | None:
        """
        Find the private key for a BIP32 derivation recorded in a PSBT.

        Returns None when this key does not control `pubkey`.
        """
        candidate: PrivateKey | None = None
        if self.xkey is not None and self.xkey.is_private:
            if self.origin is not None:
                prefix = self.origin.path
                if fingerprint == self.origin.fingerprint and path[: len(prefix)] == prefix:
                    candidate = self.xkey.derive(path[len(prefix) :]).private_key
            elif fingerprint == self.xkey.fingerprint:
                candidate = self.xkey.derive(path).private_key
        elif self.private_key is not None:
            candidate = self.private_key

        if candidate is None or candidate.public_key.format(compressed=True) != pubkey:
            return None
        return candidate

    def to_string(self, private: bool = True) -> str:
        if not private and self.is_private:
            return self.as_public().to_string()
        origin = str(self.origin) if self.origin is not None else ""
        if self.xkey is not None:
            body = self.xkey.to_string(private=private)
            body += format_path(self.path, prefix="")
            if self.wildcard:
                body += "/*'" if self.hardened_wildcard else "/*"
        elif self.private_key is not None and private:
            body = encode_wif(self.private_key, self.network)
        else:
            assert self._pubkey is not None
            body = self._pubkey.hex()
        return origin + body

    def as_public(self) -> DescriptorKey:
        """
        Public version of this key expression (xprv -> xpub, WIF -> hex).

        Hardened steps after an xprv are derived away and moved into the key
        origin, so `[fp]xprv/84'/1'/0'/0/*` becomes `[fp/84'/1'/0']xpub.../0/*`.
        """
        if self.hardened_wildcard:
            raise KeyParseError("Cannot export a hardened wildcard as a public key")
        if self.xkey is None:
            return DescriptorKey(origin=self.origin, pubkey=self.pubkey_at(), network=self.network)

        hardened = [i for i, step in enumerate(self.path) if step >= BIP32_HARDENED]
        split = hardened[-1] + 1 if hardened else 0
        xkey = self.xkey.derive(self.path[:split]) if split else self.xkey
        origin = self.origin
        if split:
            base = origin or KeyOrigin(self.xkey.fingerprint, ())
            origin = KeyOrigin(base.fingerprint, base.path + self.path[:split])
        return DescriptorKey(
            origin=origin,
            xkey=xkey.neuter(),
            path=self.path[split:],
            wildcard=self.wildcard,
            network=self.network,
        )

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"DescriptorKey({self.to_string(private=False)})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DescriptorKey):
            return NotImplemented
        return self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())


class AliasKey:
    """
    An abstract key named only by an identifier (`pk(A)`).

    Used when compiling a policy without concrete keys; it renders back to the
    identifier but cannot be derived into script bytes.
    """

    is_wildcard = False
    is_private = False

    def __init__(self, name: str):
        self.name = name

    def pubkey_at(self, index: int = 0) -> bytes:
        raise KeyParseError(f"Key '{self.name}' is an abstract placeholder")

    def to_string(self, private: bool = True) -> str:
        return self.name

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"AliasKey({self.name})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AliasKey):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(("alias", self.name))


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a BIP39 mnemonic to its 64-byte seed."""
    from mnemonic import Mnemonic

    return Mnemonic.to_seed(mnemonic, passphrase=passphrase)
