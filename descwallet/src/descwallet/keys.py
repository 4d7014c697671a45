"""
Key management commands: BIP39 mnemonics and BIP32 extended keys.
"""

from __future__ import annotations

from mnemonic import Mnemonic

from desccore.errors import KeyParseError
from desccore.keys import HDKey, format_path, is_mainnet, mnemonic_to_seed, parse_path
from desccore.models import NetworkType

WORD_COUNTS = (12, 15, 18, 21, 24)


def _master_key(network: NetworkType | str, mnemonic: str, password: str | None) -> dict:
    seed = mnemonic_to_seed(mnemonic, password or "")
    master = HDKey.from_seed(seed, network)
    return {"xprv": master.to_string(private=True), "fingerprint": master.fingerprint.hex()}


def generate_key(
    network: NetworkType | str, word_count: int = 24, password: str | None = None
) -> dict:
    """Generate a new BIP39 mnemonic and its master extended private key."""
    if word_count not in WORD_COUNTS:
        raise ValueError(f"word_count must be one of {', '.join(map(str, WORD_COUNTS))}")
    mnemonic = Mnemonic("english").generate(strength=word_count * 32 // 3)
    return {"mnemonic": mnemonic, **_master_key(network, mnemonic, password)}


def restore_key(network: NetworkType | str, mnemonic: str, password: str | None = None) -> dict:
    """Master extended private key of an existing mnemonic."""
    mnemonic = " ".join(mnemonic.split())
    if not Mnemonic("english").check(mnemonic):
        raise KeyParseError("Invalid BIP39 mnemonic")
    return _master_key(network, mnemonic, password)


def derive_key(network: NetworkType | str, xprv: str, path: str) -> dict:
    """
    Derive an account key and format it for use in descriptors.

    Returns the key with its origin and a `/*` wildcard suffix, e.g.
    "[d34db33f/84'/1'/0']tpub.../*", in public and private form.
    """
    master = HDKey.from_string(xprv)
    if not master.is_private:
        raise KeyParseError("Derivation needs an extended private key")
    if is_mainnet(master.network) != is_mainnet(network):
        raise KeyParseError(f"Key does not belong to {NetworkType(network).value}")

    steps = parse_path(path)
    child = master.derive(steps)
    origin = f"[{master.fingerprint.hex()}{format_path(steps, prefix='')}]"
    return {
        "xpub": f"{origin}{child.to_string(private=False)}/*",
        "xprv": f"{origin}{child.to_string(private=True)}/*",
    }
