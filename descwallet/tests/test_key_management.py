"""
Tests for mnemonic generation, restore and account key derivation.
"""

import pytest
from mnemonic import Mnemonic

from desccore.descriptor import Descriptor
from desccore.errors import KeyParseError
from desccore.models import NetworkType
from descwallet.keys import derive_key, generate_key, restore_key


class TestGenerate:
    @pytest.mark.parametrize("words", [12, 15, 18, 21, 24])
    def test_word_counts(self, words):
        result = generate_key(NetworkType.TESTNET, words)
        assert len(result["mnemonic"].split()) == words
        assert Mnemonic("english").check(result["mnemonic"])

    def test_restore_matches_generate(self):
        generated = generate_key(NetworkType.REGTEST, 12, password="secret")
        restored = restore_key(NetworkType.REGTEST, generated["mnemonic"], password="secret")
        assert restored["xprv"] == generated["xprv"]
        assert restored["fingerprint"] == generated["fingerprint"]

    def test_password_changes_key(self):
        generated = generate_key(NetworkType.TESTNET, 12)
        other = restore_key(NetworkType.TESTNET, generated["mnemonic"], password="other")
        assert other["xprv"] != generated["xprv"]

    def test_invalid_word_count(self):
        with pytest.raises(ValueError, match="word_count"):
            generate_key(NetworkType.TESTNET, 11)


class TestRestore:
    def test_whitespace_is_normalized(self):
        mnemonic = "abandon " * 11 + "about"
        assert restore_key(NetworkType.MAINNET, "  " + mnemonic.replace(" ", "   ")) == restore_key(
            NetworkType.MAINNET, mnemonic
        )

    def test_invalid_checksum(self):
        with pytest.raises(KeyParseError, match="mnemonic"):
            restore_key(NetworkType.MAINNET, "abandon " * 11 + "abandon")


class TestDerive:
    @pytest.fixture
    def master(self):
        return generate_key(NetworkType.TESTNET, 12)

    def test_account_key_is_descriptor_ready(self, master):
        result = derive_key(NetworkType.TESTNET, master["xprv"], "m/84'/1'/0'")

        assert result["xpub"].startswith(f"[{master['fingerprint']}/84'/1'/0']tpub")
        assert result["xprv"].startswith(f"[{master['fingerprint']}/84'/1'/0']tprv")
        assert result["xpub"].endswith("/*")

        private = Descriptor.parse(f"wpkh({result['xprv']})", NetworkType.TESTNET)
        public = Descriptor.parse(f"wpkh({result['xpub']})", NetworkType.TESTNET)
        assert private.script_pubkey(5) == public.script_pubkey(5)

    def test_public_key_cannot_derive(self, master):
        xpub = derive_key(NetworkType.TESTNET, master["xprv"], "m/84'/1'/0'")["xpub"]
        bare = xpub.split("]", 1)[1][:-2]
        with pytest.raises(KeyParseError, match="private"):
            derive_key(NetworkType.TESTNET, bare, "m/0")

    def test_network_mismatch(self, master):
        with pytest.raises(KeyParseError):
            derive_key(NetworkType.MAINNET, master["xprv"], "m/84'/0'/0'")

    def test_invalid_path(self, master):
        with pytest.raises(KeyParseError):
            derive_key(NetworkType.TESTNET, master["xprv"], "m/84'/x/0'")
