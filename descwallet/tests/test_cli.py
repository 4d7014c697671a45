"""
Tests for the descwallet command line interface.
"""

import json

import pytest
from typer.testing import CliRunner

from desccore.keys import HDKey
from desccore.models import NetworkType
from descwallet.cli import _parse_key_map, _parse_recipient, app

runner = CliRunner()

SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
TV1_MASTER = (
    "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
)


@pytest.fixture
def invoke(tmp_path):
    def _invoke(*args: str, network: str = "regtest", input: str | None = None):
        base = ["--data-dir", str(tmp_path), "--network", network, "--log-level", "ERROR"]
        return runner.invoke(app, [*base, *args], input=input)

    return _invoke


@pytest.fixture
def wallet_descriptor() -> str:
    master = HDKey.from_seed(SEED, NetworkType.REGTEST)
    account = master.derive("m/84'/1'/0'").to_string(private=True)
    return f"wpkh([{master.fingerprint.hex()}/84'/1'/0']{account}/0/*)"


class TestKeyCommands:
    def test_generate(self, invoke):
        result = invoke("key", "generate", "--words", "12")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert len(data["mnemonic"].split()) == 12
        assert data["xprv"].startswith("tprv")
        assert len(data["fingerprint"]) == 8

    def test_generate_invalid_word_count(self, invoke):
        result = invoke("key", "generate", "--words", "13")
        assert result.exit_code == 1

    def test_restore(self, invoke):
        mnemonic = "abandon " * 11 + "about"
        result = invoke("key", "restore", "-m", mnemonic, "-p", "TREZOR", network="mainnet")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["xprv"] == (
            "xprv9s21ZrQH143K3h3fDYiay8mocZ3afhfULfb5GX8kCBdno77K4HiA15Tg23wpbeF1pLfs1c5SPmYHrEpTuuRhxMwvKDwqdKiGJS9XFKzUsAF"
        )

    def test_restore_invalid_mnemonic(self, invoke):
        result = invoke("key", "restore", "-m", "abandon " * 12)
        assert result.exit_code == 1

    def test_derive(self, invoke):
        result = invoke("key", "derive", "-x", TV1_MASTER, "-p", "m/0'", network="mainnet")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["xpub"] == (
            "[3442193e/0']xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw/*"
        )
        assert data["xprv"].startswith("[3442193e/0']xprv9uHRZZhk6KAJC1avXpDAp4MDc3sQKNxDiPvvkX8Br5ngLNv1TxvUxt4cV1rGL5hj6KCesnDYUhd7oWgT11eZG7XnxHrnYeSvkzY7d2bhkJ7")

    def test_derive_wrong_network(self, invoke):
        result = invoke("key", "derive", "-x", TV1_MASTER, "-p", "m/0'")
        assert result.exit_code == 1


class TestPolicyCommand:
    def test_compile_with_placeholders(self, invoke):
        result = invoke("policy", "or(pk(A),pk(B))")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["descriptor"].startswith("wsh(")
        assert "pk(A)" in data["descriptor"] and "pk(B)" in data["descriptor"]
        assert "#" in data["descriptor"]
        assert data["policies"]

    def test_compile_with_keys(self, invoke):
        key = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        result = invoke("policy", "pk(A)", "--key", f"A={key}", "--type", "sh-wsh")
        assert result.exit_code == 0, result.output
        descriptor = json.loads(result.stdout)["descriptor"]
        assert descriptor.startswith(f"sh(wsh(pk({key})))#")

    def test_invalid_threshold(self, invoke):
        result = invoke("policy", "thresh(3,pk(A),pk(B))")
        assert result.exit_code == 1

    def test_unknown_alias(self, invoke):
        result = invoke("policy", "pk(C)", "--key", "A=0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
        assert result.exit_code == 1

    def test_malformed_key_option(self, invoke):
        result = invoke("policy", "pk(A)", "--key", "A")
        assert result.exit_code == 1


class TestWalletCommands:
    def test_descriptor_required(self, invoke):
        result = invoke("wallet", "getnewaddress")
        assert result.exit_code == 1

    def test_getnewaddress(self, invoke, wallet_descriptor, tmp_path):
        first = invoke("wallet", "-d", wallet_descriptor, "getnewaddress")
        assert first.exit_code == 0, first.output
        assert json.loads(first.stdout)["index"] == 0
        assert json.loads(first.stdout)["address"].startswith("bcrt1q")

        second = invoke("wallet", "-d", wallet_descriptor, "getnewaddress")
        assert json.loads(second.stdout)["index"] == 1
        assert (tmp_path / "main.json").exists()

    def test_named_wallets(self, invoke, wallet_descriptor, tmp_path):
        result = invoke("wallet", "-w", "savings", "-d", wallet_descriptor, "getnewaddress")
        assert result.exit_code == 0, result.output
        assert (tmp_path / "savings.json").exists()

    def test_getbalance_needs_sync(self, invoke, wallet_descriptor):
        result = invoke("wallet", "-d", wallet_descriptor, "getbalance")
        assert result.exit_code == 1

    def test_policies_and_public_descriptor(self, invoke, wallet_descriptor):
        result = invoke("wallet", "-d", wallet_descriptor, "publicdescriptor")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert "tpub" in data["external"]
        assert data["internal"] is None

        result = invoke("wallet", "-d", wallet_descriptor, "policies")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["external"]

    def test_invalid_descriptor(self, invoke):
        result = invoke("wallet", "-d", "wpkh(nonsense)", "getnewaddress")
        assert result.exit_code == 1

    def test_broadcast_needs_one_source(self, invoke, wallet_descriptor):
        result = invoke("wallet", "-d", wallet_descriptor, "broadcast")
        assert result.exit_code == 1

    def test_extract_unfinalized(self, invoke, wallet_descriptor):
        result = invoke("wallet", "-d", wallet_descriptor, "extractpsbt", "-p", "cHNidP8BAA==")
        assert result.exit_code == 1

    def test_invalid_esplora_url(self, invoke, wallet_descriptor):
        result = invoke("wallet", "-d", wallet_descriptor, "-e", "ftp://example.com", "getnewaddress")
        assert result.exit_code != 0

    def test_repl_session(self, invoke, wallet_descriptor):
        result = invoke(
            "repl", "-d", wallet_descriptor, input="getnewaddress\ngetnewaddress\nexit\n"
        )
        assert result.exit_code == 0, result.output
        assert '"index": 1' in result.stdout
        assert "Exiting REPL" in result.stdout

    def test_repl_survives_bad_commands(self, invoke, wallet_descriptor):
        result = invoke("repl", "-d", wallet_descriptor, input="bogus\ngetnewaddress\nexit\n")
        assert result.exit_code == 0, result.output
        assert "No such command 'bogus'" in result.stderr
        assert '"index": 0' in result.stdout
        assert "Exiting REPL" in result.stdout


class TestArgumentParsing:
    def test_recipient(self):
        assert _parse_recipient("bcrt1qaddress:5000") == ("bcrt1qaddress", 5000)

    @pytest.mark.parametrize("value", ["bcrt1qaddress", ":5000", "bcrt1qaddress:1.5"])
    def test_invalid_recipient(self, value):
        with pytest.raises(ValueError):
            _parse_recipient(value)

    def test_key_map(self):
        assert _parse_key_map(["A=key1", "B=key2"]) == {"A": "key1", "B": "key2"}
