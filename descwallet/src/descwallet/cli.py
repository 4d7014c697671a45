"""
Descriptor wallet CLI - compile policies, manage keys, build and sign transactions.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable

import typer
from loguru import logger

from desccore.assembler import Ordering
from desccore.compiler import AliasKeySource, KeySource, compile_policy
from desccore.descriptor import Descriptor, ScriptType
from desccore.errors import DescCoreError
from desccore.models import NetworkType, OutPoint, SelectionAlgorithm
from descwallet.backends import BackendError, BlockchainBackend, ElectrumBackend, EsploraBackend
from descwallet.config import Settings, WalletOptions, get_settings
from descwallet.errors import WalletError
from descwallet.keys import derive_key, generate_key, restore_key
from descwallet.repl import run_repl
from descwallet.wallet.service import WalletService
from descwallet.wallet.store import WalletStore

MAINNET_WARNING = (
    "This is experimental software and not currently recommended for use on "
    "Bitcoin mainnet, proceed with caution."
)

# Errors reported to the user instead of crashing the CLI
HANDLED_ERRORS = (DescCoreError, WalletError, BackendError, ValueError)

app = typer.Typer(
    name="descwallet",
    help="Descriptor-based Bitcoin wallet",
    add_completion=False,
)
wallet_app = typer.Typer(help="Wallet operations (needs --descriptor)")
key_app = typer.Typer(help="BIP39 mnemonic and BIP32 key operations")
app.add_typer(wallet_app, name="wallet")
app.add_typer(key_app, name="key")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def print_json(result: Any) -> None:
    typer.echo(json.dumps(result, indent=2))


@dataclass
class CliState:
    """Settings plus the wallet opened for the running command (or REPL session)."""

    settings: Settings
    wallet_args: dict[str, Any] = field(default_factory=dict)
    runner: asyncio.Runner | None = None
    service: WalletService | None = None

    @property
    def network(self) -> NetworkType:
        return NetworkType(self.settings.network)

    def wallet_options(self) -> WalletOptions:
        s = self.settings
        defaults = {
            "wallet": s.wallet,
            "descriptor": s.descriptor,
            "change_descriptor": s.change_descriptor,
            "gap_limit": s.gap_limit,
            "electrum_url": s.electrum_url,
            "electrum_retries": s.electrum_retries,
            "electrum_timeout": s.electrum_timeout,
            "esplora_url": s.esplora_url,
            "esplora_concurrency": s.esplora_concurrency,
        }
        overrides = {k: v for k, v in self.wallet_args.items() if v is not None}
        options = {**defaults, **overrides}
        if not options["descriptor"]:
            raise WalletError("A wallet descriptor is required (--descriptor)")
        return WalletOptions(**options)

    def create_backend(self, options: WalletOptions) -> BlockchainBackend:
        if options.esplora_url:
            return EsploraBackend(
                options.esplora_url,
                concurrency=options.esplora_concurrency,
                timeout=options.electrum_timeout,
            )
        return ElectrumBackend(
            options.electrum_url,
            retries=options.electrum_retries,
            timeout=options.electrum_timeout,
        )

    def open_wallet(self) -> WalletService:
        options = self.wallet_options()
        descriptor = Descriptor.parse(options.descriptor, self.network)
        change_descriptor = (
            Descriptor.parse(options.change_descriptor, self.network)
            if options.change_descriptor
            else None
        )
        return WalletService(
            descriptor,
            WalletStore(self.settings.data_dir, options.wallet),
            network=self.network,
            change_descriptor=change_descriptor,
            backend=self.create_backend(options),
            gap_limit=options.gap_limit,
        )

    async def _call(self, action: Callable[[WalletService], Awaitable[Any]], keep_open: bool) -> Any:
        if self.service is None:
            self.service = self.open_wallet()
        try:
            return await action(self.service)
        finally:
            if not keep_open:
                await self._close_service()

    async def _close_service(self) -> None:
        service, self.service = self.service, None
        if service is not None:
            await service.close()

    def run(self, action: Callable[[WalletService], Awaitable[Any]]) -> Any:
        if self.runner is not None:
            return self.runner.run(self._call(action, keep_open=True))
        return asyncio.run(self._call(action, keep_open=False))

    def close(self) -> None:
        if self.service is None:
            return
        if self.runner is not None:
            self.runner.run(self._close_service())
        else:
            asyncio.run(self._close_service())


def _state(ctx: typer.Context) -> CliState:
    state = ctx.find_object(CliState)
    if state is None:
        state = CliState(get_settings())
        ctx.obj = state
    return state


def _run(ctx: typer.Context, action: Callable[[WalletService], Awaitable[Any]]) -> None:
    """Run a wallet action and print its result, exiting 1 on wallet/core errors."""
    try:
        result = _state(ctx).run(action)
    except HANDLED_ERRORS as e:
        logger.error(str(e))
        raise typer.Exit(1)
    print_json(result)


def _emit(fn: Callable[[], Any]) -> None:
    try:
        result = fn()
    except HANDLED_ERRORS as e:
        logger.error(str(e))
        raise typer.Exit(1)
    print_json(result)


def _parse_outpoints(values: list[str] | None) -> list[OutPoint]:
    return [OutPoint.parse(v) for v in values or []]


def _parse_recipient(value: str) -> tuple[str, int]:
    address, sep, amount = value.rpartition(":")
    if not sep or not address or not amount.isdigit():
        raise ValueError(f"Recipient must be ADDRESS:AMOUNT, got '{value}'")
    return address, int(amount)


@app.callback()
def main(
    ctx: typer.Context,
    network: Annotated[
        NetworkType | None, typer.Option("--network", "-n", help="Bitcoin network")
    ] = None,
    data_dir: Annotated[
        Path | None, typer.Option("--data-dir", help="Directory holding wallet state files")
    ] = None,
    log_level: Annotated[str | None, typer.Option("--log-level", "-l", help="Log level")] = None,
) -> None:
    """Descriptor-based Bitcoin wallet."""
    settings = get_settings()
    if network is not None:
        settings.network = network.value
    if data_dir is not None:
        settings.data_dir = data_dir
    if log_level is not None:
        settings.log_level = log_level

    setup_logging(settings.log_level)
    logger.debug(f"network: {settings.network}")
    if settings.network == NetworkType.MAINNET.value:
        logger.warning(MAINNET_WARNING)
    ctx.obj = CliState(settings)


# Options shared by the wallet group and the REPL
WalletName = Annotated[str | None, typer.Option("--wallet", "-w", help="Wallet name")]
DescriptorOpt = Annotated[
    str | None, typer.Option("--descriptor", "-d", help="External (receive) descriptor")
]
ChangeDescriptorOpt = Annotated[
    str | None, typer.Option("--change-descriptor", "-c", help="Internal (change) descriptor")
]
ServerOpt = Annotated[
    str | None, typer.Option("--server", "-s", help="Electrum server (ssl://host:port or tcp://host:port)")
]
RetriesOpt = Annotated[int | None, typer.Option("--retries", help="Electrum connection attempts")]
TimeoutOpt = Annotated[float | None, typer.Option("--timeout", "-t", help="Request timeout in seconds")]
EsploraOpt = Annotated[
    str | None, typer.Option("--esplora", "-e", help="Esplora base URL (used instead of Electrum)")
]
EsploraConcurrencyOpt = Annotated[
    int | None, typer.Option("--esplora-concurrency", help="Parallel Esplora requests")
]
GapLimitOpt = Annotated[int | None, typer.Option("--gap-limit", help="Unused addresses scanned per keychain")]


def _wallet_args(**kwargs: Any) -> dict[str, Any]:
    return {
        "wallet": kwargs["wallet"],
        "descriptor": kwargs["descriptor"],
        "change_descriptor": kwargs["change_descriptor"],
        "electrum_url": kwargs["server"],
        "electrum_retries": kwargs["retries"],
        "electrum_timeout": kwargs["timeout"],
        "esplora_url": kwargs["esplora"],
        "esplora_concurrency": kwargs["esplora_concurrency"],
        "gap_limit": kwargs["gap_limit"],
    }


@wallet_app.callback()
def wallet_main(
    ctx: typer.Context,
    wallet: WalletName = None,
    descriptor: DescriptorOpt = None,
    change_descriptor: ChangeDescriptorOpt = None,
    server: ServerOpt = None,
    retries: RetriesOpt = None,
    timeout: TimeoutOpt = None,
    esplora: EsploraOpt = None,
    esplora_concurrency: EsploraConcurrencyOpt = None,
    gap_limit: GapLimitOpt = None,
) -> None:
    """Wallet operations."""
    args = _wallet_args(**locals())
    _state(ctx).wallet_args = args


@wallet_app.command()
def getnewaddress(ctx: typer.Context) -> None:
    """Reveal the next receive address."""

    async def action(service: WalletService) -> Any:
        return await service.get_new_address()

    _run(ctx, action)


@wallet_app.command()
def sync(ctx: typer.Context) -> None:
    """Scan the chain backend and refresh the UTXO snapshot."""

    async def action(service: WalletService) -> Any:
        snapshot = await service.sync()
        return {
            "tip_height": snapshot.tip_height,
            "utxos": len(snapshot.utxos),
            "balance": snapshot.balance,
        }

    _run(ctx, action)


@wallet_app.command()
def listunspent(ctx: typer.Context) -> None:
    """List the UTXOs of the last snapshot."""

    async def action(service: WalletService) -> Any:
        return await service.list_unspent()

    _run(ctx, action)


@wallet_app.command()
def getbalance(ctx: typer.Context) -> None:
    """Balance of the last snapshot in satoshis."""

    async def action(service: WalletService) -> Any:
        return await service.get_balance()

    _run(ctx, action)


@wallet_app.command()
def createtx(
    ctx: typer.Context,
    to: Annotated[
        list[str], typer.Option("--to", help="Recipient as ADDRESS:AMOUNT (repeatable)")
    ],
    fee_rate: Annotated[int, typer.Option("--fee-rate", "-f", help="Fee rate in sat/vB")] = 1,
    send_all: Annotated[
        bool, typer.Option("--send-all", help="Send everything to the last recipient")
    ] = False,
    utxos: Annotated[
        list[str] | None, typer.Option("--utxos", help="Outpoint txid:vout that must be spent")
    ] = None,
    unspendable: Annotated[
        list[str] | None, typer.Option("--unspendable", help="Outpoint txid:vout not to spend")
    ] = None,
    rbf: Annotated[bool, typer.Option("--rbf/--no-rbf", help="Signal replace-by-fee")] = True,
    algorithm: Annotated[
        SelectionAlgorithm, typer.Option("--algorithm", help="Coin selection algorithm")
    ] = SelectionAlgorithm.LARGEST_FIRST,
    ordering: Annotated[
        Ordering, typer.Option("--ordering", help="Input/output ordering")
    ] = Ordering.BIP69,
    policy_path: Annotated[
        int | None,
        typer.Option("--policy-path", help="Spend through this path index (see `policies`)"),
    ] = None,
) -> None:
    """Create an unsigned PSBT."""

    async def action(service: WalletService) -> Any:
        return await service.create_tx(
            [_parse_recipient(r) for r in to],
            fee_rate=fee_rate,
            send_all=send_all,
            must_use=_parse_outpoints(utxos),
            must_not_use=_parse_outpoints(unspendable),
            enable_rbf=rbf,
            algorithm=algorithm,
            ordering=ordering,
            policy_path=policy_path,
        )

    _run(ctx, action)


@wallet_app.command()
def policies(ctx: typer.Context) -> None:
    """Show the spending paths of the wallet descriptors."""

    async def action(service: WalletService) -> Any:
        return service.policies()

    _run(ctx, action)


@wallet_app.command()
def publicdescriptor(ctx: typer.Context) -> None:
    """Show the wallet descriptors without private keys."""

    async def action(service: WalletService) -> Any:
        return service.public_descriptor()

    _run(ctx, action)


PsbtOpt = Annotated[str, typer.Option("--psbt", "-p", help="Base64 PSBT")]


@wallet_app.command()
def signpsbt(ctx: typer.Context, psbt: PsbtOpt) -> None:
    """Sign a PSBT with the wallet's private keys and finalize complete inputs."""

    async def action(service: WalletService) -> Any:
        return await service.sign(psbt)

    _run(ctx, action)


@wallet_app.command()
def finalizepsbt(ctx: typer.Context, psbt: PsbtOpt) -> None:
    """Finalize every input that has a complete satisfaction."""

    async def action(service: WalletService) -> Any:
        return await service.finalize(psbt)

    _run(ctx, action)


@wallet_app.command()
def extractpsbt(ctx: typer.Context, psbt: PsbtOpt) -> None:
    """Extract the raw transaction of a finalized PSBT."""

    async def action(service: WalletService) -> Any:
        return service.extract(psbt)

    _run(ctx, action)


@wallet_app.command()
def combinepsbt(
    ctx: typer.Context,
    psbt: Annotated[list[str], typer.Option("--psbt", "-p", help="Base64 PSBT (repeatable)")],
) -> None:
    """Combine PSBTs of the same transaction."""

    async def action(service: WalletService) -> Any:
        return service.combine(psbt)

    _run(ctx, action)


@wallet_app.command()
def broadcast(
    ctx: typer.Context,
    psbt: Annotated[str | None, typer.Option("--psbt", "-p", help="Finalized base64 PSBT")] = None,
    tx: Annotated[str | None, typer.Option("--tx", help="Raw transaction hex")] = None,
) -> None:
    """Broadcast a finalized PSBT or a raw transaction."""
    if (psbt is None) == (tx is None):
        logger.error("Provide exactly one of --psbt or --tx")
        raise typer.Exit(1)

    async def action(service: WalletService) -> Any:
        raw = tx if tx is not None else service.extract(psbt)["raw_tx"]
        return {"txid": await service.broadcast(raw)}

    _run(ctx, action)


@key_app.command()
def generate(
    ctx: typer.Context,
    words: Annotated[int, typer.Option("--words", "-w", help="Number of words (12-24)")] = 24,
    password: Annotated[
        str | None, typer.Option("--password", "-p", help="BIP39 passphrase")
    ] = None,
) -> None:
    """Generate a new BIP39 mnemonic and master key."""
    network = _state(ctx).network
    _emit(lambda: generate_key(network, words, password))


@key_app.command()
def restore(
    ctx: typer.Context,
    mnemonic: Annotated[str, typer.Option("--mnemonic", "-m", help="BIP39 mnemonic phrase")],
    password: Annotated[
        str | None, typer.Option("--password", "-p", help="BIP39 passphrase")
    ] = None,
) -> None:
    """Restore the master key of a BIP39 mnemonic."""
    network = _state(ctx).network
    _emit(lambda: restore_key(network, mnemonic, password))


@key_app.command()
def derive(
    ctx: typer.Context,
    xprv: Annotated[str, typer.Option("--xprv", "-x", help="Extended private key")],
    path: Annotated[str, typer.Option("--path", "-p", help="Derivation path, e.g. m/84'/1'/0'")],
) -> None:
    """Derive an account key with its origin, ready for descriptors."""
    network = _state(ctx).network
    _emit(lambda: derive_key(network, xprv, path))


def _parse_key_map(values: list[str] | None) -> dict[str, str]:
    keys = {}
    for value in values or []:
        name, sep, key = value.partition("=")
        if not sep or not name or not key:
            raise ValueError(f"Key must be NAME=KEY, got '{value}'")
        keys[name] = key
    return keys


@app.command()
def policy(
    ctx: typer.Context,
    policy_text: Annotated[str, typer.Argument(metavar="POLICY", help="Policy, e.g. or(pk(A),pk(B))")],
    script_type: Annotated[
        str, typer.Option("--type", help="Descriptor type: wsh | sh-wsh")
    ] = ScriptType.WSH.value,
    key: Annotated[
        list[str] | None, typer.Option("--key", "-k", help="Alias as NAME=KEY (repeatable)")
    ] = None,
) -> None:
    """Compile a spending policy into a descriptor."""
    network = _state(ctx).network

    def compile_() -> dict:
        keys = _parse_key_map(key)
        source = AliasKeySource(keys, network) if keys else KeySource(network)
        descriptor = compile_policy(policy_text, source, script_type, network)
        return {"descriptor": descriptor.to_string(), "policies": descriptor.policies()}

    _emit(compile_)


# The REPL accepts every wallet and key command without group prefixes
repl_app = typer.Typer(add_completion=False)
repl_app.registered_commands.extend(wallet_app.registered_commands)
repl_app.registered_commands.extend(key_app.registered_commands)


@app.command()
def repl(
    ctx: typer.Context,
    wallet: WalletName = None,
    descriptor: DescriptorOpt = None,
    change_descriptor: ChangeDescriptorOpt = None,
    server: ServerOpt = None,
    retries: RetriesOpt = None,
    timeout: TimeoutOpt = None,
    esplora: EsploraOpt = None,
    esplora_concurrency: EsploraConcurrencyOpt = None,
    gap_limit: GapLimitOpt = None,
) -> None:
    """Interactive shell over one wallet."""
    args = _wallet_args(**locals())
    state = _state(ctx)
    state.wallet_args = args
    run_repl(typer.main.get_command(repl_app), state)


if __name__ == "__main__":
    app()
