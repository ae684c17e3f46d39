"""
RBF Wallet CLI - bump fees, sweep private keys and fund raw transactions.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import typer
from loguru import logger

from rbfwallet.backends.bitcoin_core import BitcoinCoreBackend
from rbfwallet.config import WalletSettings, get_settings
from rbfwallet.errors import WalletError
from rbfwallet.wallet.bumpfee import BumpFeeOptions
from rbfwallet.wallet.fees import FeeEstimatorBridge
from rbfwallet.wallet.funding import FundOptions
from rbfwallet.wallet.service import WalletService
from rbfwallet.wallet.transaction import Transaction, TransactionDecodeError

app = typer.Typer(
    name="rbf-wallet",
    help="Replace-by-fee wallet operations against a Bitcoin Core node",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _create_backend(settings: WalletSettings) -> BitcoinCoreBackend:
    return BitcoinCoreBackend(
        rpc_url=settings.rpc_url, rpc_user=settings.rpc_user, rpc_password=settings.rpc_password
    )


def _load_settings(
    network: str | None, rpc_url: str | None, log_level: str | None
) -> WalletSettings:
    settings = get_settings()
    overrides = {
        key: value
        for key, value in (("network", network), ("rpc_url", rpc_url), ("log_level", log_level))
        if value is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)
    setup_logging(settings.log_level)
    return settings


def _load_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


def _open_wallet(settings: WalletSettings, mnemonic: str) -> WalletService:
    wallet = WalletService.from_mnemonic(mnemonic, _create_backend(settings), settings)
    wallet.rescan()
    return wallet


def _fail(e: WalletError) -> typer.Exit:
    logger.error(f"{e.message} (code {e.code})")
    return typer.Exit(1)


MnemonicOption = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic")
MnemonicFileOption = typer.Option(None, "--mnemonic-file", "-f", help="Path to mnemonic file")
NetworkOption = typer.Option(None, "--network", "-n", help="Bitcoin network")
RpcUrlOption = typer.Option(None, "--rpc-url", help="Bitcoin Core RPC URL")
LogLevelOption = typer.Option(None, "--log-level", "-l")


@app.command()
def bumpfee(
    txid: str = typer.Argument(..., help="Wallet transaction to replace"),
    conf_target: int | None = typer.Option(None, "--conf-target", help="Confirmation target"),
    total_fee: int | None = typer.Option(None, "--total-fee", help="Total fee in sats"),
    output_index: int | None = typer.Option(None, "--output-index", help="Change output index"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: str | None = NetworkOption,
    rpc_url: str | None = RpcUrlOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Replace an unconfirmed wallet transaction with a higher-fee version."""
    settings = _load_settings(network, rpc_url, log_level)
    wallet = _open_wallet(settings, _load_mnemonic(mnemonic, mnemonic_file))
    try:
        result = wallet.bump_fee(
            txid,
            BumpFeeOptions(conf_target=conf_target, total_fee=total_fee, output_index=output_index),
        )
    except WalletError as e:
        raise _fail(e) from e
    finally:
        wallet.close()

    print(json.dumps({"txid": result.txid, "oldfee": result.old_fee, "fee": result.fee}))


@app.command()
def sweep(
    privkeys: list[str] = typer.Argument(..., help="WIF private keys to sweep"),
    label: str = typer.Option("", "--label", help="Label for the receiving address"),
    comment: str = typer.Option("", "--comment", help="Comment stored with the transaction"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: str | None = NetworkOption,
    rpc_url: str | None = RpcUrlOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Sweep every output of the given private keys into the wallet."""
    settings = _load_settings(network, rpc_url, log_level)
    wallet = _open_wallet(settings, _load_mnemonic(mnemonic, mnemonic_file))
    try:
        txid = wallet.sweep_private_keys(privkeys, label=label, comment=comment)
    except WalletError as e:
        raise _fail(e) from e
    finally:
        wallet.close()

    print(json.dumps({"txid": txid}))


@app.command()
def fund(
    tx_hex: str = typer.Argument(..., help="Raw transaction to fund"),
    change_address: str | None = typer.Option(None, "--change-address"),
    change_position: int = typer.Option(-1, "--change-position"),
    include_watching: bool = typer.Option(False, "--include-watching"),
    lock_unspents: bool = typer.Option(False, "--lock-unspents"),
    rbf: bool | None = typer.Option(None, "--rbf/--no-rbf", help="Signal BIP125 on new inputs"),
    fee_rate: int | None = typer.Option(None, "--fee-rate", help="Fee rate in sat/kvB"),
    mnemonic: str | None = MnemonicOption,
    mnemonic_file: Path | None = MnemonicFileOption,
    network: str | None = NetworkOption,
    rpc_url: str | None = RpcUrlOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Add wallet inputs and change to a raw transaction. Added inputs are not signed."""
    settings = _load_settings(network, rpc_url, log_level)
    try:
        tx = Transaction.from_hex(tx_hex)
    except TransactionDecodeError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e

    wallet = _open_wallet(settings, _load_mnemonic(mnemonic, mnemonic_file))
    try:
        result = wallet.fund_transaction(
            tx,
            FundOptions(
                change_address=change_address,
                change_position=change_position,
                include_watching=include_watching,
                lock_unspents=lock_unspents,
                opt_into_rbf=rbf,
                fee_rate=fee_rate,
            ),
        )
    except WalletError as e:
        raise _fail(e) from e
    finally:
        wallet.close()

    print(
        json.dumps(
            {
                "hex": result.transaction.to_hex(),
                "changepos": result.change_position,
                "fee": result.fee,
            }
        )
    )


@app.command()
def estimatefee(
    conf_target: int | None = typer.Option(None, "--conf-target", help="Confirmation target"),
    network: str | None = NetworkOption,
    rpc_url: str | None = RpcUrlOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show the fee rate the wallet would pay for a confirmation target."""
    settings = _load_settings(network, rpc_url, log_level)
    backend = _create_backend(settings)
    try:
        bridge = FeeEstimatorBridge(backend, settings)
        target = conf_target or settings.tx_confirm_target
        rate = bridge.target_fee_rate(target)
    finally:
        backend.close()

    print(
        json.dumps(
            {
                "conf_target": target,
                "feerate": rate.sat_per_kvb,
                "required": bridge.required_fee_rate.sat_per_kvb,
            }
        )
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
