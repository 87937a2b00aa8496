"""
hdledger CLI - create watch-only wallets, follow the chain and build PSBTs.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger

from hdledger.backends.bitcoin_core import BitcoinCoreBackend
from hdledger.config import NetworkType, WalletConfig, WalletSettings, get_settings
from hdledger.errors import WalletError
from hdledger.persist import load_wallet, save_wallet
from hdledger.sync import bootstrap_from_source, sync_wallet
from hdledger.wallet.address import address_to_scriptpubkey
from hdledger.wallet.bip32 import DerivationPath, HDKey, mnemonic_to_seed
from hdledger.wallet.models import KnownBlock
from hdledger.wallet.service import Wallet
from hdledger.wallet.transaction import OutPoint, Transaction, TxOut

app = typer.Typer(
    name="hdledger",
    help="Watch-only HD wallet: track UTXOs and build PSBTs",
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


def _settings(log_level: str | None) -> WalletSettings:
    settings = get_settings()
    setup_logging(log_level or settings.log_level)
    return settings


def _open_wallet(wallet_file: Path) -> Wallet:
    try:
        return load_wallet(wallet_file)
    except FileNotFoundError as e:
        logger.error(f"{e}. Create one with 'hdledger init'")
        raise typer.Exit(1)
    except ValueError as e:
        logger.error(f"Failed to load wallet {wallet_file}: {e}")
        raise typer.Exit(1)


def _backend(
    settings: WalletSettings,
    rpc_url: str | None,
    rpc_user: str | None,
    rpc_password: str | None,
) -> BitcoinCoreBackend:
    return BitcoinCoreBackend(
        rpc_url=rpc_url or settings.rpc_url,
        rpc_user=rpc_user or settings.rpc_user,
        rpc_password=rpc_password or settings.rpc_password,
    )


def parse_payment(value: str) -> TxOut:
    """Parse ``address:amount_sats``."""
    address, sep, amount = value.rpartition(":")
    if not sep or not amount.isdigit():
        raise ValueError(f"Invalid payment {value!r} (expected address:amount_sats)")
    return TxOut.from_script(int(amount), address_to_scriptpubkey(address))


def default_account_path(network: NetworkType) -> str:
    coin_type = 0 if network == NetworkType.MAINNET else 1
    return f"m/84'/{coin_type}'/0'"


@app.command()
def init(
    mnemonic: str | None = typer.Option(
        None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic"
    ),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to mnemonic file"
    ),
    passphrase: str = typer.Option("", "--passphrase", help="BIP39 passphrase"),
    network: NetworkType | None = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    account_path: str | None = typer.Option(
        None, "--account-path", help="Path of the watch-only xpub (default m/84'/coin'/0')"
    ),
    base_path: str = typer.Option("m/0", "--base-path", help="Address path below the xpub"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing wallet file"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Create a watch-only wallet file from a mnemonic. The mnemonic is not stored."""
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    network = network or settings.network

    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or MNEMONIC env var")
        raise typer.Exit(1)

    if wallet_file.exists() and not force:
        logger.error(f"Wallet file {wallet_file} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    try:
        origin = DerivationPath.parse(account_path or default_account_path(network))
        base = DerivationPath.parse(base_path)

        master = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))
        xpub = master.derive(origin).to_extended_public_key(network)

        wallet = Wallet(
            config=WalletConfig(network=network),
            extended_pubkey=xpub,
            master_fingerprint=master.fingerprint,
            base_derivation_path=base,
            key_origin_path=origin,
        )
    except (ValueError, WalletError) as e:
        logger.error(f"Failed to create wallet: {e}")
        raise typer.Exit(1)

    save_wallet(wallet, wallet_file)
    typer.echo(f"Wallet saved to {wallet_file}")
    typer.echo(f"  xpub:        {xpub}")
    typer.echo(f"  fingerprint: {master.fingerprint.hex()}")
    typer.echo(f"  path:        {origin.extend(base)}/*")
    typer.echo("Run 'hdledger bootstrap' before receiving funds.")


@app.command("new-address")
def new_address(
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Source a new receive address."""
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    wallet = _open_wallet(wallet_file)

    address = wallet.new_receive_address()
    save_wallet(wallet, wallet_file)
    typer.echo(address)


@app.command()
def bootstrap(
    height: int | None = typer.Option(None, "--height", help="Block height to start from"),
    block_hash: str | None = typer.Option(None, "--hash", help="Hash of that block"),
    rpc_url: str | None = typer.Option(None, "--rpc-url", envvar="BITCOIN_RPC_URL"),
    rpc_user: str | None = typer.Option(None, "--rpc-user", envvar="BITCOIN_RPC_USER"),
    rpc_password: str | None = typer.Option(None, "--rpc-password", envvar="BITCOIN_RPC_PASSWORD"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """
    Set the block the wallet starts following from. Outputs received
    before this block are never seen by the wallet.
    """
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    wallet = _open_wallet(wallet_file)

    if height is not None and block_hash is not None:
        try:
            tip = wallet.set_last_block(block_hash.lower(), height)
        except ValueError as e:
            logger.error(f"Invalid block: {e}")
            raise typer.Exit(1)
    else:
        backend = _backend(settings, rpc_url, rpc_user, rpc_password)

        async def _bootstrap() -> KnownBlock:
            try:
                return await bootstrap_from_source(wallet, backend, height)
            finally:
                await backend.close()

        try:
            tip = asyncio.run(_bootstrap())
        except Exception as e:
            logger.error(f"Failed to fetch block from node: {e}")
            raise typer.Exit(1)

    save_wallet(wallet, wallet_file)
    typer.echo(f"Tracking from block {tip.height} ({tip.hash})")


@app.command()
def sync(
    rpc_url: str | None = typer.Option(None, "--rpc-url", envvar="BITCOIN_RPC_URL"),
    rpc_user: str | None = typer.Option(None, "--rpc-user", envvar="BITCOIN_RPC_USER"),
    rpc_password: str | None = typer.Option(None, "--rpc-password", envvar="BITCOIN_RPC_PASSWORD"),
    max_blocks: int | None = typer.Option(None, "--max-blocks", help="Stop after N blocks"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Process new blocks from a Bitcoin Core node."""
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    wallet = _open_wallet(wallet_file)

    backend = _backend(settings, rpc_url, rpc_user, rpc_password)

    async def _sync() -> int:
        try:
            return await sync_wallet(wallet, backend, max_blocks=max_blocks)
        finally:
            await backend.close()

    try:
        processed = asyncio.run(_sync())
    except WalletError as e:
        logger.error(f"Sync stopped: {e}")
        raise typer.Exit(1)
    except Exception as e:
        logger.error(f"Sync failed: {e}")
        raise typer.Exit(1)
    finally:
        # Blocks processed before a failure are kept
        save_wallet(wallet, wallet_file)

    typer.echo(f"Processed {processed} block(s)")


@app.command()
def balance(
    min_conf: int | None = typer.Option(None, "--min-conf", help="Minimum confirmations"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Show the confirmed balance."""
    settings = _settings(log_level)
    wallet = _open_wallet(wallet_file or settings.wallet_file)

    total = wallet.get_balance(min_conf)
    typer.echo(f"{total:,} sats ({total / 1e8:.8f} BTC)")


@app.command()
def utxos(
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """List the wallet's UTXOs."""
    settings = _settings(log_level)
    wallet = _open_wallet(wallet_file or settings.wallet_file)

    tip = wallet.last_known_block
    for utxo in sorted(wallet.get_utxos(), key=lambda u: (u.height, u.outpoint.sort_key())):
        confirmations = utxo.confirmations(tip.height) if tip else 0
        status = "available" if utxo.is_available else f"used in {', '.join(utxo.used_in_tx)}"
        typer.echo(
            f"{utxo.outpoint}  {utxo.value:>15,} sats  conf={confirmations:<6} "
            f"child={utxo.child_number:<6} {status}"
        )


@app.command()
def send(
    to: list[str] = typer.Option(..., "--to", "-t", help="Payment as address:amount_sats"),
    inputs: list[str] = typer.Option([], "--input", "-i", help="UTXO to spend (txid:vout)"),
    fee: int = typer.Option(..., "--fee", help="Absolute fee in sats"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Build an unsigned transaction and print it as base64 PSBT."""
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    wallet = _open_wallet(wallet_file)

    try:
        outputs = [parse_payment(payment) for payment in to]
        use_inputs = [OutPoint.parse(outpoint) for outpoint in inputs]
        psbt, change_index = wallet.create_transaction(outputs, use_inputs, fee)
    except (ValueError, WalletError) as e:
        logger.error(f"Failed to build transaction: {e}")
        raise typer.Exit(1)

    save_wallet(wallet, wallet_file)
    logger.info(f"Transaction {psbt.unsigned_tx.txid} is pending until it confirms")
    if change_index is not None:
        logger.info(f"Change output index: {change_index}")
    typer.echo(psbt.to_base64())


@app.command("drop-pending")
def drop_pending(
    txid: str = typer.Argument(..., help="Txid of the pending transaction"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Forget a pending transaction and free the UTXOs it spends."""
    settings = _settings(log_level)
    wallet_file = wallet_file or settings.wallet_file
    wallet = _open_wallet(wallet_file)

    if not wallet.drop_pending_transaction(txid.lower()):
        logger.error(f"No pending transaction {txid}")
        raise typer.Exit(1)

    save_wallet(wallet, wallet_file)
    typer.echo(f"Dropped {txid}")


@app.command()
def info(
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Display wallet information."""
    settings = _settings(log_level)
    wallet = _open_wallet(wallet_file or settings.wallet_file)

    keychain = wallet.keychain
    tip = wallet.last_known_block
    typer.echo(f"Network:            {wallet.config.network.value}")
    typer.echo(f"xpub:               {wallet.extended_pubkey}")
    typer.echo(f"Master fingerprint: {wallet.master_fingerprint.hex()}")
    full_path = keychain.key_origin_path.extend(keychain.base_derivation_path)
    typer.echo(f"Derivation:         {full_path}/*")
    typer.echo(f"Last child:         {wallet.last_sourced_child}")
    typer.echo(f"Last block:         {f'{tip.height} ({tip.hash})' if tip else 'not bootstrapped'}")
    typer.echo(f"UTXOs:              {len(wallet.get_utxos())}")
    typer.echo(f"Pending txs:        {len(wallet.pending_transactions)}")
    typer.echo(f"History txs:        {len(wallet.transaction_history)}")
    total = wallet.get_balance()
    typer.echo(f"Balance:            {total:,} sats ({total / 1e8:.8f} BTC)")


@app.command()
def broadcast(
    tx_hex: str = typer.Argument(..., help="Signed transaction hex"),
    rpc_url: str | None = typer.Option(None, "--rpc-url", envvar="BITCOIN_RPC_URL"),
    rpc_user: str | None = typer.Option(None, "--rpc-user", envvar="BITCOIN_RPC_USER"),
    rpc_password: str | None = typer.Option(None, "--rpc-password", envvar="BITCOIN_RPC_PASSWORD"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Broadcast a signed transaction built by this wallet."""
    settings = _settings(log_level)
    wallet = _open_wallet(wallet_file or settings.wallet_file)

    try:
        tx = Transaction.from_hex(tx_hex.strip())
    except ValueError as e:
        logger.error(f"Invalid transaction: {e}")
        raise typer.Exit(1)

    if tx.txid not in wallet.pending:
        logger.warning(f"Transaction {tx.txid} is not pending in this wallet")

    backend = _backend(settings, rpc_url, rpc_user, rpc_password)

    async def _broadcast() -> str:
        try:
            return await backend.broadcast_transaction(tx.to_hex())
        finally:
            await backend.close()

    try:
        txid = asyncio.run(_broadcast())
    except Exception as e:
        logger.error(f"Broadcast failed: {e}")
        raise typer.Exit(1)

    typer.echo(txid)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
