"""CLI for Safer - collect Safe signatures offline and execute from the terminal."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from safer_wallet.config import OwnerConfig, SaferConfig, get_config_path, load_config, save_config
from safer_wallet.core.execution import ExecuteService, resolve_gas_options
from safer_wallet.core.factory import SafeService, TransactionService
from safer_wallet.core.signing import SignService
from safer_wallet.exceptions import ConfigurationError, SafeNotConfiguredError, SaferError
from safer_wallet.storage.files import FileTransactionStore
from safer_wallet.storage.ipfs import IPFSTransactionStore, parse_cid_from_uri
from safer_wallet.storage.models import SafeTransaction, TransactionStatus
from safer_wallet.wallet.chains import NETWORKS, parse_chain
from safer_wallet.wallet.provider import SafeSession
from safer_wallet.wallet.safe import SafeSDK
from safer_wallet.wallet.signers import Signer, create_signer

app = typer.Typer(
    name="safer",
    help="Safe multisig from the terminal: create, sign, share and execute transactions.",
    no_args_is_help=True,
)
console = Console()

_config_path: Path | None = None

_STATUS_STYLES = {
    TransactionStatus.PENDING: "yellow",
    TransactionStatus.SUBMITTED: "cyan",
    TransactionStatus.EXECUTED: "cyan",
    TransactionStatus.SUCCESSFUL: "green",
    TransactionStatus.FAILED: "red",
    TransactionStatus.CANCELLED: "dim",
}


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"safer {version('safer-wallet')}")
        raise typer.Exit()


@app.callback()
def main(
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ~/.safer/config.yaml)",
        envvar="SAFER_CONFIG",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Safe multisig from the terminal: create, sign, share and execute transactions."""
    global _config_path
    _config_path = config
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
            force=True,
        )


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


# ------------------------------------------------------------------
# Shared plumbing
# ------------------------------------------------------------------


def _load() -> SaferConfig:
    return load_config(_config_path)


def _save(config: SaferConfig) -> None:
    save_config(config, _config_path)


def _store(config: SaferConfig, safe: str | None = None) -> FileTransactionStore:
    return FileTransactionStore(
        config.transactions_path(),
        default_safe=safe or config.default_safe,
        default_chain=config.chain,
    )


def _safe_address(config: SaferConfig, safe: str | None) -> str:
    address = safe or config.default_safe
    if not address:
        raise SafeNotConfiguredError()
    return address


def _open_sdk(config: SaferConfig, safe_address: str) -> SafeSDK:
    """Connect to the Safe on the configured chain."""
    session = SafeSession.from_config(config)
    session.check_chain()
    return session.get_sdk(safe_address)


def _pick_signer(config: SaferConfig, owner: str | None) -> Signer:
    if owner:
        owner_config = config.resolve_owner(owner)
    elif len(config.owners) == 1:
        owner_config = config.owners[0]
    elif not config.owners:
        raise ConfigurationError("No owners configured. Run 'safer config owner-add' first.")
    else:
        raise ConfigurationError("Several owners configured; choose one with --owner.")
    return create_signer(owner_config)


def _fail(exc: Exception) -> None:
    code = getattr(exc, "code", None)
    suffix = f" [dim]({code})[/dim]" if code else ""
    console.print(f"[red]{exc}[/red]{suffix}")
    raise typer.Exit(1)


def _network_label(chain_id) -> str:
    name, resolved = parse_chain(chain_id)
    network = NETWORKS.get(resolved)
    return network.label if network else name


def _native_symbol(chain_id) -> str:
    _, resolved = parse_chain(chain_id)
    network = NETWORKS.get(resolved)
    return network.native_symbol if network else "ETH"


def _explorer_link(chain_id, tx_hash: str | None) -> str | None:
    _, resolved = parse_chain(chain_id)
    network = NETWORKS.get(resolved)
    if network is None or not tx_hash:
        return None
    return f"{network.explorer_url}/tx/{tx_hash}"


def _print_transaction(tx: SafeTransaction) -> None:
    style = _STATUS_STYLES.get(tx.status, "white")
    lines = [
        f"Hash:      [cyan]{tx.hash}[/cyan]",
        f"Safe:      {tx.safe_address or '-'}",
        f"Network:   {_network_label(tx.chain_id)} ({tx.chain_id})",
        f"Nonce:     {tx.nonce}",
        f"Type:      {tx.tx_type or '-'}",
        f"To:        {tx.to}",
        f"Value:     {tx.value} wei",
        f"Status:    [{style}]{tx.status.value}[/{style}]",
        f"Created:   {tx.create_date.isoformat()}",
    ]
    if tx.transaction_hash:
        lines.append(f"Tx hash:   {tx.transaction_hash}")
    if tx.ipfs:
        lines.append(f"IPFS:      {tx.ipfs.get('url')}")
    for key in ("warning", "confirmationError", "errorMessage"):
        if tx.metadata.get(key):
            lines.append(f"[yellow]{key}:[/yellow] {tx.metadata[key]}")
    console.print(Panel("\n".join(lines), title="Safe Transaction"))

    if tx.confirmations:
        table = Table(title="Signatures")
        table.add_column("Owner", style="cyan")
        table.add_column("Type")
        table.add_column("Signature", style="dim")
        for conf in tx.confirmations:
            table.add_row(conf.owner, conf.signature_type, conf.signature[:20] + "...")
        console.print(table)


# ------------------------------------------------------------------
# config
# ------------------------------------------------------------------

config_app = typer.Typer(name="config", help="Show or change settings.", no_args_is_help=True)
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show():
    """Show the current configuration (secrets masked)."""
    cfg = _load()
    table = Table(title=f"Configuration ({_config_path or get_config_path()})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("chain", cfg.chain or "[dim]not set[/dim]")
    table.add_row("rpc_url", cfg.rpc_url or "[dim]not set[/dim]")
    table.add_row("default_safe", cfg.default_safe or "[dim]not set[/dim]")
    table.add_row("transactions_dir", str(cfg.transactions_path()))
    table.add_row("ipfs.gateway", cfg.ipfs.gateway)
    table.add_row("ipfs.credentials", "configured" if cfg.ipfs.has_credentials else "missing")
    console.print(table)

    if cfg.owners:
        owners = Table(title="Owners")
        owners.add_column("#", justify="right")
        owners.add_column("Name", style="cyan")
        owners.add_column("Address")
        owners.add_column("Type")
        for i, owner in enumerate(cfg.owners, start=1):
            owners.add_row(str(i), owner.name, owner.address, owner.type)
        console.print(owners)


@config_app.command("set")
def config_set(
    chain: str = typer.Option(None, "--chain", help="Chain name or id"),
    rpc_url: str = typer.Option(None, "--rpc-url", help="JSON-RPC endpoint"),
    safe: str = typer.Option(None, "--safe", help="Default Safe address"),
    pinata_api_key: str = typer.Option(None, "--pinata-api-key", help="Pinata API key"),
    pinata_secret: str = typer.Option(None, "--pinata-secret", help="Pinata secret API key"),
    gateway: str = typer.Option(None, "--ipfs-gateway", help="Preferred IPFS gateway"),
    tx_dir: str = typer.Option(None, "--tx-dir", help="Transaction storage directory"),
):
    """Update one or more settings."""
    cfg = _load()
    if chain is not None:
        name, chain_id = parse_chain(chain)
        if chain_id is None:
            console.print(f"[red]Unknown chain '{chain}'.[/red] Known: {', '.join(n.name for n in NETWORKS.values())}")
            raise typer.Exit(1)
        cfg.chain = str(chain_id)
    if rpc_url is not None:
        cfg.rpc_url = rpc_url
    if safe is not None:
        cfg.default_safe = safe
    if pinata_api_key is not None:
        cfg.ipfs.api_key = pinata_api_key
    if pinata_secret is not None:
        cfg.ipfs.secret_api_key = pinata_secret
    if gateway is not None:
        cfg.ipfs.gateway = gateway
    if tx_dir is not None:
        cfg.transactions_dir = tx_dir
    _save(cfg)
    console.print("[green]Configuration saved.[/green]")


@config_app.command("owner-add")
def config_owner_add(
    address: str = typer.Option(..., "--address", "-a", help="Owner address"),
    owner_type: str = typer.Option("privkey", "--type", "-t", help="privkey, keystore or ledger"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    private_key: str = typer.Option(None, "--private-key", help="Private key or ${ENV_VAR}"),
    keystore: str = typer.Option(None, "--keystore", help="Keystore file path"),
    derivation_path: str = typer.Option(None, "--path", help="Ledger derivation path"),
):
    """Add or replace an owner key."""
    cfg = _load()
    try:
        owner = OwnerConfig(
            address=address,
            type=owner_type,
            name=name,
            private_key=private_key,
            keystore_path=keystore,
            derivation_path=derivation_path,
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    owner = cfg.set_owner(owner)
    _save(cfg)
    console.print(f"Owner [cyan]{owner.name}[/cyan] ({owner.address}) saved.")


@config_app.command("owner-remove")
def config_owner_remove(
    identifier: str = typer.Argument(help="Owner address, name or index"),
):
    """Remove an owner key."""
    cfg = _load()
    try:
        owner = cfg.resolve_owner(identifier)
    except SaferError as exc:
        _fail(exc)
    cfg.remove_owner(owner.address)
    _save(cfg)
    console.print(f"Owner [cyan]{owner.name}[/cyan] removed.")


# ------------------------------------------------------------------
# info
# ------------------------------------------------------------------


@app.command()
def info(safe: str = typer.Option(None, "--safe", "-s", help="Safe address")):
    """Show owners, threshold, nonce and balance of a Safe."""
    cfg = _load()
    try:
        sdk = _open_sdk(cfg, _safe_address(cfg, safe))
        details = SafeService().get_info(sdk)
    except SaferError as exc:
        _fail(exc)

    console.print(Panel(
        f"Address:   [cyan]{details.address}[/cyan]\n"
        f"Network:   {_network_label(details.chain_id)} ({details.chain_id})\n"
        f"Threshold: {details.threshold} of {len(details.owners)}\n"
        f"Nonce:     {details.nonce}\n"
        f"Balance:   {details.balance_formatted} {_native_symbol(details.chain_id)}",
        title="Safe",
    ))
    for i, owner in enumerate(details.owners, start=1):
        console.print(f"  {i}. {owner}")


# ------------------------------------------------------------------
# txs
# ------------------------------------------------------------------

txs_app = typer.Typer(name="txs", help="Browse, export and import transactions.", no_args_is_help=True)
app.add_typer(txs_app, name="txs")


@txs_app.command("list")
def txs_list(
    status: str = typer.Option(None, "--status", help="Filter by status"),
    tx_type: str = typer.Option(None, "--type", help="Filter by transaction type"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
    ascending: bool = typer.Option(False, "--asc", help="Oldest nonce first"),
):
    """List stored transactions."""
    cfg = _load()
    try:
        wanted = TransactionStatus(status.upper()) if status else None
    except ValueError:
        console.print(f"[red]Unknown status '{status}'.[/red]")
        raise typer.Exit(1)
    transactions = _store(cfg, safe).list(status=wanted, tx_type=tx_type, ascending=ascending)
    if not transactions:
        console.print("[dim]No transactions found.[/dim]")
        return

    table = Table(title="Transactions")
    table.add_column("Nonce", justify="right")
    table.add_column("Hash", style="cyan")
    table.add_column("Type")
    table.add_column("Sigs", justify="right")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    for tx in transactions:
        style = _STATUS_STYLES.get(tx.status, "white")
        table.add_row(
            str(tx.nonce),
            f"{tx.hash[:10]}...{tx.hash[-8:]}",
            tx.tx_type or "-",
            str(len(tx.signatures)),
            f"[{style}]{tx.status.value}[/{style}]",
            tx.create_date.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@txs_app.command("show")
def txs_show(
    identifier: str = typer.Argument(help="Hash, hash fragment or nonce"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Show one transaction."""
    cfg = _load()
    try:
        tx = _store(cfg, safe).load(identifier)
    except SaferError as exc:
        _fail(exc)
    _print_transaction(tx)


@txs_app.command("export")
def txs_export(
    identifier: str = typer.Argument(help="Hash, hash fragment or nonce"),
    out: Path = typer.Option(Path("."), "--out", "-o", help="Directory to write to"),
    ipfs: bool = typer.Option(False, "--ipfs", help="Pin to IPFS instead of writing a file"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Export a transaction to a file or to IPFS."""
    cfg = _load()
    store = _store(cfg, safe)
    try:
        tx = store.load(identifier)
        if ipfs:
            tx = _run(IPFSTransactionStore(cfg.ipfs).publish(tx))
            store.save(tx)
            console.print(Panel(
                f"CID:     [cyan]{tx.ipfs['cid']}[/cyan]\n"
                f"URI:     {tx.ipfs['url']}\n"
                f"Gateway: {tx.ipfs['gateway']}",
                title="Pinned to IPFS",
            ))
            return
        path = store.export_to(tx, out)
    except SaferError as exc:
        _fail(exc)
    console.print(f"Exported to [cyan]{path}[/cyan]")


@txs_app.command("import")
def txs_import(
    source: str = typer.Argument(help="File path, ipfs:// URI, gateway URL or CID"),
    ipfs: bool = typer.Option(False, "--ipfs", help="Treat SOURCE as a bare CID"),
):
    """Import a transaction from a file or IPFS into local storage."""
    cfg = _load()
    store = _store(cfg)
    try:
        if ipfs or source.startswith("ipfs://") or "/ipfs/" in source:
            cid = source if ipfs else parse_cid_from_uri(source)
            tx = _run(IPFSTransactionStore(cfg.ipfs).retrieve(cid))
            tx = store.save(tx)
        else:
            path = Path(source)
            if not path.exists():
                console.print(f"[red]File not found: {path}[/red]")
                raise typer.Exit(1)
            tx = store.import_transaction(path.read_text(encoding="utf-8"))
    except SaferError as exc:
        _fail(exc)
    console.print(f"[green]Imported[/green] nonce {tx.nonce} ([cyan]{tx.hash}[/cyan])")


# ------------------------------------------------------------------
# transfer / admin
# ------------------------------------------------------------------

transfer_app = typer.Typer(name="transfer", help="Create transfer transactions.", no_args_is_help=True)
app.add_typer(transfer_app, name="transfer")


def _create_and_save(cfg: SaferConfig, safe: str | None, build) -> None:
    try:
        sdk = _open_sdk(cfg, _safe_address(cfg, safe))
        tx = build(sdk)
        _store(cfg, sdk.safe_address).save(tx)
    except SaferError as exc:
        _fail(exc)
    console.print(
        f"[green]Created[/green] {tx.tx_type} nonce {tx.nonce}: [cyan]{tx.hash}[/cyan]\n"
        f"[dim]Next: safer sign {tx.hash[-8:]}[/dim]"
    )


@transfer_app.command("eth")
def transfer_eth(
    to: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount in ETH (e.g. 0.01)"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Create a native-token transfer."""
    cfg = _load()
    _create_and_save(cfg, safe, lambda sdk: TransactionService().create_eth_transfer(sdk, to, amount))


@transfer_app.command("erc20")
def transfer_erc20(
    token: str = typer.Option(..., "--token", help="Token contract address"),
    to: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount in token units"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Create an ERC-20 transfer."""
    cfg = _load()
    _create_and_save(
        cfg, safe, lambda sdk: TransactionService().create_erc20_transfer(sdk, token, to, amount)
    )


admin_app = typer.Typer(name="admin", help="Owner and threshold management.", no_args_is_help=True)
app.add_typer(admin_app, name="admin")


@admin_app.command("add-owner")
def admin_add_owner(
    owner: str = typer.Argument(help="New owner address"),
    threshold: int = typer.Option(None, "--threshold", help="New threshold (default: unchanged)"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Create a transaction adding an owner."""
    cfg = _load()
    _create_and_save(cfg, safe, lambda sdk: SafeService().create_add_owner(sdk, owner, threshold))


@admin_app.command("remove-owner")
def admin_remove_owner(
    owner: str = typer.Argument(help="Owner address to remove"),
    threshold: int = typer.Option(None, "--threshold", help="New threshold (default: unchanged)"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Create a transaction removing an owner."""
    cfg = _load()
    _create_and_save(cfg, safe, lambda sdk: SafeService().create_remove_owner(sdk, owner, threshold))


@admin_app.command("change-threshold")
def admin_change_threshold(
    threshold: int = typer.Argument(help="New threshold"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Create a transaction changing the threshold."""
    cfg = _load()
    _create_and_save(cfg, safe, lambda sdk: SafeService().create_change_threshold(sdk, threshold))


# ------------------------------------------------------------------
# sign / execute
# ------------------------------------------------------------------


@app.command()
def sign(
    identifier: str = typer.Argument(help="Hash, hash fragment or nonce"),
    owner: str = typer.Option(None, "--owner", "-o", help="Owner name, address or index"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
):
    """Add your owner signature to a transaction."""
    cfg = _load()
    store = _store(cfg, safe)
    try:
        tx = store.load(identifier)
        sdk = _open_sdk(cfg, tx.safe_address or _safe_address(cfg, safe))
        signer = _pick_signer(cfg, owner)
        service = SignService()
        result = service.sign_transaction(sdk, tx, signer)
        store.save(result.transaction)
        status = service.check_signature_status(sdk, result.transaction)
    except SaferError as exc:
        _fail(exc)

    console.print(
        f"[green]Signed[/green] by [cyan]{result.signature.signer}[/cyan] "
        f"({status.signature_count}/{status.threshold})"
    )
    if status.is_executable:
        console.print(f"[dim]Ready: safer execute {tx.hash[-8:]}[/dim]")
    else:
        console.print(f"[dim]Waiting on: {', '.join(status.pending_owners)}[/dim]")


@app.command()
def execute(
    identifier: str = typer.Argument(help="Hash, hash fragment or nonce"),
    owner: str = typer.Option(None, "--owner", "-o", help="Executing owner name, address or index"),
    gas_limit: str = typer.Option(None, "--gas-limit", help="Gas limit"),
    gas_price: str = typer.Option(None, "--gas-price", help="Gas price in gwei"),
    gas_boost: str = typer.Option(None, "--gas-boost", help="Raise the gas price by this percentage (e.g. 12.5)"),
    safe: str = typer.Option(None, "--safe", "-s", help="Safe address"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
):
    """Execute a signed transaction on-chain."""
    cfg = _load()
    store = _store(cfg, safe)
    try:
        tx = store.load(identifier)
        sdk = _open_sdk(cfg, tx.safe_address or _safe_address(cfg, safe))
        signer = _pick_signer(cfg, owner)
        gas = resolve_gas_options(gas_limit, gas_price, gas_boost, fee_query=sdk.get_gas_price)
    except SaferError as exc:
        _fail(exc)

    console.print(f"\n[bold]Execute nonce {tx.nonce}[/bold] ({tx.hash})")
    console.print(f"  Executor:  {signer.address}")
    if gas.gas_limit:
        console.print(f"  Gas limit: {gas.gas_limit}")
    if gas.gas_price:
        console.print(f"  Gas price: {gas.gas_price} gwei")
    if not yes:
        typer.confirm("Confirm execution?", abort=True)

    service = ExecuteService(cfg.execution.confirmation_timeout_seconds)
    try:
        result = _run(service.execute(sdk, tx, signer, gas))
    except SaferError as exc:
        _fail(exc)

    store.save(result.transaction)
    final = result.transaction
    if result.error is not None:
        _fail(result.error)
    if final.status is TransactionStatus.SUCCESSFUL:
        console.print(Panel(
            f"[bold green]Executed![/bold green]\n\n"
            f"Tx:    [cyan]{final.transaction_hash}[/cyan]\n"
            f"Block: {final.metadata.get('blockNumber')}\n"
            f"Gas:   {final.metadata.get('gasUsed')}",
            title="Transaction Executed",
        ))
        link = _explorer_link(final.chain_id, final.transaction_hash)
        if link:
            console.print(f"[dim]{link}[/dim]")
    elif final.status is TransactionStatus.SUBMITTED:
        console.print(
            f"[yellow]Submitted but not yet confirmed:[/yellow] "
            f"{final.metadata.get('confirmationError')}\n"
            f"Tx: [cyan]{final.metadata.get('submittedTxHash')}[/cyan]"
        )
    else:
        console.print(f"[yellow]{final.metadata.get('warning', 'Execution status uncertain.')}[/yellow]")


if __name__ == "__main__":
    app()
