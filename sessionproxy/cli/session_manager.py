"""
Session and CA Management CLI
Provides command-line access to the CA, stored sessions and report export
"""

from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console
from rich.table import Table

from sessionproxy.core.config import ApplicationConfig
from sessionproxy.core.exceptions import SessionProxyError
from sessionproxy.interception.certificate_manager import CertificateAuthority
from sessionproxy.interception.exporter import SessionExporter
from sessionproxy.interception.session_store import SessionStore

logger = structlog.get_logger()
console = Console()


def _print_ca_info(authority: CertificateAuthority):
    info = authority.info()

    table = Table(title="Root Certificate Authority")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    for field in ("subject", "issuer", "serial_number", "not_before", "not_after", "fingerprint", "cert_path"):
        table.add_row(field, str(info[field]))
    console.print(table)

    if info["is_expired"]:
        console.print("[red]Certificate has expired; delete both CA files to regenerate it[/red]")
    elif info["is_expiring_soon"]:
        console.print(f"[yellow]Certificate expires in {info['days_until_expiry']} days[/yellow]")


def init_ca_command(config: ApplicationConfig) -> int:
    """Generate the CA if missing and show it"""
    authority = CertificateAuthority.from_config(config.certificate)
    try:
        if authority.ensure():
            console.print(f"[green]✅ Generated new CA at {authority.cert_path}[/green]")
        else:
            console.print(f"[blue]CA already present at {authority.cert_path}[/blue]")
        _print_ca_info(authority)
    except SessionProxyError as e:
        console.print(f"[red]Failed to initialize CA: {e}[/red]")
        return 1
    return 0


def ca_info_command(config: ApplicationConfig) -> int:
    """Show the persisted CA"""
    authority = CertificateAuthority.from_config(config.certificate)
    try:
        _print_ca_info(authority)
    except SessionProxyError as e:
        console.print(f"[red]Cannot read CA: {e}[/red]")
        return 1
    return 0


def list_sessions_command(config: ApplicationConfig) -> int:
    """List stored session documents"""
    store = SessionStore(config.logging.session_dir)
    sessions = store.describe()

    if not sessions:
        console.print(f"[yellow]No sessions found in {store.session_dir}[/yellow]")
        return 0

    table = Table(title=f"Sessions in {store.session_dir}")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Modified")

    for session in sessions:
        table.add_row(session["name"], f"{session['size']:,}", session["modified"])
    console.print(table)
    return 0


def export_session_command(
    config: ApplicationConfig,
    name: str,
    output: Optional[str] = None
) -> int:
    """Render a stored session as Markdown"""
    exporter = SessionExporter(SessionStore(config.logging.session_dir))
    output_path = Path(output) if output else Path(name).with_suffix(".md")

    try:
        written = exporter.render(name, output_path)
    except SessionProxyError as e:
        console.print(f"[red]Export failed: {e}[/red]")
        return 1

    console.print(f"[green]✅ Report written to {written}[/green]")
    return 0
