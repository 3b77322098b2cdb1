"""persona-gate CLI - partner token tooling and the validation server."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from persona_gate.config import Config, get_config_value, load_config, set_config_value
from persona_gate.logging_setup import setup_logging
from persona_gate.models import FlowKind, PartnerConfig, Valid
from persona_gate.nonce_registry import InMemoryNonceRegistry
from persona_gate.partners import PartnerRegistry
from persona_gate.signing import api_claims, embed_claims, issue_token
from persona_gate.validator import TokenValidator

app = typer.Typer(name="persona-gate", help="Partner token validation for avatar sessions")
config_app = typer.Typer(help="Inspect and edit configuration")
app.add_typer(config_app, name="config")

console = Console()
_config: Config | None = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config()
        setup_logging(_config)
    return _config


def _get_partners() -> PartnerRegistry:
    return PartnerRegistry.from_file(_get_config().partners.path)


def _require_partner(partner_id: str) -> PartnerConfig:
    partner = _get_partners().get(partner_id)
    if partner is None:
        console.print(f"[red]Unknown partner '{partner_id}'[/red]")
        raise typer.Exit(1)
    return partner


def _parse_meta(pairs: list[str]) -> dict[str, str] | None:
    if not pairs:
        return None
    meta: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid --meta '{pair}', expected key=value[/red]")
            raise typer.Exit(1)
        meta[key] = value
    return meta


@app.command("issue-token")
def issue_token_cmd(
    partner_id: str = typer.Argument(..., help="Partner id (iss claim)"),
    subject: str = typer.Option(..., "--subject", "-s", help="End-user id (sub claim)"),
    flow: FlowKind = typer.Option(FlowKind.EMBED, "--flow", "-f", help="embed | api"),
    scope: list[str] = typer.Option([], "--scope", help="API scope, repeatable"),
    ttl: int = typer.Option(3600, "--ttl", help="Lifetime in seconds"),
    meta: list[str] = typer.Option([], "--meta", "-m", help="Embed meta key=value, repeatable"),
):
    """Mint a token signed with the partner's registered secret (for partner tooling and smoke tests)."""
    partner = _require_partner(partner_id)
    if flow is FlowKind.EMBED:
        claims = embed_claims(partner_id, subject, ttl=ttl, meta=_parse_meta(meta))
    else:
        if not scope:
            console.print("[red]API tokens need at least one --scope[/red]")
            raise typer.Exit(1)
        claims = api_claims(partner_id, subject, scope, ttl=ttl)
    typer.echo(issue_token(claims, partner.secret_bytes()))


@app.command("verify-token")
def verify_token_cmd(
    token: str = typer.Argument(..., help="Token string"),
    flow: FlowKind = typer.Option(FlowKind.EMBED, "--flow", "-f", help="embed | api"),
):
    """Validate a token against the registered partners. Replay state is not shared with a server."""
    cfg = _get_config()
    validator = TokenValidator(_get_partners(), InMemoryNonceRegistry(), config=cfg.auth)
    result = asyncio.run(validator.validate(token, flow))
    if isinstance(result, Valid):
        console.print(f"[green]valid[/green] partner={result.partner.partner_id} sub={result.claims.subject}")
        typer.echo(json.dumps(result.claims.model_dump(mode="json"), indent=2))
        return
    console.print(f"[red]invalid[/red] reason={result.reason.value}")
    raise typer.Exit(1)


@app.command("partners")
def list_partners():
    """List registered partners (secrets are never shown)."""
    records = _get_partners().all()
    if not records:
        console.print("[dim]No partners registered.[/dim]")
        return

    table = Table(title="Partners", show_lines=True)
    table.add_column("Partner", style="cyan")
    table.add_column("Active", style="green")
    table.add_column("Audiences", style="blue")
    table.add_column("Scopes", style="magenta")
    for rec in records:
        table.add_row(
            rec.partner_id,
            "yes" if rec.active else "[red]no[/red]",
            ", ".join(sorted(rec.allowed_audiences)),
            ", ".join(sorted(rec.granted_scopes)) or "-",
        )
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default from config)"),
):
    """Run the HTTP validation server."""
    import uvicorn

    from persona_gate.server import create_app

    cfg = _get_config()
    uvicorn.run(create_app(config=cfg), host=host or cfg.serve.host, port=port or cfg.serve.port)


@config_app.command("show")
def config_show():
    """Print the effective configuration."""
    typer.echo(json.dumps(_get_config().model_dump(), indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dot path, e.g. auth.clock_skew_seconds"),
    value: str = typer.Argument(...),
):
    """Set a configuration value and save it to config.yaml."""
    global _config
    try:
        _config = set_config_value(key, value)
    except KeyError:
        console.print(f"[red]Unknown config key '{key}'[/red]")
        raise typer.Exit(1)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        console.print(f"[red]Invalid value for {key}[/red] ({fields})")
        raise typer.Exit(1)
    console.print(f"[green]Set[/green] {key} = {get_config_value(_config, key)}")


@config_app.command("get")
def config_get(key: str = typer.Argument(..., help="Dot path, e.g. auth.clock_skew_seconds")):
    """Print one configuration value."""
    value = get_config_value(_get_config(), key)
    if value is None:
        console.print(f"[red]Unknown config key '{key}'[/red]")
        raise typer.Exit(1)
    typer.echo(value)


if __name__ == "__main__":
    app()
