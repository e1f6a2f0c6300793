"""
council.cli.keys: signing key subcommands.

Implements:
  - council keys new     Generate a secp256k1 key file (mode 0600)
  - council keys show    Print the address and public key of a key file
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from ..keys import KeyPair

app = typer.Typer(help="Signing key management (new, show)")


def _describe(kp: KeyPair, hrp: str, path: Path) -> dict:
    return {"address": kp.address(hrp), "publicKey": kp.public_key, "keyFile": str(path)}


@app.command()
def new(
    ctx: typer.Context,
    out: Path = typer.Option(..., "--out", "-o", help="Where to write the key file"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing key file"),
) -> None:
    """
    Generate a new signing key.

    Examples:
      council keys new --out ~/.council/alice.key
    """
    hrp = ctx.obj.config.network.hrp
    path = out.expanduser()
    if path.exists() and not force:
        typer.echo(f"Error: {path} exists (use --force to overwrite)", err=True)
        raise typer.Exit(1)
    kp = KeyPair.generate()
    kp.save(path, hrp=hrp)
    info = _describe(kp, hrp, path)
    if ctx.obj.json_output:
        typer.echo(json.dumps(info, indent=2))
        return
    typer.secho(f"Key created: {path}", fg=typer.colors.GREEN)
    typer.echo(f"  address:    {info['address']}")
    typer.echo(f"  public key: {info['publicKey']}")


@app.command()
def show(
    ctx: typer.Context,
    key_file: Path = typer.Option(..., "--key-file", "-k", help="Key file to read"),
) -> None:
    """Print the address and public key for a key file."""
    hrp = ctx.obj.config.network.hrp
    try:
        kp = KeyPair.load(key_file)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot load key file: {e}", err=True)
        raise typer.Exit(1)
    info = _describe(kp, hrp, key_file)
    if ctx.obj.json_output:
        typer.echo(json.dumps(info, indent=2))
    else:
        typer.echo(f"{info['address']}  {info['publicKey']}")
