"""
council - threshold multisig coordination over an async messaging channel.

Coordinator commands:
  council collect-keys --anchor ID        discover members and their public keys
  council policy --anchor ID              derive the M-of-N spending policy
  council propose --tx spend.json         build, persist and distribute a proposal
  council collect --proposal ID           read signatures from the inbox
  council finish --proposal ID            assemble and broadcast once quorate
  council status --proposal ID            show collection progress
  council abandon --proposal ID           stop a proposal for good
  council stage FILE                      upload a payload to the staging service

Agent commands:
  council keys new --out FILE             generate a signing key
  council sign --key-file FILE            sign every proposal waiting in the inbox

Global options:
  --config PATH          YAML/JSON config file (COUNCIL_CONFIG)
  --rpc-url TEXT         JSON-RPC endpoint (COUNCIL_RPC_URL)
  --mailbox-dir PATH     messaging channel directory (COUNCIL_MAILBOX_DIR)
  --data-dir PATH        proposal store and claims (COUNCIL_DATA_DIR)
  --json                 machine-readable output
  --log-level TEXT       DEBUG, INFO, WARNING, ERROR

Exit codes: 0 ok, 1 error, 2 bad configuration, 3 quorum not reached yet.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from .. import logging as clog
from ..adapters.mailbox import MailboxChannel
from ..adapters.rpc import RpcBroadcaster, RpcClient, RpcMembershipResolver
from ..adapters.staging import HttpStager
from ..agent import SigningAgent
from ..channel import Inbox
from ..config import CouncilConfig, load_config
from ..coordinator import Coordinator
from ..errors import (ChannelError, CodecError, ConfigError, CouncilError, InsufficientSignatures,
                      NoMatchingInput, NotAParty, StagingError)
from ..keys import KeyPair
from ..policy import policy_from_public_keys
from ..store import ProposalStore
from ..tx.build import spend_from_description
from ..tx.model import Transaction
from ..types import KIND_PROPOSAL, ProposalState, SpendingPolicy
from ..utils.retry import Retrier
from ..version import __version__
from . import keys

EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_PENDING = 3

app = typer.Typer(
    name="council",
    help="Threshold multisig coordination over an async messaging channel",
    no_args_is_help=True,
    add_completion=False,
)
app.add_typer(keys.app, name="keys")


@dataclass
class CliState:
    config: CouncilConfig
    json_output: bool = False


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config file", envvar="COUNCIL_CONFIG"),
    rpc_url: Optional[str] = typer.Option(None, "--rpc-url", help="Override JSON-RPC endpoint"),
    mailbox_dir: Optional[Path] = typer.Option(None, "--mailbox-dir", help="Messaging channel directory"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Proposal store directory"),
    hrp: Optional[str] = typer.Option(None, "--hrp", help="Address prefix"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON instead of human-readable text"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """
    Council CLI: discover members, derive the M-of-N policy, propose spends,
    collect partial signatures and broadcast once quorate.

    Configuration is resolved in this order (highest to lowest priority):
      1. Command-line flags
      2. Environment variables (COUNCIL_RPC_URL, COUNCIL_MAILBOX_DIR, ...)
      3. Config file (--config or COUNCIL_CONFIG)
      4. Built-in defaults
    """
    try:
        cfg = load_config(
            config,
            rpc_url=rpc_url,
            mailbox_dir=mailbox_dir,
            data_dir=data_dir,
            hrp=hrp,
            log_level=log_level.upper() if log_level else None,
        )
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG)
    json_logs = None if cfg.log_format is None else cfg.log_format == "json"
    clog.configure(json=json_logs, level=cfg.log_level)
    ctx.obj = CliState(config=cfg, json_output=json_output)


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _pretty(obj: Any) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, default=str)


def _fail(ctx: typer.Context, e: Exception, code: int = EXIT_ERROR) -> NoReturn:
    if _state(ctx).json_output and isinstance(e, CouncilError):
        typer.echo(_pretty({"error": e.to_dict()}))
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(code)


def _stager(cfg: CouncilConfig) -> Optional[HttpStager]:
    if not cfg.network.staging_url:
        return None
    return HttpStager(cfg.network.staging_url, timeout=cfg.network.timeout)


def _coordinator(ctx: typer.Context) -> Coordinator:
    cfg = _state(ctx).config
    client = RpcClient(cfg.network.rpc_url, timeout=cfg.network.timeout)
    return Coordinator(
        cfg,
        resolver=RpcMembershipResolver(client),
        channel=MailboxChannel(cfg.channel.mailbox_dir),
        broadcaster=RpcBroadcaster(client),
        stager=_stager(cfg),
    )


def _print_policy(policy: SpendingPolicy) -> None:
    typer.echo(f"Policy:    {policy.threshold}-of-{policy.size}")
    typer.echo(f"Address:   {policy.address}")
    typer.echo(f"Script:    {policy.redeem_script_hex}")
    for i, pk in enumerate(policy.ordered_public_keys):
        typer.echo(f"  key[{i}]  {pk}")


def _deadline(timeout: Optional[float]) -> Optional[float]:
    return None if timeout is None else time.monotonic() + timeout


# ----------------------------------------------------------------------------
# Discovery & policy
# ----------------------------------------------------------------------------


@app.command("collect-keys")
def collect_keys(
    ctx: typer.Context,
    anchor: Optional[str] = typer.Option(None, "--anchor", help="Membership anchor id (default: COUNCIL_ANCHOR_ID)"),
) -> None:
    """List current members and their public keys."""
    coord = _coordinator(ctx)
    try:
        found = coord.discover(anchor)
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        typer.echo(_pretty(found.to_dict()))
        return
    table = Table(title=f"Members ({len(found.identities)} resolved)")
    table.add_column("Address")
    table.add_column("Token")
    table.add_column("Public key")
    for ident in sorted(found.identities, key=lambda i: i.address):
        table.add_row(ident.address, ident.membership_token, ident.public_key)
    for u in found.unresolved:
        table.add_row(u.address, u.membership_token, "[yellow]unresolved[/yellow]")
    Console().print(table)
    if found.unresolved:
        typer.secho(
            f"{len(found.unresolved)} holder(s) have not published a public key yet",
            fg=typer.colors.YELLOW,
            err=True,
        )


@app.command()
def policy(
    ctx: typer.Context,
    anchor: Optional[str] = typer.Option(None, "--anchor", help="Membership anchor id"),
    key: Optional[List[str]] = typer.Option(None, "--key", help="Public key (repeatable); skips discovery"),
) -> None:
    """Derive the spending policy for the current membership (or explicit keys)."""
    st = _state(ctx)
    try:
        if key:
            pol = policy_from_public_keys(key, hrp=st.config.network.hrp)
            unresolved: list = []
        else:
            pol, found = _coordinator(ctx).derive_policy(anchor)
            unresolved = [u.address for u in found.unresolved]
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if st.json_output:
        typer.echo(_pretty({**pol.to_dict(), "unresolved": unresolved}))
        return
    _print_policy(pol)
    if unresolved:
        typer.secho(f"Unresolved holders (not in policy): {', '.join(unresolved)}", fg=typer.colors.YELLOW, err=True)


# ----------------------------------------------------------------------------
# Proposals
# ----------------------------------------------------------------------------


@app.command()
def propose(
    ctx: typer.Context,
    tx_file: Path = typer.Option(..., "--tx", help="Spend description (utxos/outputs) or unsigned transaction JSON"),
    anchor: Optional[str] = typer.Option(None, "--anchor", help="Membership anchor id"),
) -> None:
    """
    Build and distribute a proposal to every member.

    Examples:
      council propose --tx spend.json --anchor council-root
    """
    try:
        desc = json.loads(tx_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot read {tx_file}: {e}", err=True)
        raise typer.Exit(EXIT_ERROR)
    if not isinstance(desc, dict):
        typer.echo(f"Error: {tx_file} must contain a JSON object", err=True)
        raise typer.Exit(EXIT_ERROR)

    if "inputs" in desc:
        def build(_policy: SpendingPolicy) -> Transaction:
            return Transaction.from_object(desc)
    else:
        def build(pol: SpendingPolicy) -> Transaction:
            return spend_from_description(pol, desc)

    try:
        proposal, report = _coordinator(ctx).propose(anchor_id=anchor, build=build)
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        typer.echo(_pretty({**report.to_dict(), "requiredSignatures": proposal.required_signatures}))
        return
    typer.secho(f"Proposal {proposal.id}", fg=typer.colors.GREEN)
    typer.echo(f"  requires {proposal.required_signatures} of {proposal.policy.size} signatures")
    typer.echo(f"  delivered to {len(report.delivered)} member(s)")
    if report.staged:
        typer.echo(f"  staged at {report.staged.content_address}")
    for member, err in sorted(report.failed.items()):
        typer.secho(f"  delivery to {member} failed: {err}", fg=typer.colors.RED, err=True)


@app.command()
def collect(
    ctx: typer.Context,
    proposal_id: str = typer.Option(..., "--proposal", "-p", help="Proposal id"),
    wait: bool = typer.Option(False, "--wait", help="Keep polling until quorum or --timeout"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up waiting after N seconds"),
) -> None:
    """Read signatures from the coordinator inbox."""
    coord = _coordinator(ctx)
    try:
        state = coord.collect(proposal_id, wait=wait, deadline=_deadline(timeout))
        info = coord.status(proposal_id)
    except KeyError:
        _fail(ctx, ValueError(f"unknown proposal {proposal_id}"))
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        typer.echo(_pretty(info))
    else:
        typer.echo(f"{proposal_id}: {state.value} ({len(info['signers'])} of {info['requiredSignatures']} signers)")
    if state is ProposalState.AWAITING_SIGNATURES:
        raise typer.Exit(EXIT_PENDING)


@app.command()
def finish(
    ctx: typer.Context,
    proposal_id: str = typer.Option(..., "--proposal", "-p", help="Proposal id"),
    wait: bool = typer.Option(False, "--wait", help="Poll the inbox until quorum first"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up waiting after N seconds"),
) -> None:
    """Assemble the quorate proposal and broadcast it."""
    coord = _coordinator(ctx)
    try:
        coord.collect(proposal_id, wait=wait, deadline=_deadline(timeout))
        broadcast_id = coord.finish(proposal_id)
    except KeyError:
        _fail(ctx, ValueError(f"unknown proposal {proposal_id}"))
    except InsufficientSignatures as e:
        _fail(ctx, e, EXIT_PENDING)
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        typer.echo(_pretty({"proposalId": proposal_id, "state": "submitted", "broadcastId": broadcast_id}))
    else:
        typer.secho(f"Submitted {proposal_id} as {broadcast_id}", fg=typer.colors.GREEN)


@app.command()
def status(
    ctx: typer.Context,
    proposal_id: Optional[str] = typer.Option(None, "--proposal", "-p", help="Proposal id (default: all)"),
) -> None:
    """Show proposal state and collected signers."""
    coord = _coordinator(ctx)
    ids = [proposal_id] if proposal_id else coord.store.list_proposals()
    try:
        infos = [coord.status(pid) for pid in ids]
    except KeyError:
        _fail(ctx, ValueError(f"unknown proposal {proposal_id}"))
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    if _state(ctx).json_output:
        typer.echo(_pretty(infos[0] if proposal_id else infos))
        return
    table = Table(title="Proposals")
    table.add_column("Proposal")
    table.add_column("State")
    table.add_column("Signers")
    table.add_column("Broadcast")
    for info in infos:
        table.add_row(
            info["proposalId"][:16],
            info["state"],
            f"{len(info['signers'])}/{info['requiredSignatures']}",
            info["broadcastId"] or info["reason"] or "",
        )
    Console().print(table)


@app.command()
def abandon(
    ctx: typer.Context,
    proposal_id: str = typer.Option(..., "--proposal", "-p", help="Proposal id"),
    reason: str = typer.Option("abandoned by operator", "--reason", help="Recorded with the proposal"),
) -> None:
    """Move a proposal to ABANDONED; late signatures are then ignored."""
    try:
        _coordinator(ctx).abandon(proposal_id, reason)
    except KeyError:
        _fail(ctx, ValueError(f"unknown proposal {proposal_id}"))
    except (CouncilError, ValueError) as e:
        _fail(ctx, e)
    typer.echo(f"Abandoned {proposal_id}: {reason}")


@app.command()
def stage(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to upload"),
) -> None:
    """Upload a payload to the staging service and print its content address."""
    stager = _stager(_state(ctx).config)
    if stager is None:
        typer.echo("Error: no staging service configured (COUNCIL_STAGING_URL)", err=True)
        raise typer.Exit(EXIT_CONFIG)
    try:
        cid = stager.stage(file.read_bytes(), filename=file.name)
    except CouncilError as e:
        _fail(ctx, e)
    finally:
        stager.close()
    typer.echo(_pretty({"contentAddress": cid}) if _state(ctx).json_output else cid)


# ----------------------------------------------------------------------------
# Agent
# ----------------------------------------------------------------------------


@app.command()
def sign(
    ctx: typer.Context,
    key_file: Path = typer.Option(..., "--key-file", "-k", help="Signing key file"),
) -> None:
    """
    Sign every proposal waiting in this key's inbox and return the
    signatures to each proposal's originator.
    """
    cfg = _state(ctx).config
    try:
        kp = KeyPair.load(key_file)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot load key file: {e}", err=True)
        raise typer.Exit(EXIT_ERROR)
    retry = Retrier(cfg.retry.policy())
    stager = _stager(cfg)
    channel = MailboxChannel(cfg.channel.mailbox_dir)
    agent = SigningAgent(kp, channel, hrp=cfg.network.hrp, retry=retry, fetcher=stager)
    store = ProposalStore(cfg.store_dir, hrp=cfg.network.hrp)
    inbox = Inbox(channel, agent.address, retry=retry, cursor=store.load_cursor(agent.address))

    results = []
    unsent = False
    with clog.scope(role="agent", signer=agent.address):
        try:
            envelopes = inbox.drain(kind=KIND_PROPOSAL)
        except CouncilError as e:
            _fail(ctx, e)
        for env in envelopes:
            entry = {"proposalId": env.proposal_ref, "from": env.sender}
            try:
                partials = agent.handle(env)
                entry.update(result="signed", inputs=[p.input_index for p in partials])
            except (NotAParty, NoMatchingInput) as e:
                entry.update(result="skipped", reason=e.message)
            except (CodecError, StagingError) as e:
                entry.update(result="error", reason=str(e))
            except ChannelError as e:
                entry.update(result="error", reason=str(e))
                unsent = True
            results.append(entry)
        # keep the cursor so the next run signs and sends again
        if not unsent:
            store.save_cursor(agent.address, inbox.cursor)

    if _state(ctx).json_output:
        typer.echo(_pretty({"signer": agent.address, "proposals": results}))
    else:
        if not results:
            typer.echo("No proposals waiting.")
        for r in results:
            line = f"{r['proposalId']}: {r['result']}"
            if r.get("reason"):
                line += f" ({r['reason']})"
            typer.echo(line)
    if unsent:
        raise typer.Exit(EXIT_ERROR)


@app.command()
def version() -> None:
    """Print the council version."""
    typer.echo(__version__)


def main() -> None:
    """Entry point for the council CLI."""
    app()


if __name__ == "__main__":
    main()
