from __future__ import annotations

import argparse
import contextlib
import importlib
import io
import os
import sys
from typing import Any

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape

from .. import __version__
from ..cli_shared import FABRIC_CLI_CONFIG, FABRIC_CLI_CONTEXT, FABRIC_CLI_QUIET
from ..cli_shared import GlobalOpts
from ..cli_shared import OpError
from ..cli_shared import UsageError
from ..cli_shared import _eprint
from ..cli_shared import _env_or_none
from ..cli_shared import _truthy
from ..extensions_commands import cmd_approvecc, cmd_commitcc, cmd_instantiatecc
from ..file_commands import cmd_file_createidx, cmd_file_upload
from ..ledgerconfig_commands import (
    cmd_ledgerconfig_delete,
    cmd_ledgerconfig_fileidxupdate,
    cmd_ledgerconfig_query,
    cmd_ledgerconfig_update,
)

PROG_NAME = "fabric-ext"

_ERROR_CONSOLE = Console(stderr=True)

# Typer may run on its own bundled copy of Click; take the classes from that one.
_CLICK_PACKAGE = typer.Exit.__module__.rpartition(".")[0]
_ClickContext = importlib.import_module(f"{_CLICK_PACKAGE}.core").Context
_ClickException = importlib.import_module(f"{_CLICK_PACKAGE}.exceptions").ClickException
_ClickUsageError = importlib.import_module(f"{_CLICK_PACKAGE}.exceptions").UsageError


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported process environment values.
    load_dotenv()


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {escape(msg)}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    try:
        with contextlib.redirect_stdout(buf):
            try:
                root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
            except (typer.Exit, _ClickException):
                pass
    except Exception:
        return ""
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: Any = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, _ClickContext):
        buf = io.StringIO()
        try:
            # Rich-formatted help is printed to stdout rather than returned.
            with contextlib.redirect_stdout(buf):
                rendered = ctx.get_help()
            help_text = str(rendered or buf.getvalue() or "").strip()
        except Exception:
            help_text = ""
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"{PROG_NAME} {__version__}")
        raise typer.Exit(code=0)


def _apply_global_env(args: argparse.Namespace) -> GlobalOpts:
    return GlobalOpts(
        config_path=str(args.config_path or _env_or_none(FABRIC_CLI_CONFIG) or ""),
        context=str(args.context or _env_or_none(FABRIC_CLI_CONTEXT) or ""),
        pretty=not bool(args.plain_json),
        quiet=bool(args.quiet) or _truthy(os.environ.get(FABRIC_CLI_QUIET)),
    )


app = typer.Typer(
    name=PROG_NAME,
    help="Fabric CLI extensions: chaincode lifecycle, Sidetree file index and ledger configuration.",
    no_args_is_help=True,
    add_completion=False,
)

extensions_app = typer.Typer(help="Chaincode lifecycle extensions", no_args_is_help=True)
file_app = typer.Typer(help="Upload files to DCAS and manage Sidetree file index documents", no_args_is_help=True)
ledgerconfig_app = typer.Typer(help="Query, update and delete ledger configuration", no_args_is_help=True)

app.add_typer(extensions_app, name="extensions")
app.add_typer(file_app, name="file")
app.add_typer(ledgerconfig_app, name="ledgerconfig")


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: str | None = typer.Option(
        None,
        "--config-path",
        help=f"Path to the CLI config file (default: ~/.fabric-cli/config.json; env override: {FABRIC_CLI_CONFIG})",
    ),
    context: str | None = typer.Option(
        None,
        "--context",
        help=f"Context to use instead of the config's currentContext (env override: {FABRIC_CLI_CONTEXT})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    ns = _namespace(config_path=config_path, context=context, plain_json=plain_json, quiet=quiet)
    ctx.obj = {"g": _apply_global_env(ns)}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return _apply_global_env(_namespace(config_path=None, context=None, plain_json=False, quiet=False))


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


_POLICY_HELP = "Endorsement policy, e.g. \"AND('Org1MSP.member','Org2MSP.member')\" (default: accept all)"
_COLLECTIONS_HELP = "Collections config (JSON array)"
_NO_PROMPT_HELP = "Do not prompt for confirmation"


@extensions_app.command("approvecc", help="Approve a chaincode definition for the current organization.")
def approvecc(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Chaincode name"),
    version: str | None = typer.Argument(None, help="Chaincode version"),
    package_id: str | None = typer.Argument(None, help="Installed chaincode package ID"),
    sequence: str | None = typer.Argument(None, help="Chaincode definition sequence number"),
    policy: str | None = typer.Option(None, "--policy", help=_POLICY_HELP),
    channel_config_policy: str | None = typer.Option(
        None, "--channel-config-policy", help="Channel config policy name used as the endorsement policy"
    ),
    collections_config: str | None = typer.Option(None, "--collections-config", help=_COLLECTIONS_HELP),
    init_required: bool = typer.Option(False, "--init-required", help="Chaincode requires Init to be invoked"),
    endorsement_plugin: str | None = typer.Option(None, "--endorsement-plugin", help="Endorsement plugin name"),
    validation_plugin: str | None = typer.Option(None, "--validation-plugin", help="Validation plugin name"),
) -> None:
    _invoke_from_locals(ctx, cmd_approvecc, locals())


@extensions_app.command("commitcc", help="Commit an approved chaincode definition to the channel.")
def commitcc(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Chaincode name"),
    version: str | None = typer.Argument(None, help="Chaincode version"),
    sequence: str | None = typer.Argument(None, help="Chaincode definition sequence number"),
    policy: str | None = typer.Option(None, "--policy", help=_POLICY_HELP),
    channel_config_policy: str | None = typer.Option(
        None, "--channel-config-policy", help="Channel config policy name used as the endorsement policy"
    ),
    collections_config: str | None = typer.Option(None, "--collections-config", help=_COLLECTIONS_HELP),
    init_required: bool = typer.Option(False, "--init-required", help="Chaincode requires Init to be invoked"),
    endorsement_plugin: str | None = typer.Option(None, "--endorsement-plugin", help="Endorsement plugin name"),
    validation_plugin: str | None = typer.Option(None, "--validation-plugin", help="Validation plugin name"),
    peer: list[str] | None = typer.Option(
        None, "--peer", help="Peer to send the commit to (repeatable; default: context peers)"
    ),
) -> None:
    _invoke_from_locals(ctx, cmd_commitcc, locals())


@extensions_app.command("instantiatecc", help="Instantiate a chaincode using the legacy lifecycle.")
def instantiatecc(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Chaincode name"),
    version: str | None = typer.Argument(None, help="Chaincode version"),
    policy: str | None = typer.Option(None, "--policy", help=_POLICY_HELP),
    collections_config: str | None = typer.Option(None, "--collections-config", help=_COLLECTIONS_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_instantiatecc, locals())


@file_app.command("createidx", help="Create a Sidetree file index document for a path.")
def file_createidx(
    ctx: typer.Context,
    url: str | None = typer.Option(None, "--url", help="Sidetree operations URL"),
    path: str | None = typer.Option(None, "--path", help="Base path of the file index, e.g. /content"),
    authtoken: str | None = typer.Option(None, "--authtoken", help="Bearer token for the Sidetree endpoint"),
    recoverykey: str | None = typer.Option(None, "--recoverykey", help="Recovery public key (PEM)"),
    recoverykeyfile: str | None = typer.Option(None, "--recoverykeyfile", help="File holding the recovery public key (PEM)"),
    updatekey: str | None = typer.Option(None, "--updatekey", help="Update public key (PEM)"),
    updatekeyfile: str | None = typer.Option(None, "--updatekeyfile", help="File holding the update public key (PEM)"),
    noprompt: bool = typer.Option(False, "--noprompt", help=_NO_PROMPT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_file_createidx, locals())


@file_app.command("upload", help="Upload files to DCAS and add them to a file index document.")
def file_upload(
    ctx: typer.Context,
    url: str | None = typer.Option(None, "--url", help="DCAS upload URL, e.g. https://host/content"),
    files: str | None = typer.Option(None, "--files", help="Semicolon-separated list of files to upload"),
    idxurl: str | None = typer.Option(None, "--idxurl", help="File index document URL (.../identifiers/<id>)"),
    authtoken: str | None = typer.Option(None, "--authtoken", help="Bearer token for the file index endpoint"),
    contentauthtoken: str | None = typer.Option(
        None, "--contentauthtoken", help="Bearer token for the DCAS endpoint (default: --authtoken)"
    ),
    signingkey: str | None = typer.Option(None, "--signingkey", help="Private key (PEM) signing the file index update"),
    signingkeyfile: str | None = typer.Option(None, "--signingkeyfile", help="File holding the signing private key (PEM)"),
    nextupdatekey: str | None = typer.Option(None, "--nextupdatekey", help="Next update public key (PEM)"),
    nextupdatekeyfile: str | None = typer.Option(
        None, "--nextupdatekeyfile", help="File holding the next update public key (PEM)"
    ),
    noprompt: bool = typer.Option(False, "--noprompt", help=_NO_PROMPT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_file_upload, locals())


_CRITERIA_HELP = (
    "Search criteria as JSON, e.g. "
    "'{\"MspID\":\"Org1MSP\",\"PeerID\":\"peer0.org1.com\",\"AppName\":\"app1\",\"AppVersion\":\"v1\"}'"
)


@ledgerconfig_app.command("query", help="Query an MSP's ledger configuration using search criteria.")
def ledgerconfig_query(
    ctx: typer.Context,
    criteria: str | None = typer.Option(None, "--criteria", help=_CRITERIA_HELP),
    mspid: str | None = typer.Option(None, "--mspid", help="MSP ID, e.g. Org1MSP"),
    peerid: str | None = typer.Option(None, "--peerid", help="Peer ID"),
    appname: str | None = typer.Option(None, "--appname", help="Application name"),
    appver: str | None = typer.Option(None, "--appver", help="Application version"),
    componentname: str | None = typer.Option(None, "--componentname", help="Component name"),
    componentver: str | None = typer.Option(None, "--componentver", help="Component version"),
) -> None:
    _invoke_from_locals(ctx, cmd_ledgerconfig_query, locals())


@ledgerconfig_app.command("update", help="Save ledger configuration (file:// references are inlined).")
def ledgerconfig_update(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Configuration as a JSON string"),
    configfile: str | None = typer.Option(None, "--configfile", help="Path to a JSON configuration file"),
    noprompt: bool = typer.Option(False, "--noprompt", help=_NO_PROMPT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_ledgerconfig_update, locals())


@ledgerconfig_app.command("delete", help="Delete an MSP's ledger configuration using search criteria.")
def ledgerconfig_delete(
    ctx: typer.Context,
    criteria: str | None = typer.Option(None, "--criteria", help=_CRITERIA_HELP),
    mspid: str | None = typer.Option(None, "--mspid", help="MSP ID, e.g. Org1MSP"),
    peerid: str | None = typer.Option(None, "--peerid", help="Peer ID"),
    appname: str | None = typer.Option(None, "--appname", help="Application name"),
    appver: str | None = typer.Option(None, "--appver", help="Application version"),
    componentname: str | None = typer.Option(None, "--componentname", help="Component name"),
    componentver: str | None = typer.Option(None, "--componentver", help="Component version"),
    noprompt: bool = typer.Option(False, "--noprompt", help=_NO_PROMPT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_ledgerconfig_delete, locals())


@ledgerconfig_app.command("fileidxupdate", help="Point the file handler of one or more peers at a file index document.")
def ledgerconfig_fileidxupdate(
    ctx: typer.Context,
    msp: str | None = typer.Option(None, "--msp", help="MSP ID, e.g. Org1MSP"),
    peers: str | None = typer.Option(None, "--peers", help="Semicolon-separated list of peers"),
    path: str | None = typer.Option(None, "--path", help="File handler base path, e.g. /content"),
    idxid: str | None = typer.Option(None, "--idxid", help="ID of the file index Sidetree document"),
    noprompt: bool = typer.Option(False, "--noprompt", help=_NO_PROMPT_HELP),
) -> None:
    _invoke_from_locals(ctx, cmd_ledgerconfig_fileidxupdate, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except _ClickException as e:
        if isinstance(e, _ClickUsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name=PROG_NAME, argv=argv)
