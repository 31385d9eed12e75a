"""Main CLI entry point - every command is a thin call into the daemon."""

import base64
import json
from pathlib import Path
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from keyhold.core.configs import DaemonConfig, get_daemon_config, load_raw_config
from keyhold.daemon.client import DaemonClient, DaemonRequestError, is_daemon_enabled
from keyhold.errors import ErrorKind, KeyholdError

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="keyhold - local secrets daemon and registry client.",
)
daemon_app = typer.Typer(no_args_is_help=True, help="Manage the background daemon.")
credentials_app = typer.Typer(no_args_is_help=True, help="Read and write credentials.")
invites_app = typer.Typer(no_args_is_help=True, help="Manage organization invites.")
profile_app = typer.Typer(no_args_is_help=True, help="Manage your account profile.")
app.add_typer(daemon_app, name="daemon")
app.add_typer(credentials_app, name="credentials")
app.add_typer(invites_app, name="invites")
app.add_typer(profile_app, name="profile")

console = Console()
err_console = Console(stderr=True)

EXIT_CODES = {
    ErrorKind.TRANSPORT: 3,
    ErrorKind.PROTOCOL: 4,
    ErrorKind.VALIDATION: 5,
    ErrorKind.PRECONDITION: 6,
    ErrorKind.AGGREGATE: 7,
    ErrorKind.REFRESH: 8,
    ErrorKind.INTERNAL: 1,
}

ERROR_HEADLINES = {
    ErrorKind.TRANSPORT: "Could not reach the daemon or registry",
    ErrorKind.PROTOCOL: "The request or response was malformed",
    ErrorKind.VALIDATION: "A record failed validation and was not used",
    ErrorKind.PRECONDITION: "This action is not possible right now",
    ErrorKind.AGGREGATE: "Some updates failed",
    ErrorKind.REFRESH: "Changes were saved, but local state is stale",
    ErrorKind.INTERNAL: "Unexpected error",
}


# ============================================================================
# Shared Setup
# ============================================================================

def _load_config() -> DaemonConfig:
    try:
        return get_daemon_config(load_raw_config())
    except ValueError as e:
        err_console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(1)


def _client(auto_start: bool = True) -> DaemonClient:
    if not is_daemon_enabled():
        err_console.print("[red]The keyhold daemon requires Unix domain sockets.[/red]")
        raise typer.Exit(1)

    config = _load_config()
    client = DaemonClient(config.socket_path, config.pid_path, timeout=config.request_timeout + 5)
    if not client.ensure_daemon_running(auto_start=auto_start):
        err_console.print("[red]Daemon is not running.[/red] Start it with 'keyhold daemon start'.")
        raise typer.Exit(EXIT_CODES[ErrorKind.TRANSPORT])
    return client


def _call(client: DaemonClient, command: str, **params: Any) -> Any:
    """Call the daemon; map failures to a message and exit code."""
    try:
        return client.call(command, **params)
    except (DaemonRequestError, KeyholdError) as e:
        err_console.print(f"[red]{ERROR_HEADLINES[e.kind]}:[/red] {e}")
        raise typer.Exit(EXIT_CODES[e.kind])


# ============================================================================
# Daemon
# ============================================================================

@daemon_app.command("start")
def daemon_start(
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in the foreground"),
) -> None:
    """Start the daemon."""
    config = _load_config()
    if foreground:
        from keyhold.daemon.server import run_daemon
        run_daemon(config)
        return

    client = DaemonClient(config.socket_path, config.pid_path)
    if client.is_daemon_running():
        console.print("Daemon is already running.")
        return
    if not client.ensure_daemon_running():
        err_console.print(f"[red]Daemon failed to start.[/red] See {config.log_path}")
        raise typer.Exit(1)
    console.print("Daemon started.")


@daemon_app.command("stop")
def daemon_stop() -> None:
    """Stop the daemon (drops the session and all key material)."""
    client = _client(auto_start=False)
    _call(client, "shutdown")
    console.print("Daemon stopped.")


@daemon_app.command("status")
def daemon_status() -> None:
    """Show daemon health."""
    client = _client(auto_start=False)
    stats = _call(client, "health")
    table = Table(show_header=False)
    for key, value in stats.items():
        if key == "uptime_seconds":
            value = f"{value:.0f}s"
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


# ============================================================================
# Session
# ============================================================================

@app.command()
def login(
    token: str = typer.Option(..., envvar="KEYHOLD_TOKEN", prompt=True, hide_input=True, help="Session token"),
    key_file: Optional[Path] = typer.Option(None, "--key-file", exists=True, dir_okay=False, help="File with raw key material"),
    machine: bool = typer.Option(False, "--machine", help="Log in as a machine"),
) -> None:
    """Hand a session token (and key material) to the daemon."""
    params = {"token": token, "type": "machine" if machine else "user"}
    if key_file is not None:
        params["key"] = base64.b64encode(key_file.read_bytes()).decode("ascii")

    status = _call(_client(), "login", **params)
    who = status.get("username") or "machine"
    console.print(f"Logged in as [bold]{who}[/bold].")


@app.command()
def logout() -> None:
    """Drop the current session from the daemon."""
    _call(_client(auto_start=False), "logout")
    console.print("Logged out.")


@app.command()
def status() -> None:
    """Show the current session."""
    snapshot = _call(_client(), "session.status")
    if not snapshot.get("active"):
        console.print("Not logged in.")
        return
    console.print(f"{snapshot.get('name')} <{snapshot.get('email')}> ({snapshot.get('type')})")


@app.command()
def signup(
    username: str = typer.Option(..., prompt=True),
    name: str = typer.Option(..., prompt="Full name"),
    email: str = typer.Option(..., prompt=True),
    master_file: Path = typer.Option(..., "--master-file", exists=True, dir_okay=False,
                                     help="JSON file with the derived master key section"),
    invite_code: Optional[str] = typer.Option(None, "--invite-code"),
    org: Optional[str] = typer.Option(None, "--org", help="Org the invite code belongs to"),
) -> None:
    """Create a new account."""
    try:
        master = json.loads(master_file.read_text())
    except ValueError as e:
        err_console.print(f"[red]Invalid master key file:[/red] {e}")
        raise typer.Exit(1)

    user = _call(
        _client(), "signup",
        username=username, name=name, email=email, master=master,
        invite_code=invite_code, org_name=org,
    )
    console.print(f"Account [bold]{user['username']}[/bold] created. Check {user['email']} for a verification code.")


@app.command()
def verify(code: str = typer.Argument(..., help="Verification code from your email")) -> None:
    """Verify your email address."""
    _call(_client(), "users.verify", code=code)
    console.print("Email verified.")


# ============================================================================
# Profile
# ============================================================================

@profile_app.command("update")
def profile_update(
    name: Optional[str] = typer.Option(None, "--name", help="New full name"),
    email: Optional[str] = typer.Option(None, "--email", help="New email address"),
) -> None:
    """Update your name and/or email."""
    if name is None and email is None:
        err_console.print("Nothing to update; pass --name and/or --email.")
        raise typer.Exit(1)

    result = _call(_client(), "profile.update", name=name, email=email)
    if not result["changed"]:
        console.print("No changes made.")
        return
    console.print(f"Updated {', '.join(result['changed'])}.")
    if result["email_changed"]:
        console.print("You will need to re-verify your email address before taking further actions.")


# ============================================================================
# Credentials
# ============================================================================

@credentials_app.command("get")
def credentials_get(
    path: str = typer.Argument(..., help="Path expression, e.g. /org/project/dev/*/*/*"),
    show: bool = typer.Option(False, "--show", help="Print values instead of masking them"),
) -> None:
    """List credentials at a path."""
    creds = _call(_client(), "credentials.get", path=path)
    table = Table("name", "path", "value")
    for cred in creds:
        if cred["unset"]:
            value = "[dim]<unset>[/dim]"
        else:
            value = cred["value"] if show else "********"
        table.add_row(cred["name"], cred["pathexp"], value)
    console.print(table)


@credentials_app.command("set")
def credentials_set(
    pathexp: str = typer.Argument(...),
    name: str = typer.Argument(...),
    value: str = typer.Argument(...),
) -> None:
    """Set a credential."""
    _call(_client(), "credentials.set", pathexp=pathexp, name=name, value=value)
    console.print(f"Credential [bold]{name}[/bold] has been set.")


@credentials_app.command("unset")
def credentials_unset(
    pathexp: str = typer.Argument(...),
    name: str = typer.Argument(...),
) -> None:
    """Unset a credential."""
    _call(_client(), "credentials.unset", pathexp=pathexp, name=name)
    console.print(f"Credential [bold]{name}[/bold] has been unset.")


# ============================================================================
# Invites
# ============================================================================

@invites_app.command("list")
def invites_list(
    org_id: str = typer.Argument(...),
    state: List[str] = typer.Option([], "--state", help="Filter by state; repeatable"),
) -> None:
    """List invites for an org."""
    invites = _call(_client(), "invites.list", org_id=org_id, states=list(state))
    table = Table("id", "email", "state", "created")
    for invite in invites:
        table.add_row(invite["id"] or "", invite["email"], invite["state"], invite["created"])
    console.print(table)


@invites_app.command("send")
def invites_send(
    org_id: str = typer.Argument(...),
    email: str = typer.Argument(...),
    team: List[str] = typer.Option([], "--team", help="Team id to join on approval; repeatable"),
) -> None:
    """Invite someone to an org."""
    _call(_client(), "invites.send", org_id=org_id, email=email, team_ids=list(team))
    console.print(f"Invitation sent to {email}.")


@invites_app.command("accept")
def invites_accept(
    org: str = typer.Argument(...),
    email: str = typer.Argument(...),
    code: str = typer.Argument(...),
) -> None:
    """Accept an invite with the code from your email."""
    _call(_client(), "invites.accept", org=org, email=email, code=code)
    console.print("Invite accepted; an org admin will approve it.")


@invites_app.command("approve")
def invites_approve(invite_id: str = typer.Argument(...)) -> None:
    """Approve an accepted invite."""
    _call(_client(), "invites.approve", invite_id=invite_id)
    console.print("Invite approved.")


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
