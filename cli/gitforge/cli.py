"""
GitForge CLI.

Usage:
    gitforge web --port 3000
    gitforge serv key-1            (from authorized_keys, with SSH_ORIGINAL_COMMAND set)
    gitforge hook update REF OLD NEW  (from the update hook of every repository)
    gitforge admin create-user alice --email alice@example.com --password secret
"""

import asyncio
import json
import logging
import os
import sys
from uuid import uuid4

import click
import httpx
from rich.console import Console
from rich.table import Table

from app.config import Settings, configure_logging, load_settings
from app.context import AppContext
from app.database import init_db, make_engine, make_session_factory
from app.errors import GitForgeError, NotFoundError
from app.models import AccessMode, PublicKey
from app.services.auth import create_user, get_user_by_name
from app.services.events import INTERNAL_SIGNATURE_HEADER, DomainEvent, encode_events, sign_body
from app.services.repository import create_repository
from app.services.transport import (
    ACCESS_DENIED_MESSAGE,
    VERB_LFS_AUTHENTICATE,
    authorize_key,
    check_mirror_push,
    git_env,
    lfs_authenticate_envelope,
    parse_repo_path,
    parse_ssh_command,
    process_push,
    record_update_task,
    required_mode,
    resolve_repository,
)

logger = logging.getLogger("gitforge.cli")

console = Console()
err_console = Console(stderr=True)


class ServError(Exception):
    """Refusal reported to the SSH client."""


def fail(user_message: str, log_message: str | None = None) -> None:
    """Print a message for the git client, log the detail, and exit 1."""
    err_console.print(f"GitForge: {user_message}", markup=False, highlight=False)
    if log_message:
        logger.error(log_message)
    sys.exit(1)


def parse_key_id(value: str) -> int:
    try:
        return int(value.removeprefix("key-"))
    except ValueError:
        raise ServError(f"Invalid key ID: {value}")


def forward_events(settings: Settings, events: list[DomainEvent], transport: httpx.BaseTransport | None = None) -> None:
    """Hand events to the web process so its workers pick them up."""
    if not events:
        return
    body = encode_events(events)
    headers = {
        "Content-Type": "application/json",
        INTERNAL_SIGNATURE_HEADER: sign_body(settings.internal_token, body),
    }
    try:
        with httpx.Client(timeout=10.0, transport=transport) as client:
            response = client.post(f"{settings.local_url}api/internal/events", content=body, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Forwarding {len(events)} event(s) to {settings.local_url} failed: {e}")


async def run_serv(settings: Settings, key_arg: str, original_command: str, ctx: AppContext | None = None) -> int:
    """
    Authorize one SSH command and run it attached to this process's stdio.

    Raises ServError with the message for the client when the command is
    refused. Returns git's exit code otherwise.
    """
    own_ctx = ctx is None
    ctx = ctx or AppContext.from_settings(settings)
    try:
        key_id = parse_key_id(key_arg)
        try:
            command = parse_ssh_command(original_command)
            target = parse_repo_path(command.repo_path)
            mode = required_mode(command.verb, command.lfs_operation)
        except GitForgeError as e:
            raise ServError(e.message)

        async with ctx.session_factory() as session:
            key = await session.get(PublicKey, key_id)
            if key is None:
                raise ServError(f"Invalid key ID: {key_arg}")
            try:
                owner, repo = await resolve_repository(session, target)
                check_mirror_push(repo, mode)
                actor = await authorize_key(session, key, repo, mode, target.unit)
            except GitForgeError as e:
                logger.info(f"Refused {command.verb} {command.repo_path} for key {key_id}: {e.message}")
                raise ServError(e.message)
            # Deploy keys act as the repository owner
            pusher = actor or owner

            if command.verb == VERB_LFS_AUTHENTICATE:
                envelope = lfs_authenticate_envelope(settings, owner.name, repo.name, repo.id, command.lfs_operation)
                await session.commit()
                click.echo(json.dumps(envelope))
                return 0

            if target.is_wiki:
                repo_path = ctx.repo_manager.wiki_path(owner.name, repo.name)
            else:
                repo_path = ctx.repo_manager.repo_path(owner.name, repo.name)
            if not repo_path.is_dir():
                raise ServError(ACCESS_DENIED_MESSAGE)

            uuid = str(uuid4()) if mode >= AccessMode.WRITE and not target.is_wiki else ""
            env = git_env(settings, pusher, owner, repo, uuid, target.is_wiki)
            pusher_id, owner_name, repo_name = pusher.id, owner.name, repo.name
            # Key usage timestamps; the update hook writes from another process
            await session.commit()

        verb = command.verb.removeprefix("git-")
        code = await ctx.process_manager.run_attached(
            ["git", verb, str(repo_path)],
            env=env,
            description=f"SSH {command.verb}: {owner_name}/{repo_name}",
        )
        if code != 0:
            logger.error(f"git {verb} {owner_name}/{repo_name} exited with {code}")
            return code

        if uuid:
            try:
                events = await process_push(ctx, uuid, pusher_id, owner_name, repo_name)
            except NotFoundError as e:
                logger.error(f"Push pipeline for {owner_name}/{repo_name}: {e}")
                return 0
            await asyncio.to_thread(forward_events, settings, events)
        return 0
    finally:
        if own_ctx:
            await ctx.close()


async def run_hook_update(settings: Settings, uuid: str, ref_name: str, old_commit_id: str, new_commit_id: str) -> None:
    engine = make_engine(settings.database_url)
    try:
        async with make_session_factory(engine)() as session:
            await record_update_task(session, uuid, ref_name, old_commit_id, new_commit_id)
    finally:
        await engine.dispose()


@click.group()
@click.version_option(package_name="gitforge")
def cli():
    """GitForge - self-hosted git service."""
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", help="Address to bind")
@click.option("--port", "-p", default=3000, type=int, help="Port to listen on")
def web(host: str, port: int):
    """Run the HTTP server."""
    import uvicorn

    console.print(f"Starting GitForge on [blue]http://{host}:{port}[/blue]")
    uvicorn.run("app.main:run", factory=True, host=host, port=port)


@cli.command()
@click.argument("key_id")
def serv(key_id: str):
    """
    Handle one SSH session (called from authorized_keys).

    The command the client asked for is read from SSH_ORIGINAL_COMMAND.
    stdout and stdin belong to the git client, so everything is logged to
    serv.log.
    """
    settings = load_settings()
    configure_logging(settings, "serv.log")

    original_command = os.environ.get("SSH_ORIGINAL_COMMAND", "")
    if not original_command:
        click.echo(f"Hi there, you've successfully authenticated, but {settings.app_name} does not provide shell access.")
        return
    if settings.ssh_disabled:
        fail("SSH access is disabled", "SSH command refused: SSH is disabled")

    try:
        code = asyncio.run(run_serv(settings, key_id, original_command))
    except ServError as e:
        fail(str(e), f"serv {key_id}: {e}")
    except GitForgeError as e:
        fail("Internal error", f"serv {key_id}: {e}")
    sys.exit(code)


@cli.group()
def hook():
    """Git hooks installed into every repository."""
    pass


@hook.command("update")
@click.argument("ref_name")
@click.argument("old_commit_id")
@click.argument("new_commit_id")
def hook_update(ref_name: str, old_commit_id: str, new_commit_id: str):
    """Record one ref update for the push that set UUID in the environment."""
    uuid = os.environ.get("UUID", "")
    if not uuid:
        # Internal pushes (pull request head refs, wikis) are not tracked
        return

    settings = load_settings()
    configure_logging(settings, "hooks.log")
    if not ref_name:
        fail("First argument 'refName' is empty", "hook update called without a ref")
    try:
        asyncio.run(run_hook_update(settings, uuid, ref_name, old_commit_id, new_commit_id))
    except GitForgeError as e:
        fail("Internal error", f"recording update task {uuid} {ref_name}: {e}")
    logger.debug(f"Recorded {ref_name} {old_commit_id}..{new_commit_id} for {uuid}")


@cli.group()
def admin():
    """Bootstrap helpers for operators."""
    pass


@admin.command("create-user")
@click.argument("name")
@click.option("--email", "-e", required=True, help="Email address")
@click.option("--password", "-p", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--admin", "is_admin", is_flag=True, help="Make the user a site administrator")
def create_user_command(name: str, email: str, password: str, is_admin: bool):
    """Create a local user account."""
    settings = load_settings()

    async def _create():
        engine = make_engine(settings.database_url)
        try:
            await init_db(engine)
            async with make_session_factory(engine)() as session:
                return await create_user(session, name, email, password, is_admin)
        finally:
            await engine.dispose()

    try:
        user = asyncio.run(_create())
    except GitForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    console.print(f"Created user [green]{user.name}[/green] (id {user.id})" + (" as admin" if is_admin else ""))


@admin.command("create-repo")
@click.argument("owner")
@click.argument("name")
@click.option("--description", "-d", default="", help="Repository description")
@click.option("--private", is_flag=True, help="Make the repository private")
@click.option("--default-branch", "-b", default="master", help="Default branch")
def create_repo_command(owner: str, name: str, description: str, private: bool, default_branch: str):
    """Create an empty repository owned by OWNER."""
    settings = load_settings()

    async def _create():
        ctx = AppContext.from_settings(settings)
        try:
            await init_db(ctx.engine)
            async with ctx.session_factory() as session:
                owner_user = await get_user_by_name(session, owner)
                repo = await create_repository(
                    ctx,
                    session,
                    owner_user,
                    name,
                    description=description,
                    is_private=private,
                    default_branch=default_branch,
                )
                return repo.clone_url(settings.app_url, owner_user.name)
        finally:
            await ctx.close()

    try:
        clone_url = asyncio.run(_create())
    except GitForgeError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    table = Table(show_header=False)
    table.add_row("Repository", f"{owner}/{name}")
    table.add_row("Clone URL", clone_url)
    console.print(table)


if __name__ == "__main__":
    cli()
