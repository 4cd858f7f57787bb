"""CLI for sealedlog.

Manages configuration in ~/.config/sealedlog/config.yaml (default address,
log server URL or local data directory) and keys in the local keystore.

Every command accepts ``--address``, ``--url`` and ``--path`` to override
the config file for one invocation.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import cyclopts

from .client import Messenger
from .config import GlobalConfig, get_global_config_path
from .errors import SealedlogError
from .transcript import TranscriptEntry

app = cyclopts.App(
    name="sealedlog",
    help="End-to-end encrypted messages over a public append-only log",
)

keys_app = cyclopts.App(name="keys", help="Key pair management and backups")
dm_app = cyclopts.App(name="dm", help="Direct messages")
group_app = cyclopts.App(name="group", help="Group messages and key distribution")
config_app = cyclopts.App(name="config", help="Configuration")

app.command(keys_app)
app.command(dm_app)
app.command(group_app)
app.command(config_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


@contextmanager
def _messenger(
    address: str | None,
    url: str | None,
    path: str | None,
) -> Iterator[Messenger]:
    """Open a Messenger from config plus flags; errors exit with status 1."""
    cfg = GlobalConfig.load()
    address = address or cfg.address
    if not address:
        _fail("No address given. Pass --address or run 'sealedlog config set address 0x...'")
    try:
        messenger = Messenger(address, cfg.to_options(url=url, path=path))
    except (SealedlogError, ValueError) as e:
        _fail(str(e))
    try:
        yield messenger
    except (SealedlogError, ValueError) as e:
        _fail(str(e))
    finally:
        messenger.close()


def _print_entries(entries: list[TranscriptEntry], json_output: bool) -> None:
    if json_output:
        for entry in entries:
            print(json.dumps(entry.to_dict()))
        return
    for entry in entries:
        who = "me" if entry.outgoing else entry.sender
        print(f"[{entry.timestamp}] {who}: {entry.text}")


def _follow(poller, json_output: bool) -> None:
    async def run():
        async for entries in poller.stream():
            _print_entries(entries, json_output)
            for message_id in poller.removed:
                if json_output:
                    print(json.dumps({"removed": message_id}))
                else:
                    print(f"(message {message_id} removed)")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


# --- Keys ---


@keys_app.command(name="init")
def keys_init(*, address: str | None = None, url: str | None = None, path: str | None = None):
    """Generate a key pair (if missing) and register the public key."""
    with _messenger(address, url, path) as m:
        key_pair = m.initialize()
        print(f"Address:    {m.address}")
        print(f"Public key: {key_pair.public_key_base64}")


@keys_app.command(name="show")
def keys_show(*, address: str | None = None, url: str | None = None, path: str | None = None):
    """Show the local public key and whether it is registered."""
    with _messenger(address, url, path) as m:
        key_pair = m.get_key_pair()
        if key_pair is None:
            _fail(f"No key pair for {m.address}. Run 'sealedlog keys init'.")
        registered = m.registry.fetch(m.address)
        print(f"Address:    {m.address}")
        print(f"Public key: {key_pair.public_key_base64}")
        print(f"Registered: {'yes' if registered == key_pair.public_key else 'no'}")
        groups = m.keystore.list_group_ids()
        print(f"Group keys: {len(groups)}")


@keys_app.command(name="export")
def keys_export(
    *,
    output: Path | None = None,
    passphrase: str | None = None,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Export keys as a backup bundle (to stdout unless --output is given).

    Args:
        output: File to write the bundle to
        passphrase: Seal the bundle with this passphrase
    """
    with _messenger(address, url, path) as m:
        bundle = m.export_keys(passphrase)
    if output is None:
        print(bundle)
        return
    output.write_text(bundle)
    output.chmod(0o600)
    print(f"Bundle written to {output}")


@keys_app.command(name="import")
def keys_import(
    bundle_file: Path,
    *,
    passphrase: str | None = None,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Restore keys from a backup bundle (overwrites existing keys)."""
    if not bundle_file.exists():
        _fail(f"{bundle_file} not found")
    bundle = bundle_file.read_text()
    with _messenger(address, url, path) as m:
        restored = m.import_keys(bundle, passphrase)
    print(f"Restored keys for {restored}")


@keys_app.command(name="delete")
def keys_delete(
    *,
    yes: bool = False,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Delete the local key pair. Messages encrypted to it become unreadable."""
    with _messenger(address, url, path) as m:
        if not yes:
            confirm = input(f"Delete the key pair for {m.address}? [y/N] ")
            if confirm.lower() != "y":
                print("Cancelled.")
                return
        if m.keystore.delete_key_pair(m.address):
            print(f"Deleted key pair for {m.address}")
        else:
            print(f"No key pair for {m.address}")


# --- Direct messages ---


@dm_app.command(name="send")
def dm_send(
    peer: str,
    text: str,
    *,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Send an encrypted direct message."""
    with _messenger(address, url, path) as m:
        sent = m.send_direct_message(peer, text)
        print(f"Sent {sent.message_id}")
        error = sent.self_copy.exception() if sent.self_copy else None
        if error is not None:
            print(f"Warning: your own copy was not saved: {error}", file=sys.stderr)


@dm_app.command(name="read")
def dm_read(
    peer: str,
    *,
    limit: int | None = None,
    follow: bool = False,
    json_output: bool = False,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Show the conversation with a peer.

    Args:
        peer: The other participant's address
        limit: Most recent messages to show
        follow: Keep polling for new messages (Ctrl+C to stop)
        json_output: Output entries as JSON lines
    """
    with _messenger(address, url, path) as m:
        if follow:
            _follow(m.conversation_poller(peer, limit), json_output)
        else:
            _print_entries(m.read_conversation(peer, limit), json_output)


@dm_app.command(name="clear")
def dm_clear(
    peer: str,
    *,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Soft-delete every message you sent in a conversation."""
    with _messenger(address, url, path) as m:
        result = m.clear_chat(peer)
    print(f"Deleted {len(result.succeeded)} records")
    if result.failed:
        print(f"Failed to delete {len(result.failed)} records:", file=sys.stderr)
        for record_id in result.failed:
            print(f"  {record_id}", file=sys.stderr)
        sys.exit(1)


# --- Groups ---


@group_app.command(name="create")
def group_create(*, address: str | None = None, url: str | None = None, path: str | None = None):
    """Create a group and print its id."""
    with _messenger(address, url, path) as m:
        info = m.create_group()
    print(info.group_id)


@group_app.command(name="share")
def group_share(
    group_id: str,
    member: str,
    *,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Share a group key with a member (published on the log)."""
    with _messenger(address, url, path) as m:
        share = m.share_group_key(group_id, member)
        if share.task is not None:
            share.task.result()
    print(f"Shared group {group_id} with {share.member}")


@group_app.command(name="join")
def group_join(
    group_id: str,
    distributor: str,
    *,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Fetch and store the group key a distributor shared with you."""
    with _messenger(address, url, path) as m:
        m.fetch_group_key(group_id, distributor)
    print(f"Joined group {group_id}")


@group_app.command(name="send")
def group_send(
    group_id: str,
    text: str,
    *,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Send an encrypted group message."""
    with _messenger(address, url, path) as m:
        sent = m.send_group_message(group_id, text)
    print(f"Sent {sent.message_id}")


@group_app.command(name="read")
def group_read(
    group_id: str,
    *members: str,
    limit: int | None = None,
    follow: bool = False,
    json_output: bool = False,
    address: str | None = None,
    url: str | None = None,
    path: str | None = None,
):
    """Show a group transcript merged from the given members.

    Args:
        group_id: Group id
        members: Member addresses to read from
        limit: Most recent messages to show
        follow: Keep polling for new messages (Ctrl+C to stop)
        json_output: Output entries as JSON lines
    """
    with _messenger(address, url, path) as m:
        if follow:
            _follow(m.group_poller(group_id, list(members), limit), json_output)
        else:
            _print_entries(m.read_group_transcript(group_id, list(members), limit), json_output)


# --- Config ---


@config_app.command(name="show")
def config_show():
    """Show current configuration."""
    try:
        cfg = GlobalConfig.load()
    except SealedlogError as e:
        _fail(str(e))
    print(f"Config file: {get_global_config_path()}")
    print_json(cfg.to_dict())


@config_app.command(name="set")
def config_set(key: str, value: str):
    """Set a configuration value (address, url, path, transcript_limit)."""
    try:
        cfg = GlobalConfig.load()
        cfg.set(key, value)
    except SealedlogError as e:
        _fail(str(e))
    cfg.save()
    print(f"Set {key}")


# --- Server ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    db: str | None = None,
):
    """Run the record log server.

    Args:
        host: Interface to bind
        port: Port to listen on
        reload: Reload on code changes (development)
        db: SQLite file for the log (default SEALEDLOG_DB or in-memory)
    """
    import os

    import uvicorn

    if db:
        os.environ["SEALEDLOG_DB"] = db
    elif not os.environ.get("SEALEDLOG_DB"):
        print("WARNING: No --db given. Records are kept in memory only.")

    uvicorn.run(
        "sealedlog.api:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
