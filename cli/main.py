#!/usr/bin/env python3
"""
VCS CLI - Command line interface for video containers.
"""

import argparse
import base64
import hashlib
import json
import os
import sys
from pathlib import Path
from typing import Optional

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from api.enums import ProcessingKind, TaskKind
from api.errors import truncate_error
from config import SERVICE_API_SECRET, SERVICE_API_URL

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VCS_API_TIMEOUT", "30"))

# Timeout for each upload chunk request (default 10 minutes)
UPLOAD_CHUNK_TIMEOUT = int(os.getenv("VCS_UPLOAD_CHUNK_TIMEOUT", "600"))

# Resumable upload chunks must be a multiple of 256 KiB
UPLOAD_CHUNK_SIZE = 32 * 256 * 1024

API_BASE = os.getenv("VCS_API_URL", SERVICE_API_URL).rstrip("/") + "/api"

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def key_value(value: str) -> tuple:
    """Argparse type converter for key=value pairs."""
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"expected key=value, got {value}")
    key, raw = value.split("=", 1)
    try:
        return key, json.loads(raw)
    except ValueError:
        return key, raw


def get_headers() -> dict:
    headers = {}
    if SERVICE_API_SECRET:
        headers["X-Service-Secret"] = SERVICE_API_SECRET
    return headers


def get_client() -> httpx.Client:
    return httpx.Client(base_url=API_BASE, headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, 500) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, 200)}")


def validate_file(file_path: Path) -> int:
    """
    Validate file exists and is readable.

    Returns:
        int: File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")
    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    return file_size


def file_md5(file_path: Path) -> str:
    """Base64 MD5 of a file, the form the primary store reports."""
    digest = hashlib.md5()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return base64.b64encode(digest.digest()).decode("ascii")


def print_container(container: dict) -> None:
    playlist = container.get("masterPlaylist", {})
    state, detail = next(iter(playlist.items())) if playlist else ("-", {})
    console.print(f"[bold]Container[/bold] {container['containerId']} (account {container['accountId']})")
    console.print(f"  Master playlist: {state} v{detail.get('version', '-')} {detail.get('filename', '')}".rstrip())
    processing = container.get("processing")
    if processing:
        console.print(f"  Processing: {', '.join(processing.keys())}")

    table = Table(title="Tracks")
    table.add_column("Kind")
    table.add_column("Dirname")
    table.add_column("Committed")
    table.add_column("Staging")
    for kind, field_name in (("video", "videoTracks"), ("audio", "audioTracks"), ("subtitle", "subtitleTracks")):
        for track in container.get(field_name, []):
            table.add_row(
                kind,
                track["trackDirname"],
                json.dumps(track.get("committed")) if track.get("committed") else "-",
                json.dumps(track.get("staging")) if track.get("staging") else "-",
            )
    console.print(table)

    for failure in container.get("lastProcessingFailures", []):
        console.print(f"  [red]Failure[/red] at {failure['timeMs']}: {', '.join(failure['reasons'])}")


def cmd_create(args):
    """Create a container."""
    data = {"accountId": args.account, "seasonId": args.season, "episodeId": args.episode}
    with get_client() as client:
        container = safe_json_response(client.post("/containers", json=data))
    console.print(f"Created container: {container['containerId']}")


def cmd_get(args):
    """Show a container."""
    with get_client() as client:
        container = safe_json_response(client.get(f"/containers/{args.container_id}"))
    if args.json:
        print(json.dumps(container, indent=2))
    else:
        print_container(container)


def cmd_delete(args):
    """Delete a container."""
    with get_client() as client:
        result = safe_json_response(client.delete(f"/containers/{args.container_id}"))
    if result["deleted"]:
        console.print(f"Deleted container {args.container_id}")
    else:
        console.print(f"Container {args.container_id} was already deleted")


def cmd_commit(args):
    """Commit staged track changes."""
    with get_client() as client:
        result = safe_json_response(client.post(f"/containers/{args.container_id}/commit"))
    if not result["success"]:
        raise CLIError(f"Commit rejected: {result['error']}")
    version = next(iter(result["container"]["masterPlaylist"].values()))["version"]
    console.print(f"Committed. Master playlist version {version} is being published.")


def upload_chunks(
    session_url: str,
    file_path: Path,
    file_size: int,
    byte_offset: int,
    progress: Optional[Progress] = None,
    task_id=None,
    client: Optional[httpx.Client] = None,
) -> None:
    """
    PUT the file to a resumable session from byte_offset to the end.

    The store answers 308 with a Range header for each partial chunk and
    2xx once the last byte has been received.
    """
    owns_client = client is None
    client = client or httpx.Client(timeout=UPLOAD_CHUNK_TIMEOUT)
    try:
        with open(file_path, "rb") as f:
            f.seek(byte_offset)
            offset = byte_offset
            while offset < file_size:
                data = f.read(UPLOAD_CHUNK_SIZE)
                end = offset + len(data) - 1
                response = client.put(
                    session_url,
                    content=data,
                    headers={"Content-Range": f"bytes {offset}-{end}/{file_size}"},
                )
                if response.status_code not in (200, 201, 308):
                    raise CLIError(f"Upload chunk failed ({response.status_code}): {truncate_error(response.text, 200)}")
                offset = end + 1
                if progress is not None:
                    progress.update(task_id, completed=offset)
    finally:
        if owns_client:
            client.close()


def cmd_upload(args):
    """Upload a media file or subtitle zip to a container."""
    file_path = Path(args.file)
    file_size = validate_file(file_path)
    kind = ProcessingKind.SUBTITLE if args.subtitle else ProcessingKind.MEDIA
    file_ext = file_path.suffix.lstrip(".").lower()

    with get_client() as client:
        start = safe_json_response(
            client.post(
                f"/containers/{args.container_id}/uploads/{kind.value}/start",
                json={"contentLength": file_size, "fileExt": file_ext, "md5": file_md5(file_path)},
            )
        )
        session_url = start["sessionUrl"]
        byte_offset = start["byteOffset"]
        if byte_offset:
            console.print(f"Resuming upload at byte {byte_offset}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task("Uploading...", total=file_size, completed=byte_offset)
            upload_chunks(session_url, file_path, file_size, byte_offset, progress, task_id)

        safe_json_response(
            client.post(
                f"/containers/{args.container_id}/uploads/{kind.value}/complete",
                json={"sessionUrl": session_url},
            )
        )
    console.print(f"Upload complete. {kind.value.capitalize()} formatting scheduled.")


def cmd_tasks(args):
    """Task ledger commands."""
    with get_client() as client:
        if args.tasks_command == "list":
            params = {"limit": args.limit} if args.limit else None
            result = safe_json_response(client.get(f"/tasks/{args.kind}", params=params))
            tasks = result.get("tasks", [])
            if result.get("stuckCount"):
                console.print(f"[yellow]{result['stuckCount']} task(s) past their stall time[/yellow]")
            if not tasks:
                console.print(f"No due {args.kind} tasks.")
                return
            table = Table(title=f"Due {args.kind} tasks")
            columns = list(tasks[0].keys())
            for column in columns:
                table.add_column(column)
            for task in tasks:
                table.add_row(*(str(task.get(c)) for c in columns))
            console.print(table)

        elif args.tasks_command == "process":
            key = dict(args.key)
            client.timeout = httpx.Timeout(None)
            safe_json_response(client.post(f"/tasks/{args.kind}/process", json=key))
            console.print(f"Processed {args.kind} task {key}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Video container service CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a video container")
    create_parser.add_argument("-a", "--account", required=True, help="Account ID")
    create_parser.add_argument("--season", help="Season ID")
    create_parser.add_argument("--episode", help="Episode ID")
    create_parser.set_defaults(func=cmd_create)

    get_parser = subparsers.add_parser("get", help="Show a video container")
    get_parser.add_argument("container_id", help="Container ID")
    get_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    get_parser.set_defaults(func=cmd_get)

    del_parser = subparsers.add_parser("delete", help="Delete a video container")
    del_parser.add_argument("container_id", help="Container ID")
    del_parser.set_defaults(func=cmd_delete)

    commit_parser = subparsers.add_parser("commit", help="Commit staged track changes")
    commit_parser.add_argument("container_id", help="Container ID")
    commit_parser.set_defaults(func=cmd_commit)

    upload_parser = subparsers.add_parser("upload", help="Upload a media file or subtitle zip")
    upload_parser.add_argument("container_id", help="Container ID")
    upload_parser.add_argument("file", help="File to upload")
    upload_parser.add_argument("--subtitle", action="store_true", help="Upload a subtitle zip")
    upload_parser.set_defaults(func=cmd_upload)

    tasks_parser = subparsers.add_parser("tasks", help="Inspect and drive the task ledger")
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", required=True)
    kinds = [k.value for k in TaskKind]

    tasks_list = tasks_subparsers.add_parser("list", help="List due tasks of one kind")
    tasks_list.add_argument("kind", choices=kinds)
    tasks_list.add_argument("-n", "--limit", type=positive_int, help="Maximum tasks to list")

    tasks_process = tasks_subparsers.add_parser("process", help="Process one task")
    tasks_process.add_argument("kind", choices=kinds)
    tasks_process.add_argument(
        "key",
        nargs="+",
        type=key_value,
        help="Task key fields as camelCase key=value (e.g. containerId=abc version=2)",
    )
    tasks_parser.set_defaults(func=cmd_tasks)

    args = parser.parse_args(argv)
    try:
        args.func(args)
    except httpx.ConnectError:
        print(f"Error: Could not connect to service API at {API_BASE}")
        print("Make sure the service is running.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Request timed out while connecting to {API_BASE}")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
