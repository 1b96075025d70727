#!/usr/bin/env python3
"""
Agentless Backup Proxy command line

Worker commands run inside background processes started by the proxy:

    initialize      Create a session (snapshot, mount, metadata)
    backup          Back up volumes of a ready session
    cleanup         Unmount, remove the snapshot and archive the session

Control commands start workers or report on them:

    start-session   Start session creation in the background, print the session id
    start-backup    Start a backup in the background, print the job id
    stop-session    Start session cleanup in the background
    cancel-backup   Kill a running backup and mark it cancelled
    session-status  Print the session status document as JSON
    backup-status   Print a backup status document as JSON

Usage:
    python -m agentless.cli start-session --host esx01 --user root \\
        --password-file /secure/esx.pass --vm-name web01 --asset-key web01
    python -m agentless.cli start-backup --agentless-session <id> \\
        --volume <guid> --destination-file /backups/web01.img --change-id-file /backups/web01.cid

Hypervisor and guest introspection backends are loaded from the
HYPERVISOR_CLIENT_FACTORY and GUEST_INTROSPECTION_FACTORY settings
("module:callable").
"""

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from agentless.core.config import Settings, settings
from agentless.core.encryption import read_secret_file
from agentless.core.logging_handler import set_session_context, setup_logging
from agentless.services.proxy import create_proxy_services
from agentless.services.proxy.session_id import SessionIdentity

logger = logging.getLogger("agentless.cli")


def load_factory(path: Optional[str], setting_name: str, required: bool = True) -> Optional[Callable[..., Any]]:
    """
    Load a "module:callable" factory.

    Raises:
        ValueError: If the setting is missing (when required) or malformed
    """
    if not path:
        if required:
            raise ValueError(f"{setting_name} is not configured")
        return None

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"{setting_name} must be of the form 'module:callable', got '{path}'")

    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def build_services(config: Settings):
    client_factory = load_factory(config.HYPERVISOR_CLIENT_FACTORY, "HYPERVISOR_CLIENT_FACTORY")
    introspection_factory = load_factory(
        config.GUEST_INTROSPECTION_FACTORY, "GUEST_INTROSPECTION_FACTORY", required=False
    )
    return create_proxy_services(client_factory, introspection_factory, config)


def read_plain_password(path: Path) -> str:
    return path.read_text().rstrip("\n")


# ----------------------------------------------------------------------
# Worker commands
# ----------------------------------------------------------------------

def cmd_initialize(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    password_file = Path(args.password_file)
    password = read_secret_file(password_file, settings.SECRET_KEY)
    password_file.unlink(missing_ok=True)

    lifecycle.create_session(
        args.host,
        args.user,
        password,
        args.vm_name,
        identity,
        force_nbd=args.force_nbd,
        full_disk_backup=args.full_disk,
    )
    return 0


def cmd_backup(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    volumes, destinations, token_files = _volume_arguments(args)
    orchestrator.take_backup(
        identity,
        args.job_id,
        volumes,
        destinations,
        token_files,
        force_diffmerge=args.diff_merge,
        force_full=args.full,
    )
    return 0


def cmd_cleanup(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    lifecycle.cleanup_session(identity)
    return 0


# ----------------------------------------------------------------------
# Control commands
# ----------------------------------------------------------------------

def cmd_start_session(args, lifecycle, orchestrator) -> int:
    password = read_plain_password(Path(args.password_file))
    identity = lifecycle.create_session_background(
        args.host,
        args.user,
        password,
        args.vm_name,
        args.asset_key,
        force_nbd=args.force_nbd,
        full_disk_backup=args.full_disk,
    )
    print(identity.to_name())
    return 0


def cmd_start_backup(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    volumes, destinations, token_files = _volume_arguments(args)
    job_id = orchestrator.take_backup_background(
        identity,
        volumes,
        destinations,
        token_files,
        force_diffmerge=args.diff_merge,
        force_full=args.full,
    )
    print(job_id)
    return 0


def cmd_stop_session(args, lifecycle, orchestrator) -> int:
    lifecycle.cleanup_session_background(SessionIdentity.from_name(args.agentless_session))
    return 0


def cmd_cancel_backup(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    lock = orchestrator.cancel_backup(identity, args.job_id)
    lock.release()
    return 0


def cmd_session_status(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    print(json.dumps(lifecycle.get_session_status(identity), indent=2, default=str))
    return 0


def cmd_backup_status(args, lifecycle, orchestrator) -> int:
    identity = SessionIdentity.from_name(args.agentless_session)
    print(json.dumps(orchestrator.get_backup_status(identity, args.job_id), indent=2, default=str))
    return 0


def _volume_arguments(args):
    volumes = args.volume or []
    destinations = args.destination_file or []
    token_files = args.change_id_file or []
    if not volumes:
        raise ValueError("At least one --volume is required")
    if not (len(volumes) == len(destinations) == len(token_files)):
        raise ValueError(
            "Every --volume needs exactly one --destination-file and one --change-id-file"
        )
    return volumes, destinations, token_files


def _add_session_argument(parser):
    parser.add_argument(
        "--agentless-session",
        required=True,
        help="Session id (<host uuid>_<vm ref>_<asset key>)"
    )


def _add_connection_arguments(parser, password_help: str):
    parser.add_argument("--host", required=True, help="ESXi host or vCenter address")
    parser.add_argument("--user", required=True, help="Hypervisor user name")
    parser.add_argument("--password-file", required=True, help=password_help)
    parser.add_argument("--vm-name", required=True, help="Name of the protected VM")
    parser.add_argument(
        "--force-nbd",
        action="store_true",
        help="Force NBD transport for disk access"
    )
    parser.add_argument(
        "--full-disk",
        action="store_true",
        help="Back up whole disks instead of guest volumes"
    )


def _add_volume_arguments(parser):
    parser.add_argument("--volume", action="append", help="Volume GUID (disk UUID for full disk backups)")
    parser.add_argument("--destination-file", action="append", help="Destination image of the volume")
    parser.add_argument("--change-id-file", action="append", help="Checkpoint token file of the volume")
    parser.add_argument(
        "--diff-merge",
        action="store_true",
        help="Force a full backup that compares against the existing image"
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Force a full backup"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentless",
        description="Agentless VM backup proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    initialize = subparsers.add_parser("initialize", help="Create a session (worker)")
    _add_connection_arguments(initialize, "Encrypted secret file written by start-session")
    _add_session_argument(initialize)
    initialize.set_defaults(handler=cmd_initialize)

    backup = subparsers.add_parser("backup", help="Back up volumes (worker)")
    _add_session_argument(backup)
    backup.add_argument("--job-id", required=True, help="Backup job id")
    _add_volume_arguments(backup)
    backup.set_defaults(handler=cmd_backup)

    cleanup = subparsers.add_parser("cleanup", help="Clean up a session (worker)")
    _add_session_argument(cleanup)
    cleanup.set_defaults(handler=cmd_cleanup)

    start_session = subparsers.add_parser("start-session", help="Start session creation in the background")
    _add_connection_arguments(start_session, "File containing the hypervisor password")
    start_session.add_argument("--asset-key", required=True, help="Asset key of the protected VM")
    start_session.set_defaults(handler=cmd_start_session)

    start_backup = subparsers.add_parser("start-backup", help="Start a backup in the background")
    _add_session_argument(start_backup)
    _add_volume_arguments(start_backup)
    start_backup.set_defaults(handler=cmd_start_backup)

    stop_session = subparsers.add_parser("stop-session", help="Start session cleanup in the background")
    _add_session_argument(stop_session)
    stop_session.set_defaults(handler=cmd_stop_session)

    cancel_backup = subparsers.add_parser("cancel-backup", help="Cancel a running backup")
    _add_session_argument(cancel_backup)
    cancel_backup.add_argument("--job-id", required=True, help="Backup job id")
    cancel_backup.set_defaults(handler=cmd_cancel_backup)

    session_status = subparsers.add_parser("session-status", help="Print the session status")
    _add_session_argument(session_status)
    session_status.set_defaults(handler=cmd_session_status)

    backup_status = subparsers.add_parser("backup-status", help="Print a backup status")
    _add_session_argument(backup_status)
    backup_status.add_argument("--job-id", required=True, help="Backup job id")
    backup_status.set_defaults(handler=cmd_backup_status)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=settings.LOG_LEVEL,
        log_dir=settings.LOG_DIR,
        max_bytes=settings.LOG_MAX_BYTES,
        backup_count=settings.LOG_BACKUP_COUNT,
    )

    session_id = getattr(args, "agentless_session", None)
    if session_id:
        try:
            set_session_context(session_id, SessionIdentity.from_name(session_id).asset_key)
        except ValueError:
            set_session_context(session_id)

    lifecycle = None
    try:
        lifecycle, orchestrator = build_services(settings)
        return args.handler(args, lifecycle, orchestrator)
    except Exception as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        if lifecycle is not None:
            lifecycle.release_all()


if __name__ == "__main__":
    sys.exit(main())
