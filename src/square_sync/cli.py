#!/usr/bin/env python3
"""
Square Sync CLI

Operator tool for connecting tenants to Square and running syncs.

Usage:
    square-sync authorize-url --tenant t1          # Print the Square consent URL
    square-sync connect --tenant t1 --code CODE    # Exchange an authorization code
    square-sync sync --tenant t1 --type catalog    # Import the Square catalog
    square-sync status --tenant t1                 # Show connection and last sync
    square-sync test --tenant t1                   # Check API access
    square-sync disconnect --tenant t1             # Revoke and remove the connection
"""

import argparse
import logging
import os
import sys
from pathlib import Path

import structlog
from colorama import Fore, Style, init

from square_sync.client import client_factory_for
from square_sync.config import ConfigurationError, SquareSettings
from square_sync.models import SyncDirection, SyncType
from square_sync.oauth import ReauthorizationRequiredError
from square_sync.repository import (
    IntegrationNotFoundError,
    JsonFileIntegrationRepository,
    JsonFilePlatformStore,
)
from square_sync.sync_service import (
    SquareSyncService,
    SyncAlreadyRunningError,
    SyncProgress,
    SyncRunState,
    SyncStage,
)

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT
BIDIRECTIONAL = "both"


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def configure_logging(verbose: bool) -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.WARNING),
    )


def get_data_dir(args) -> Path:
    if args.data_dir:
        return Path(args.data_dir).expanduser()
    return Path(os.environ.get("SQUARE_SYNC_DATA_DIR", "~/.square-sync")).expanduser()


def build_service(args) -> SquareSyncService:
    settings = SquareSettings.from_env()
    data_dir = get_data_dir(args)
    repository = JsonFileIntegrationRepository(data_dir / "integrations.json")
    store = JsonFilePlatformStore(data_dir / "platform.json")
    return SquareSyncService(settings, repository, store)


def cmd_authorize_url(args, service: SquareSyncService):
    """Print the URL a merchant opens to grant access."""
    oauth = service.oauth
    url = oauth.generate_authorization_url(oauth.new_state(args.tenant), args.tenant)
    print(f"{BOLD}Open this URL to connect tenant {args.tenant}:{RESET}")
    print(url)
    return 0


def cmd_connect(args, service: SquareSyncService):
    integration = service.connect(args.tenant, args.code)
    print_success(f"Connected merchant {integration.merchant_id} ({integration.mode})")
    if integration.location_id:
        print_info(f"Location: {integration.location_id}")
    else:
        print_warning("Merchant has no locations; inventory sync will fail")
    return 0


def cmd_disconnect(args, service: SquareSyncService):
    if service.disconnect(args.tenant):
        print_success(f"Disconnected tenant {args.tenant}")
        return 0
    print_warning(f"Tenant {args.tenant} was not connected")
    return 1


def _print_summary(summary) -> None:
    label = f"{summary.sync_type.value} {summary.direction.value}"
    if summary.dry_run:
        label += " (dry run)"
    print(f"\n{BOLD}Sync finished: {label}: {summary.status.value}{RESET}")
    print(f"  Items synced: {summary.items_affected}")
    print(f"  Items failed: {summary.items_failed}")
    print(f"  Duration: {summary.duration_ms} ms")
    for error in summary.errors[:5]:
        print(f"    - {error}")


def _print_progress(progress: SyncProgress) -> None:
    if progress.stage is SyncStage.SYNCING and progress.total:
        print(f"\r  {progress.processed}/{progress.total} ({progress.failed} failed)", end="", flush=True)


def cmd_sync(args, service: SquareSyncService):
    sync_type = SyncType(args.type)
    print_info(f"Running {sync_type.value} sync ({args.direction}) for tenant {args.tenant}...")

    if args.direction == BIDIRECTIONAL:
        summaries = service.sync_bidirectional(
            args.tenant, sync_type, dry_run=args.dry_run, progress_callback=_print_progress
        )
    else:
        summaries = [service.trigger_sync(
            args.tenant,
            sync_type,
            SyncDirection(args.direction),
            dry_run=args.dry_run,
            progress_callback=_print_progress,
        )]

    for summary in summaries:
        _print_summary(summary)

    statuses = {summary.status for summary in summaries}
    if SyncRunState.FAILED in statuses:
        print_error(f"Sync failed ({summaries[-1].error_code})")
        return 1
    if SyncRunState.PARTIAL_FAILURE in statuses:
        codes = ", ".join(s.error_code for s in summaries if s.error_code)
        print_warning(f"Completed with failures ({codes})")
        return 2
    print_success("All items synced")
    return 0


def cmd_status(args, service: SquareSyncService):
    status = service.get_status(args.tenant)
    print(f"{BOLD}Square Status for {args.tenant}{RESET}\n")

    if status.merchant_id is None:
        print_warning("  Not connected")
        return 1

    if status.connected:
        print_success(f"  Connected to merchant {status.merchant_id} ({status.mode})")
    elif status.needs_reauthorization:
        print_error("  Needs reauthorization: run 'square-sync authorize-url' again")
    else:
        print_warning("  Integration disabled")

    print(f"  Location: {status.location_id or '(none)'}")
    if status.last_sync_at:
        print(f"  Last successful sync: {status.last_sync_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if status.last_sync:
        log = status.last_sync
        print(f"  Last run: {log.operation} {log.status.value}, {log.items_affected} items, {log.duration_ms} ms")
    if status.last_error:
        print_warning(f"  Last error: {status.last_error}")
    return 0


def cmd_test(args, service: SquareSyncService):
    """Check that the tenant's token works against the Square API."""
    token = service.oauth.get_valid_access_token(args.tenant)
    factory = client_factory_for(service.settings)

    with factory(access_token=token) as client:
        result = client.health_check()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Merchant: {result.get('business_name') or result.get('merchant_id')}")
        return 0
    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return 1


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Square catalog and inventory sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  square-sync authorize-url --tenant t1
  square-sync connect --tenant t1 --code sq0cgp-...
  square-sync sync --tenant t1 --type inventory --direction to_square
  square-sync sync --tenant t1 --direction both --dry-run
  square-sync status --tenant t1

Configuration comes from SQUARE_* environment variables
(SQUARE_APPLICATION_ID, SQUARE_APPLICATION_SECRET, SQUARE_OAUTH_REDIRECT_URI, ...).
        """,
    )
    parser.add_argument("--data-dir", help="Where integrations and platform data are stored")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def tenant_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--tenant", required=True, help="Tenant id")
        return sub

    tenant_command("authorize-url", "Print the Square authorization URL")
    connect_parser = tenant_command("connect", "Exchange an authorization code")
    connect_parser.add_argument("--code", required=True, help="Authorization code from the OAuth callback")
    tenant_command("disconnect", "Revoke the token and remove the integration")

    sync_parser = tenant_command("sync", "Run a sync")
    sync_parser.add_argument("--type", choices=[t.value for t in SyncType], default=SyncType.CATALOG.value)
    sync_parser.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection] + [BIDIRECTIONAL],
        default=SyncDirection.FROM_SQUARE.value,
    )
    sync_parser.add_argument("--dry-run", action="store_true", help="Fetch and count items without writing anything")

    tenant_command("status", "Show connection and sync status")
    tenant_command("test", "Test API access for a tenant")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    configure_logging(args.verbose)

    commands = {
        "authorize-url": cmd_authorize_url,
        "connect": cmd_connect,
        "disconnect": cmd_disconnect,
        "sync": cmd_sync,
        "status": cmd_status,
        "test": cmd_test,
    }

    try:
        service = build_service(args)
        return commands[args.command](args, service)
    except ConfigurationError as e:
        print_error(str(e))
        return 1
    except IntegrationNotFoundError:
        print_error(f"Tenant {args.tenant} is not connected. Run 'square-sync authorize-url' first.")
        return 1
    except ReauthorizationRequiredError as e:
        print_error(f"{e}. Run 'square-sync authorize-url' to reconnect.")
        return 1
    except SyncAlreadyRunningError as e:
        print_warning(str(e))
        return 1
    except Exception as e:
        print_error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
