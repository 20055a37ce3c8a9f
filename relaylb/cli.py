from __future__ import annotations

import argparse
import copy
import os
import uuid

import anyio
import uvicorn
import uvicorn.config

from relaylb.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `relaylb.*` logger namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["relaylb"] = {
        "handlers": ["default"],
        "level": "DEBUG" if settings.log_level_debug else "INFO",
        "propagate": False,
    }
    return config


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the relay-lb API server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "2456")))

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("leader-status", help="Print the stored leader record and whether it is still alive.")

    add_account = subparsers.add_parser("add-account", help="Store an account and its credentials for a provider.")
    add_account.add_argument("provider")
    add_account.add_argument("--id", dest="account_id", default=None, help="Account id (default: random).")
    add_account.add_argument("--name", dest="display_name", default=None)
    add_account.add_argument("--access-token", required=True)
    add_account.add_argument("--refresh-token", default=None)
    add_account.add_argument("--expires-in", type=float, default=None, help="Seconds until the access token expires.")
    add_account.add_argument("--default", dest="make_default", action="store_true")

    remove_account = subparsers.add_parser(
        "remove-account",
        help="Delete an account together with its credentials and sticky model assignments.",
    )
    remove_account.add_argument("account_id")

    default_token = subparsers.add_parser(
        "set-default-token",
        help="Store the implicit credential used when a provider has no accounts.",
    )
    default_token.add_argument("provider")
    default_token.add_argument("--access-token", required=True)
    default_token.add_argument("--refresh-token", default=None)
    default_token.add_argument("--expires-in", type=float, default=None)

    routing = subparsers.add_parser("set-routing", help="Change load balancing or the active account for a provider.")
    routing.add_argument("provider")
    toggle = routing.add_mutually_exclusive_group()
    toggle.add_argument("--load-balance", dest="load_balance", action="store_const", const=True, default=None)
    toggle.add_argument("--no-load-balance", dest="load_balance", action="store_const", const=False)
    routing.add_argument("--active-account", default=None)

    return parser.parse_args(argv)


async def _leader_status(settings: Settings) -> None:
    from relaylb.core.coordination.election import LeaderRecord
    from relaylb.core.coordination.store import leader_key
    from relaylb.core.utils.time import wall_clock
    from relaylb.db.session import close_db, init_db
    from relaylb.modules.shared_state.repository import SqlSharedStateStore

    try:
        await init_db()
        record = LeaderRecord.from_dict(await SqlSharedStateStore().get(leader_key(settings.election_domain)))
        if record is None:
            print(f"domain={settings.election_domain} leader=none")
            return
        now = wall_clock()
        alive = record.is_alive(now, settings.leader_timeout_seconds)
        print(
            f"domain={settings.election_domain} leader={record.instance_id} alive={str(alive).lower()} "
            f"heartbeat_age_s={now - record.last_heartbeat:.1f}"
        )
    finally:
        await close_db()


async def _store_credential(
    credential_id: str,
    access_token: str,
    refresh_token: str | None,
    expires_in: float | None,
) -> None:
    from relaylb.core.utils.time import utc_after
    from relaylb.dependencies import router_repo_context
    from relaylb.modules.accounts.credentials import Credential

    expires_at = utc_after(expires_in) if expires_in is not None else None
    async with router_repo_context() as repos:
        await repos.credentials.update(
            credential_id,
            Credential(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at),
        )


async def _add_account(args: argparse.Namespace) -> None:
    from relaylb.core.utils.time import utcnow
    from relaylb.db.models import Account, AccountStatus
    from relaylb.db.session import close_db, init_db
    from relaylb.dependencies import router_repo_context

    account_id = args.account_id or str(uuid.uuid4())
    try:
        await init_db()
        async with router_repo_context() as repos:
            await repos.accounts.upsert(
                Account(
                    id=account_id,
                    provider=args.provider,
                    display_name=args.display_name or account_id,
                    status=AccountStatus.ACTIVE,
                    is_default=False,
                    created_at=utcnow(),
                )
            )
            if args.make_default:
                await repos.accounts.set_default(args.provider, account_id)
        await _store_credential(account_id, args.access_token, args.refresh_token, args.expires_in)
        print(f"account_id={account_id} provider={args.provider}")
    finally:
        await close_db()


async def _set_default_token(args: argparse.Namespace) -> None:
    from relaylb.db.session import close_db, init_db
    from relaylb.modules.accounts.credentials import default_credential_id

    try:
        await init_db()
        credential_id = default_credential_id(args.provider)
        await _store_credential(credential_id, args.access_token, args.refresh_token, args.expires_in)
        print(f"credential_id={credential_id}")
    finally:
        await close_db()


async def _remove_account(args: argparse.Namespace) -> None:
    from relaylb.db.session import close_db, init_db
    from relaylb.dependencies import router_repo_context

    try:
        await init_db()
        async with router_repo_context() as repos:
            account = await repos.accounts.get_account(args.account_id)
            if account is None:
                raise SystemExit(f"Unknown account: {args.account_id}")
            provider = account.provider
            cleared = await repos.routing.clear_assignments_for_account(args.account_id)
            routing = await repos.routing.get_routing(provider)
            if routing is not None and routing.active_account_id == args.account_id:
                await repos.routing.set_active_account(provider, None)
            await repos.credentials.delete(args.account_id)
            await repos.accounts.delete(args.account_id)
        print(f"account_id={args.account_id} provider={provider} assignments_cleared={cleared}")
    finally:
        await close_db()


async def _set_routing(args: argparse.Namespace) -> None:
    from relaylb.db.session import close_db, init_db
    from relaylb.dependencies import router_repo_context

    try:
        await init_db()
        async with router_repo_context() as repos:
            if args.load_balance is not None:
                await repos.routing.set_load_balance(args.provider, args.load_balance)
            if args.active_account is not None:
                await repos.routing.set_active_account(args.provider, args.active_account)
            routing = await repos.routing.get_routing(args.provider)
            load_balance = routing.load_balance_enabled if routing is not None else None
            active = routing.active_account_id if routing is not None else None
        print(f"provider={args.provider} load_balance={load_balance} active_account={active}")
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()

    if args.command is None:
        uvicorn.run(
            "relaylb.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings),
        )
        return

    if args.command == "leader-status":
        anyio.run(_leader_status, settings)
        return

    if args.command == "add-account":
        anyio.run(_add_account, args)
        return

    if args.command == "remove-account":
        anyio.run(_remove_account, args)
        return

    if args.command == "set-default-token":
        anyio.run(_set_default_token, args)
        return

    if args.command == "set-routing":
        anyio.run(_set_routing, args)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
