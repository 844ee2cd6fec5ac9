"""
Command-line interface — vault setup, identities and permission management.

    vibe-agent create | import | identities | add-identity | use | claim
    vibe-agent permissions | grant | revoke | cloud-url | reset

The password is read from VIBE_PASSWORD when set, otherwise prompted for.

Depends on: agent, config, errors, storage
"""

import argparse
import asyncio
import getpass
import os
import sys
from typing import Optional, Sequence

from vibeagent import __version__
from vibeagent.agent import AgentContext
from vibeagent.config import AGENT_HOME, AGENT_NAMESPACE, STORAGE_KEY_ACTIVE_DID
from vibeagent.errors import VibeAgentError
from vibeagent.models import PermissionSetting
from vibeagent.storage import JsonFileStorage

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vibe-agent")
    parser.add_argument("--version", action="version", version=f"vibe-agent {__version__}")
    parser.add_argument("--home", default=AGENT_HOME, help="State directory (default: ~/.vibeagent)")
    parser.add_argument("--namespace", default=AGENT_NAMESPACE, help="Storage namespace")

    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a new vault and print its recovery phrase")
    create.add_argument("--label", default=None, help="Label for the first identity")

    imp = sub.add_parser("import", help="Create a vault from an existing recovery phrase")
    imp.add_argument("--label", default=None, help="Label for the first identity")

    sub.add_parser("identities", help="List identities (works while locked)")

    add = sub.add_parser("add-identity", help="Derive a new identity")
    add.add_argument("label")
    add.add_argument("--picture", default=None, help="Profile picture URL")

    use = sub.add_parser("use", help="Set the active identity")
    use.add_argument("did")

    sub.add_parser("claim", help="Claim a backend session (JWT) for the active identity")

    perms = sub.add_parser("permissions", help="Show granted permissions")
    perms.add_argument("--did", default=None, help="Identity (default: active)")

    grant = sub.add_parser("grant", help="Set one scope for an origin")
    grant.add_argument("origin")
    grant.add_argument("scope", help="e.g. read:notes")
    grant.add_argument("setting", choices=[s.value for s in PermissionSetting])
    grant.add_argument("--did", default=None, help="Identity (default: active)")

    revoke = sub.add_parser("revoke", help="Revoke everything an origin was granted")
    revoke.add_argument("origin")
    revoke.add_argument("--did", default=None, help="Identity (default: active)")

    url = sub.add_parser("cloud-url", help="Show or set the backend URL")
    url.add_argument("url", nargs="?", default=None)

    reset = sub.add_parser("reset", help="Delete the vault and all agent state")
    reset.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    return parser


def _password(confirm: bool = False) -> str:
    env = os.environ.get("VIBE_PASSWORD")
    if env:
        return env
    password = getpass.getpass("Vault password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        raise VibeAgentError("Passwords do not match.")
    return password


def _resolve_did(ctx: AgentContext, did: Optional[str]) -> str:
    resolved = did or ctx.storage.get(STORAGE_KEY_ACTIVE_DID)
    if not resolved:
        raise VibeAgentError("No identity given and no active identity set.")
    return resolved


async def _run(args, ctx: AgentContext, out) -> int:
    if args.command == "create":
        phrase = await ctx.create_vault(_password(confirm=True), args.label)
        ctx.mark_setup_complete()
        print("Vault created. Write down your recovery phrase:\n", file=out)
        print(phrase, file=out)
        return EXIT_SUCCESS

    if args.command == "import":
        phrase = getpass.getpass("Recovery phrase: ")
        identities = await ctx.import_phrase(phrase, _password(confirm=True), args.label)
        ctx.mark_setup_complete()
        print(f"Vault imported. Active identity: {identities[0].did}", file=out)
        return EXIT_SUCCESS

    if args.command == "identities":
        active = ctx.storage.get(STORAGE_KEY_ACTIVE_DID)
        for identity in ctx.get_identities():
            marker = "*" if identity.did == active else " "
            print(f"{marker} {identity.did}  {identity.label}", file=out)
        return EXIT_SUCCESS

    if args.command == "add-identity":
        await ctx.unlock(_password())
        identity = ctx.create_identity(args.label, args.picture)
        print(identity.did, file=out)
        return EXIT_SUCCESS

    if args.command == "use":
        await ctx.unlock(_password())
        await ctx.set_active_identity(args.did)
        print(f"Active identity: {args.did}", file=out)
        return EXIT_SUCCESS

    if args.command == "claim":
        await ctx.unlock(_password())
        active = ctx.get_active_identity()
        if active is None:
            raise VibeAgentError("No active identity.")
        await ctx.claim_identity(active.did)
        print(f"Backend session stored for {active.did}", file=out)
        return EXIT_SUCCESS

    if args.command == "permissions":
        did = _resolve_did(ctx, args.did)
        matrix = ctx.permissions.get_all_for_identity(did)
        if not matrix:
            print("No permissions granted.", file=out)
        for origin in sorted(matrix):
            print(origin, file=out)
            for scope, setting in sorted(matrix[origin].items()):
                print(f"    {scope:<32} {setting.value}", file=out)
        return EXIT_SUCCESS

    if args.command == "grant":
        did = _resolve_did(ctx, args.did)
        ctx.permissions.set_permission(did, args.origin, args.scope, args.setting)
        print(f"{args.origin}: {args.scope} = {args.setting}", file=out)
        return EXIT_SUCCESS

    if args.command == "revoke":
        did = _resolve_did(ctx, args.did)
        if ctx.permissions.revoke_origin_permissions(did, args.origin):
            print(f"Revoked all permissions for {args.origin}", file=out)
        else:
            print(f"{args.origin} had no permissions", file=out)
        return EXIT_SUCCESS

    if args.command == "cloud-url":
        if args.url:
            ctx.set_cloud_url(args.url)
        print(ctx.cloud_url, file=out)
        return EXIT_SUCCESS

    if args.command == "reset":
        if not args.yes and input("Delete the vault and all agent state? [y/N] ").strip().lower() != "y":
            print("Aborted.", file=out)
            return EXIT_SUCCESS
        await ctx.reset()
        print("Agent state deleted.", file=out)
        return EXIT_SUCCESS

    return EXIT_USAGE


def main(argv: Optional[Sequence[str]] = None, *, stdout=sys.stdout, stderr=sys.stderr) -> int:
    args = _build_parser().parse_args(argv)
    ctx = AgentContext(storage=JsonFileStorage.for_namespace(args.namespace, home=args.home))
    try:
        return asyncio.run(_run(args, ctx, stdout))
    except VibeAgentError as e:
        print(f"error: {e}", file=stderr)
        return EXIT_ERROR
    except (KeyboardInterrupt, EOFError):
        print("\naborted", file=stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
