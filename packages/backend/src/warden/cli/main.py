"""Warden CLI — sign in, inspect your principal, administer grants.

Usage:
    warden register alice@example.com                 # Create an account (prompts for password)
    warden login alice@example.com                    # Print an access token
    warden whoami                                     # Roles, permissions, emails
    warden grant <user-id> business.delete            # Direct grant
    warden revoke-grant <user-id> business.delete     # Remove a direct grant
    warden assign-role <user-id> moderator            # Role membership
    warden revoke-tokens <user-id>                    # Sign a user out everywhere
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from warden import __version__
from warden.auth.permissions import Permission, Role

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("WARDEN_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str] = None) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Warden API."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0, headers=headers)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _token_from_ctx(token: Optional[str]) -> str:
    """Resolve the bearer token from --token or WARDEN_TOKEN."""
    tok = token or os.environ.get("WARDEN_TOKEN")
    if not tok:
        click.secho(
            "Error: --token required (or set WARDEN_TOKEN env var)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return tok


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _check(r: httpx.Response) -> dict:
    """Exit with the API's error message on a non-2xx response."""
    if r.is_success:
        return r.json() if r.content else {}
    try:
        detail = r.json().get("detail", r.text)
    except ValueError:
        detail = r.text
    click.secho(f"Error ({r.status_code}): {detail}", fg="red", err=True)
    sys.exit(1)


token_option = click.option("--token", help="Bearer token (or set WARDEN_TOKEN)")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="warden")
def main():
    """Warden — identity, credentials and permissions."""


@main.command()
@click.argument("email")
@click.password_option()
def register(email: str, password: str):
    """Create an account for EMAIL and print its access token."""
    async def _impl():
        async with _client() as c:
            r = await c.post("/api/v1/auth/register", json={"email": email, "password": password})
            data = _check(r)
        click.secho(f"Registered user {data['user_id']}", fg="green", err=True)
        click.echo(data["access_token"])

    _run(_impl())


@main.command()
@click.argument("email")
@click.password_option(confirmation_prompt=False)
def login(email: str, password: str):
    """Sign in and print an access token (export it as WARDEN_TOKEN)."""
    async def _impl():
        async with _client() as c:
            r = await c.post("/api/v1/auth/login", json={"email": email, "password": password})
            data = _check(r)
        click.echo(data["access_token"])

    _run(_impl())


@main.command()
@token_option
def whoami(token: Optional[str]):
    """Show the current principal."""
    tok = _token_from_ctx(token)

    async def _impl():
        async with _client(tok) as c:
            me = _check(await c.get("/api/v1/auth/me"))
        click.secho(f"User {me['id']}", bold=True)
        click.echo(f"  Roles:       {', '.join(me['roles']) or '—'}")
        click.echo(f"  Permissions: {', '.join(me['permissions']) or '—'}")
        for e in me["emails"]:
            flags = []
            if e["is_primary"]:
                flags.append("primary")
            flags.append("verified" if e["verified"] else "unverified")
            click.echo(f"  {e['address']}  ({', '.join(flags)})")

    _run(_impl())


@main.command()
@click.argument("user_id")
@click.argument("permission", type=click.Choice([p.value for p in Permission]))
@token_option
def grant(user_id: str, permission: str, token: Optional[str]):
    """Grant PERMISSION directly to USER_ID."""
    tok = _token_from_ctx(token)

    async def _impl():
        async with _client(tok) as c:
            r = await c.post(
                f"/api/v1/admin/users/{user_id}/permissions",
                json={"permission": permission},
            )
            click.echo(_pretty_json(_check(r)))

    _run(_impl())


@main.command("revoke-grant")
@click.argument("user_id")
@click.argument("permission", type=click.Choice([p.value for p in Permission]))
@token_option
def revoke_grant(user_id: str, permission: str, token: Optional[str]):
    """Remove the direct grant of PERMISSION from USER_ID.

    Role-derived copies of the same permission are not affected.
    """
    tok = _token_from_ctx(token)

    async def _impl():
        async with _client(tok) as c:
            r = await c.delete(f"/api/v1/admin/users/{user_id}/permissions/{permission}")
            click.echo(_pretty_json(_check(r)))

    _run(_impl())


@main.command("assign-role")
@click.argument("user_id")
@click.argument("role", type=click.Choice([r.value for r in Role]))
@token_option
def assign_role(user_id: str, role: str, token: Optional[str]):
    """Give USER_ID the ROLE."""
    tok = _token_from_ctx(token)

    async def _impl():
        async with _client(tok) as c:
            r = await c.post(f"/api/v1/admin/users/{user_id}/roles", json={"role": role})
            click.echo(_pretty_json(_check(r)))

    _run(_impl())


@main.command("revoke-tokens")
@click.argument("user_id")
@token_option
def revoke_tokens(user_id: str, token: Optional[str]):
    """Invalidate every token issued to USER_ID so far."""
    tok = _token_from_ctx(token)

    async def _impl():
        async with _client(tok) as c:
            _check(await c.post(f"/api/v1/admin/users/{user_id}/revoke"))
        click.secho(f"Tokens for {user_id} revoked", fg="green")

    _run(_impl())


if __name__ == "__main__":
    main()
