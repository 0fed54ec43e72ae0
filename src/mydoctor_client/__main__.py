# src/mydoctor_client/__main__.py
"""
Command line access to the MyDoctor API using the stored session.

    python -m mydoctor_client login user@example.com
    python -m mydoctor_client whoami
    python -m mydoctor_client whoami --remote
    python -m mydoctor_client request GET /appointments
    python -m mydoctor_client request POST /favorites --json '{"doctorId": "42"}'
    python -m mydoctor_client logout
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.prompt import Prompt

from .auth_service import AuthService
from .client import ApiClient
from .error_handler import NotAuthenticatedError, RefreshFailedError
from .logging_config import configure_logging
from .utils.paths import get_default_root

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mydoctor_client", description="MyDoctor API client"
    )
    parser.add_argument("--base-url", type=str, default=None, help="Override API_BASE_URL.")
    parser.add_argument("--data-dir", type=str, default=None, help="Where session.json lives.")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Log in and store the session.")
    login.add_argument("email")
    login.add_argument("--password", default=None, help="Prompted for when omitted.")

    subparsers.add_parser("logout", help="Clear the stored session.")
    whoami = subparsers.add_parser("whoami", help="Show the stored user.")
    whoami.add_argument(
        "--remote", action="store_true", help="Fetch the user from the backend."
    )

    request = subparsers.add_parser("request", help="Send an authenticated API call.")
    request.add_argument("method")
    request.add_argument("path")
    request.add_argument("--json", dest="body", default=None, help="JSON request body.")

    return parser


async def _run(args: argparse.Namespace) -> int:
    async with ApiClient(base_url=args.base_url, data_dir=args.data_dir) as client:
        auth = AuthService(client)

        if args.command == "login":
            password = args.password or Prompt.ask("Password", password=True)
            await auth.login(args.email, password)
            console.print(f"[green]Logged in as {args.email}[/green]")
            return 0

        if args.command == "logout":
            await auth.logout()
            console.print("[green]Session cleared[/green]")
            return 0

        if args.command == "whoami":
            user = await auth.fetch_user() if args.remote else auth.current_user()
            if user is None:
                console.print("[yellow]Not logged in[/yellow]")
                return 1
            console.print_json(data=user)
            return 0

        body = json.loads(args.body) if args.body else None
        payload = await client.issue(args.method, args.path, json=body)
        if isinstance(payload, (dict, list)):
            console.print_json(data=payload)
        elif payload is not None:
            console.print(payload)
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv(get_default_root() / ".env")
    configure_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING, log_to_file=False
    )

    try:
        return asyncio.run(_run(args))
    except NotAuthenticatedError as e:
        console.print(f"[yellow]Not logged in: {e}[/yellow]")
    except RefreshFailedError as e:
        console.print(f"[red]Session expired: {e}. Please log in again.[/red]")
    except httpx.HTTPStatusError as e:
        console.print(f"[red]HTTP {e.response.status_code}: {e.response.text}[/red]")
    except httpx.RequestError as e:
        console.print(f"[red]Network error: {e!r}[/red]")
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --json body: {e}[/red]")
    return 1


if __name__ == "__main__":
    sys.exit(main())
