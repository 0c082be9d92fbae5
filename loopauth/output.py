"""Human-readable and JSON rendering for the loopauth CLI.

Token blobs are secrets. Everything printed here goes through
``summarize_token`` so only non-sensitive fields reach the terminal.
"""

import json
import sys
from typing import Any

import click

# Token fields that are safe to display
DISPLAY_FIELDS = ("token_type", "scope", "expires_at")

CREDENTIAL_HEADERS = ["Provider", "Refresh", "Expires"]


def summarize_token(provider: str, token: Any) -> dict[str, Any]:
    """Describe a stored token without exposing any secret in it."""
    summary: dict[str, Any] = {"provider": provider}
    if not isinstance(token, dict):
        return summary

    for name in DISPLAY_FIELDS:
        summary[name] = token.get(name)
    summary["has_refresh_token"] = bool(token.get("refresh_token"))
    return summary


def credential_rows(credentials: dict[str, Any]) -> list[list[str]]:
    """One table row per stored provider, sorted by provider id."""
    rows = []
    for provider in sorted(credentials):
        summary = summarize_token(provider, credentials[provider])
        rows.append([
            provider,
            "yes" if summary.get("has_refresh_token") else "no",
            summary.get("expires_at") or "-",
        ])
    return rows


def render_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    """Lay out rows in left-aligned columns; the second line is a rule."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    def line(cells: list[str]) -> str:
        return "  ".join(str(c).ljust(widths[i]) for i, c in enumerate(cells)).rstrip()

    header = line(headers)
    return [header, "-" * len(header), *(line(row) for row in rows)]


def format_json(data: Any, success: bool = True) -> str:
    """Wrap data in the CLI's JSON envelope."""
    envelope = {"success": True, "data": data} if success else data
    return json.dumps(envelope, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Error envelope: type, message and a hint for the user."""
    return format_json(
        {
            "success": False,
            "error": {
                "type": error_type or type(error).__name__,
                "message": str(error),
                "help": help_text or "",
            },
        },
        success=False,
    )


class OutputHandler:
    """Routes CLI results to stdout as text or JSON.

    Progress messages always go to stderr so ``--json`` output stays
    parseable while a login is waiting on the browser.
    """

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def status(self, message: str) -> None:
        """Progress line for humans; suppressed in JSON mode."""
        if not self.json_mode:
            click.secho(message, fg="cyan", err=True)

    def prompt_url(self, provider_name: str, url: str) -> None:
        """Show the authorization URL the user has to visit."""
        click.echo(f"Open this URL to authorize {provider_name}:\n\n  {url}\n", err=True)

    def success(self, data: Any, human_message: str | None = None) -> None:
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Report the error and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def credentials(self, credentials: dict[str, Any]) -> None:
        """Show stored providers as a table (a list of summaries in JSON mode)."""
        if self.json_mode:
            click.echo(format_json([summarize_token(p, t) for p, t in sorted(credentials.items())]))
            return

        if not credentials:
            click.echo("No stored credentials")
            return

        header, rule, *lines = render_table(CREDENTIAL_HEADERS, credential_rows(credentials))
        click.secho(header, bold=True)
        click.echo(rule)
        for line in lines:
            click.echo(line)
