"""CLI entry point for loopauth."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, NoReturn

import click
import httpx

from . import __version__
from .config import AuthConfig, ConfigError, load_config
from .oauth.callback import CANCEL_PATH
from .oauth.flow import AuthURLPrompt, LoginError, LoginSession, OAuthProvider
from .oauth.store import CredentialStore
from .output import OutputHandler, summarize_token

# Logger for CLI
logger = logging.getLogger("loopauth")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """loopauth - Browser OAuth login with a loopback redirect."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> AuthConfig | NoReturn:
    """Get config from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_config(ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, help_text="Check the LOOPAUTH_* environment variables and your .env file.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def get_store(config: AuthConfig) -> CredentialStore:
    """Build the credential store described by the config."""
    return CredentialStore(
        data_dir=config.data_dir,
        lock_retry_attempts=config.lock_retry_attempts,
        lock_retry_delay=config.lock_retry_delay,
    )


@main.command()
@click.argument("provider")
@click.option("--client-id", envvar="LOOPAUTH_CLIENT_ID", required=True, help="OAuth client id")
@click.option("--authorize-url", envvar="LOOPAUTH_AUTHORIZE_URL", required=True, help="Authorization endpoint")
@click.option("--token-url", envvar="LOOPAUTH_TOKEN_URL", required=True, help="Token endpoint")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.option("--no-browser", is_flag=True, help="Print the URL instead of opening a browser")
@click.pass_context
def login(
    ctx: click.Context,
    provider: str,
    client_id: str,
    authorize_url: str,
    token_url: str,
    scopes: tuple[str, ...],
    no_browser: bool,
) -> None:
    """Log in to PROVIDER through the system browser."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    oauth_provider = OAuthProvider(
        name=provider,
        client_id=client_id,
        authorize_url=authorize_url,
        token_url=token_url,
        scopes=list(scopes),
    )

    def show_auth_url(prompt: AuthURLPrompt) -> None:
        output.prompt_url(prompt.provider_name, prompt.auth_url)

    async def run() -> dict[str, Any]:
        async with LoginSession(config, store=get_store(config), on_status=output.status) as session:
            return await session.login(
                oauth_provider,
                on_auth_url=show_auth_url,
                open_browser=config.open_browser and not no_browser,
            )

    try:
        token = asyncio.run(run())
    except LoginError as e:
        output.error(e, help_text=f"Run 'loopauth login {provider}' to try again.")
        return

    output.success(summarize_token(provider, token), human_message=f"Logged in to {provider}")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show which providers have stored credentials."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    store = get_store(config)

    output.credentials(store.read() or {})


@main.command()
@click.argument("provider")
@click.pass_context
def logout(ctx: click.Context, provider: str) -> None:
    """Forget the stored credentials for PROVIDER."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    store = get_store(config)

    if store.get(provider) is None:
        output.error(
            LookupError(f"Not logged in to {provider}"),
            error_type="NotLoggedIn",
            help_text=f"No credentials are stored for '{provider}'.",
        )
        return

    if not store.remove(provider):
        output.error(
            RuntimeError(f"Could not update {store.path}"),
            help_text="Another loopauth process may be writing the store; try again.",
        )
        return

    output.success({"provider": provider, "removed": True}, human_message=f"Logged out of {provider}")


@main.command()
@click.pass_context
def cancel(ctx: click.Context) -> None:
    """Cancel a login waiting in another process."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    url = f"http://localhost:{config.port}{CANCEL_PATH}"
    logger.debug(f"Requesting cancellation at {url}")
    try:
        response = httpx.get(url, timeout=5.0, trust_env=False)
    except httpx.RequestError as e:
        output.error(e, help_text=f"No login appears to be waiting on port {config.port}.")
        return

    # The route answers 200 whether or not a login was waiting
    output.success(
        {"sent": True, "status": response.status_code, "port": config.port},
        human_message=f"Sent cancel request to port {config.port}",
    )


@main.command()
@click.pass_context
def path(ctx: click.Context) -> None:
    """Print the credential store location."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)
    store = get_store(config)
    output.success({"path": str(store.path)}, human_message=str(store.path))


if __name__ == "__main__":
    main()
