"""CLI for courier.

Commands:
    courier serve    Run the HTTP/WebSocket server with uvicorn
    courier config   Print the resolved settings (secrets masked)
"""

from __future__ import annotations

import logging
import os
import sys

import cyclopts
import yaml

from .config import CourierConfigError, CourierSettings

app = cyclopts.App(
    name="courier",
    help="Real-time delivery core for direct messaging",
)


def _load_settings(config: str | None) -> CourierSettings:
    try:
        return CourierSettings.load(config)
    except CourierConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    config: str | None = None,
):
    """Run the courier server.

    Identity verification must be configured through one of:
    - COURIER_AUTH_MODULE: Python module exposing verify(credential)
    - COURIER_AUTH_URL: HTTP verification service

    Push notifications are sent only when COURIER_FCM_PROJECT and
    COURIER_FCM_TOKEN are set.
    """
    import uvicorn

    settings = _load_settings(config)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not settings.auth_module and not settings.auth_url:
        print("Error: No identity verifier configured.", file=sys.stderr)
        print("Options:", file=sys.stderr)
        print("  COURIER_AUTH_MODULE=...  Python module exposing verify()", file=sys.stderr)
        print("  COURIER_AUTH_URL=...     HTTP verification service", file=sys.stderr)
        sys.exit(1)

    if not settings.push_enabled:
        print("Note: push notifications disabled (FCM not configured)")

    if config:
        # The app builds its own settings on startup; point it at the same file
        os.environ["COURIER_CONFIG"] = config

    uvicorn.run(
        "courier.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command(name="config")
def show_config(*, path: str | None = None):
    """Print the resolved settings as YAML."""
    settings = _load_settings(path)
    print(yaml.safe_dump(settings.to_dict(), sort_keys=False), end="")


def main():
    app()


if __name__ == "__main__":
    main()
