"""Entry point for `python -m g_bridge`."""

from g_bridge.cli.commands import app

if __name__ == "__main__":
    app()
