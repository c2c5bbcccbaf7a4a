"""Entry point for `python -m portal_cli` and the `sitedesk` console script."""

from __future__ import annotations

from portal_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
