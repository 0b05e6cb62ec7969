"""Entry point for the relay.

Usage::

    python -m listrelay /etc/listrelay/list.toml
"""

from __future__ import annotations

import asyncio
import sys

from pydantic import ValidationError

from .daemon import ListDaemon
from .errors import PersistenceError
from .logging import setup_logging
from .models import DaemonStatus


def main() -> None:
    if len(sys.argv) != 2:
        print("Usage: python -m listrelay <config.toml>", file=sys.stderr)
        sys.exit(1)

    try:
        daemon = ListDaemon.from_config_file(sys.argv[1])
    except (PersistenceError, ValidationError) as exc:
        print(f"listrelay: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        json=daemon.config.log_json,
        level=daemon.config.log_level,
        list_address=daemon.config.mail.address,
    )
    asyncio.run(daemon.run())

    if daemon.status == DaemonStatus.FAILED:
        sys.exit(1)


if __name__ == "__main__":
    main()
