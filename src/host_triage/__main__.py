"""Entry point: python -m host_triage"""

import argparse
import dataclasses
import logging
from pathlib import Path

from host_triage.config import get_config, set_config
from host_triage.oplog import setup_logging
from host_triage.server import create_server

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the host triage MCP server."""
    parser = argparse.ArgumentParser(description="host-triage MCP server")
    parser.add_argument(
        "--db",
        help="Artifact database path (overrides HT_DB_PATH)",
    )
    args = parser.parse_args()

    config = get_config()
    if args.db:
        config = dataclasses.replace(config, db_path=Path(args.db))
        set_config(config)
    setup_logging(config)
    logger.info("Starting host-triage server")
    server = create_server(config)
    server.run()


if __name__ == "__main__":
    main()
