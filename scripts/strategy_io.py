#!/usr/bin/env python3
"""Export and import strategies as JSON documents.

Usage:
    python scripts/strategy_io.py export STRATEGY_ID [-o FILE]
    python scripts/strategy_io.py import FILE --owner OWNER_ID [--name NAME]

Export writes to stdout when no output file is given.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from scripts.helpers.logging_setup import setup_script_logging
from src.data.database.dependencies import session_scope
from src.strategy_tree.errors import StrategyTreeError
from src.strategy_tree.service import StrategyTreeService

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Export/import block strategies")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Export a strategy to JSON")
    export_parser.add_argument("strategy_id", type=int, help="Strategy to export")
    export_parser.add_argument("--output", "-o", type=Path, default=None, help="Output file (default: stdout)")

    import_parser = subparsers.add_parser("import", help="Create a strategy from a JSON document")
    import_parser.add_argument("file", type=Path, help="Document to import")
    import_parser.add_argument("--owner", required=True, help="Owner id of the new strategy")
    import_parser.add_argument("--name", default=None, help="Override the document's strategy name")

    return parser.parse_args(argv)


def export_strategy(service: StrategyTreeService, strategy_id: int, output: Path | None) -> None:
    document = service.export_strategy(strategy_id)
    text = json.dumps(document, indent=2)
    if output is None:
        print(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text + "\n")
    logger.info("Wrote strategy %s to %s", strategy_id, output)


def import_strategy(service: StrategyTreeService, path: Path, owner_id: str, name: str | None) -> None:
    with open(path) as f:
        document = json.load(f)
    tree = service.import_strategy(owner_id, document, name=name)
    logger.info("Imported %s as strategy id=%s (%s)", path, tree.id, tree.name)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_script_logging(args.verbose, __name__)

    service = StrategyTreeService(session_scope)
    try:
        if args.command == "export":
            export_strategy(service, args.strategy_id, args.output)
        else:
            import_strategy(service, args.file, args.owner, args.name)
    except StrategyTreeError as e:
        logger.error("%s failed: %s %s", args.command, e.message, e.detail)
        return 1
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Cannot read %s: %s", getattr(args, "file", None), e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
