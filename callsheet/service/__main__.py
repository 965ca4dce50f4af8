"""
CLI interface for call sheet contact extraction.

Usage:
    python -m callsheet.service extract call_sheet.txt
    python -m callsheet.service extract call_sheet.txt --config configs/base.yaml --user alice
    python -m callsheet.service extract call_sheet.txt --pattern-only --output contacts.json
    python -m callsheet.service config --config configs/base.yaml
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def cmd_extract(args) -> int:
    """Extract contacts from a text file."""
    from ..extract.engine import create_engine
    from ..extract.schemas import ExtractionRequest
    from .config import load_config, validate_config

    config = load_config(args.config)
    for warning in validate_config(config):
        logger.warning(f"Config warning: {warning}")

    path = Path(args.file)
    if not path.exists():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1
    text = path.read_text(encoding="utf-8", errors="replace")

    engine = create_engine(config, pattern_only=args.pattern_only)
    request = ExtractionRequest(
        text=text,
        file_name_hint=path.name,
        max_chunks=args.max_chunks,
        chunk_size_chars=args.chunk_size,
        max_processing_time_ms=args.timeout_ms,
        role_preferences=args.roles or None,
    )
    result = engine.extract(request, user_id=args.user)

    payload = result.model_dump(mode="json")
    if not args.trace:
        payload["metadata"].pop("decisions", None)
    output = json.dumps(payload, indent=2)

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        logger.info(f"Wrote {len(result.contacts)} contacts to {args.output}")
    else:
        print(output)

    if not result.success:
        print(f"Extraction failed: {result.error}", file=sys.stderr)
        return 1

    meta = result.metadata
    print(f"\n{'='*60}", file=sys.stderr)
    print(f"Contacts:   {len(result.contacts)}", file=sys.stderr)
    print(f"Strategy:   {meta.strategy.value}", file=sys.stderr)
    print(f"Quality:    {meta.quality_score:.2f}", file=sys.stderr)
    print(f"Confidence: {meta.confidence:.2f}", file=sys.stderr)
    if meta.tokens_used is not None:
        print(f"Tokens:     {meta.tokens_used}", file=sys.stderr)
    if meta.fallback_reason:
        print(f"Fallback:   {meta.fallback_reason}", file=sys.stderr)
    print(f"Time:       {meta.processing_time_ms}ms", file=sys.stderr)
    return 0


def cmd_config(args) -> int:
    """Show the resolved configuration and any warnings."""
    import yaml

    from .config import load_config, validate_config

    config = load_config(args.config)
    print(yaml.dump(config.model_dump(), default_flow_style=False, sort_keys=False))
    print(f"Config hash: {config.config_hash()}")

    warnings = validate_config(config)
    if warnings:
        print("\nWarnings:")
        for warning in warnings:
            print(f"  - {warning}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m callsheet.service",
        description="Extract contacts from production call sheets",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    extract_parser = subparsers.add_parser("extract", help="Extract contacts from a text file")
    extract_parser.add_argument("file", help="UTF-8 text of the call sheet")
    extract_parser.add_argument("--config", help="YAML config file (default: built-in defaults)")
    extract_parser.add_argument("--user", help="User id for per-user admission limits")
    extract_parser.add_argument(
        "--pattern-only", action="store_true",
        help="Skip the AI provider and use pattern extraction only",
    )
    extract_parser.add_argument("--max-chunks", type=int, help="Override max chunks sent to the model")
    extract_parser.add_argument("--chunk-size", type=int, help="Override chunk size in characters")
    extract_parser.add_argument("--timeout-ms", type=int, help="Override max processing time")
    extract_parser.add_argument("--roles", nargs="*", help="Roles to list first")
    extract_parser.add_argument("--trace", action="store_true", help="Include the decision trace")
    extract_parser.add_argument("--output", "-o", help="Write JSON here instead of stdout")

    config_parser = subparsers.add_parser("config", help="Show resolved configuration")
    config_parser.add_argument("--config", help="YAML config file")

    args = parser.parse_args(argv)

    if args.command == "extract":
        return cmd_extract(args)
    elif args.command == "config":
        return cmd_config(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
