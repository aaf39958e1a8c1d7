"""
Engram CLI - inspect, verify and convert .engram containers.

Usage:
    python -m engram [--json] <command>

    python -m engram info <file>
    python -m engram verify <file> [--passphrase PASS]
    python -m engram tree <file> [--passphrase PASS] [--max-depth N]
    python -m engram migrate-v2 <v2.json> <out> [--encrypt] [--passphrase PASS]

Global Options:
    --json              Output as JSON for automation/scripting
    --log-level LEVEL   Override ENGRAM_LOG_LEVEL

The passphrase falls back to ENGRAM_PASSPHRASE when not given.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import codec
from .config import settings
from .errors import EngramError
from .logging_config import configure_logging
from .migrate import migrate_v2
from .models import EngramHeader, MemoryNode
from .store import MemoryStore


def safe_print(text: str, file=None) -> None:
    """Print text safely, handling Unicode encoding errors on Windows."""
    output = file or sys.stdout
    try:
        print(text, file=output)
    except UnicodeEncodeError:
        encoding = output.encoding or 'utf-8'
        safe_text = text.encode(encoding, errors='replace').decode(encoding, errors='replace')
        print(safe_text, file=output)


def _format_ms(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def _preview(node: MemoryNode, width: int = 60) -> str:
    data = node.content.data
    if isinstance(data, str):
        text = " ".join(data.split())
        return text if len(text) <= width else text[:width - 3] + "..."
    return f"<{len(data)} bytes>"


# =============================================================================
# Commands
# =============================================================================

def header_summary(header: EngramHeader) -> Dict[str, Any]:
    """Plain summary of a container header."""
    return {
        "version": f"{header.version[0]}.{header.version[1]}",
        "created": _format_ms(header.created),
        "modified": _format_ms(header.modified),
        "encrypted": header.security.encrypted,
        "algorithm": header.security.algorithm,
        "integrity": header.security.integrity.hex() if header.security.integrity else None,
        "source": header.metadata.source,
        "description": header.metadata.description,
        "embedding_model": header.schema.embedding_model,
        "embedding_dims": header.schema.embedding_dims,
        "stats": header.stats.to_dict(),
    }


def info(path: str) -> Dict[str, Any]:
    """Header only; encrypted files need no passphrase."""
    data = Path(path).read_bytes()
    result = header_summary(codec.read_header(data))
    result["file"] = path
    result["size_bytes"] = len(data)
    return result


def verify(path: str, passphrase: Optional[str]) -> Dict[str, Any]:
    """Full read: digest, decryption and payload decoding."""
    file = codec.read_file(path, passphrase=passphrase)
    return {
        "file": path,
        "valid": True,
        "encrypted": file.header.security.encrypted,
        "nodes": len(file.nodes),
        "entities": len(file.entities),
        "links": len(file.links),
        "deltas": len(file.deltas) if file.deltas is not None else 0,
    }


def tree(path: str, passphrase: Optional[str], max_depth: Optional[int] = None) -> List[Dict[str, Any]]:
    """Nodes in depth-first order, children in stored order."""
    store = MemoryStore(nodes=codec.read_file(path, passphrase=passphrase).nodes)
    rows = []
    stack = list(reversed(store.roots()))
    while stack:
        node = stack.pop()
        if max_depth is not None and node.depth > max_depth:
            continue
        rows.append({
            "id": node.id,
            "depth": node.depth,
            "type": node.content.type.value,
            "decay_tier": node.temporal.decay_tier.value,
            "preview": _preview(node),
        })
        stack.extend(reversed(store.children(node.id)))
    return rows


def migrate(source: str, target: str, encrypt: bool, passphrase: Optional[str]) -> Dict[str, Any]:
    with open(source, "r", encoding="utf-8") as fh:
        v2_data = json.load(fh)
    file = migrate_v2(v2_data)
    written = codec.write_file(target, file, encrypt=encrypt, passphrase=passphrase)
    return {
        "source": source,
        "output": str(written),
        "nodes": len(file.nodes),
        "encrypted": encrypt,
    }


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="engram", description="Engram container CLI")

    # Global options
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--log-level", default=None, help="Logging level (default: ENGRAM_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # info command
    info_parser = subparsers.add_parser("info", help="Show container header")
    info_parser.add_argument("file", help="Container file")

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Check integrity and decode the payload")
    verify_parser.add_argument("file", help="Container file")
    verify_parser.add_argument("--passphrase", default=None, help="Passphrase for encrypted files")

    # tree command
    tree_parser = subparsers.add_parser("tree", help="Print the node hierarchy")
    tree_parser.add_argument("file", help="Container file")
    tree_parser.add_argument("--passphrase", default=None, help="Passphrase for encrypted files")
    tree_parser.add_argument("--max-depth", type=int, default=None, help="Deepest level to print")

    # migrate-v2 command
    migrate_parser = subparsers.add_parser("migrate-v2", help="Convert a v2 JSON document")
    migrate_parser.add_argument("source", help="v2 document (JSON)")
    migrate_parser.add_argument("output", help="Output container (.engram is appended if missing)")
    migrate_parser.add_argument("--encrypt", action="store_true", help="Encrypt the payload")
    migrate_parser.add_argument("--passphrase", default=None, help="Encryption passphrase")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(level=args.log_level)
    passphrase = getattr(args, "passphrase", None) or settings.passphrase

    try:
        if args.command == "info":
            result = info(args.file)
            if args.json:
                print(json.dumps(result, default=str))
            else:
                print(f"Engram v{result['version']} ({result['size_bytes']} bytes)")
                print(f"Created:   {result['created']}")
                print(f"Modified:  {result['modified']}")
                print(f"Encrypted: {'yes (' + result['algorithm'] + ')' if result['encrypted'] else 'no'}")
                print(f"Embedding: {result['embedding_model']} ({result['embedding_dims']} dims)")
                stats = result["stats"]
                print(f"Nodes: {stats['total_chunks']} ({stats['root_nodes']} roots, "
                      f"max depth {stats['max_depth']}), tokens: {stats['total_tokens']}")
                print(f"Entities: {stats['entity_count']}, links: {stats['link_count']}")

        elif args.command == "verify":
            result = verify(args.file, passphrase)
            if args.json:
                print(json.dumps(result, default=str))
            else:
                print(f"OK: {result['nodes']} nodes, {result['entities']} entities, "
                      f"{result['links']} links, {result['deltas']} deltas")

        elif args.command == "tree":
            rows = tree(args.file, passphrase, args.max_depth)
            if args.json:
                print(json.dumps(rows, default=str))
            else:
                for row in rows:
                    indent = "  " * row["depth"]
                    safe_print(f"{indent}- [{row['type']}/{row['decay_tier']}] {row['id']}: {row['preview']}")
                if not rows:
                    print("(empty)")

        elif args.command == "migrate-v2":
            result = migrate(args.source, args.output, args.encrypt, passphrase)
            if args.json:
                print(json.dumps(result, default=str))
            else:
                print(f"Migrated {result['nodes']} chunks to {result['output']}")

    except (EngramError, OSError, json.JSONDecodeError) as e:
        if args.json:
            print(json.dumps({"error": str(e), "type": type(e).__name__}))
        else:
            safe_print(f"ERROR: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
