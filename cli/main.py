#!/usr/bin/env python3
"""
Compliance Engine CLI - status, risk and hierarchy browsing from the terminal.
"""

import sys

from compliance_engine import config, paths
from compliance_engine.config import load_settings
from compliance_engine.db import init_db
from compliance_engine.engine import ComplianceEngine, NodeDisplay
from compliance_engine.errors import EngineError
from compliance_engine.models import ComplianceStatus
from compliance_engine.observability import configure_logging


def print_header(text: str):
    """Print a section header."""
    print(f"\n{'═' * 60}")
    print(f"  {text}")
    print(f"{'═' * 60}")


def print_table(headers: list, rows: list, widths: list = None):
    """Print a simple table."""
    if not widths:
        widths = [
            max(len(str(row[i])) for row in [headers] + rows)
            for i in range(len(headers))
        ]

    header_str = " │ ".join(str(h).ljust(w) for h, w in zip(headers, widths))
    print(header_str)
    print("─" * len(header_str))

    for row in rows:
        print(" │ ".join(str(c)[:w].ljust(w) for c, w in zip(row, widths)))


def status_color(status: ComplianceStatus | None) -> str:
    """Return ANSI color code for a compliance status."""
    if status in (ComplianceStatus.NON_COMPLIANT, ComplianceStatus.OVERDUE):
        return "\033[91m"  # Red
    if status in (ComplianceStatus.ACTION_REQUIRED, ComplianceStatus.EXPIRING_SOON):
        return "\033[93m"  # Yellow
    return "\033[0m"  # Default


def _engine() -> ComplianceEngine:
    return ComplianceEngine.from_db(paths.db_path(), settings=load_settings())


def _status_cell(display: NodeDisplay) -> str:
    if not display.available:
        return str(display.state)
    return f"{status_color(display.status)}{display.status}\033[0m"


def _risk_cell(display: NodeDisplay) -> str:
    if display.risk_score is None:
        return "-"
    return f"{display.risk_score:g}{' *' if display.is_stale else ''}"


def cmd_aggregate(args):
    """Show status and risk for one node."""
    if not args:
        print("Usage: aggregate <node_id>")
        return

    engine = _engine()
    try:
        display = engine.aggregate(args[0], wait=True)
    finally:
        engine.shutdown()

    print_header(f"{display.node_kind.upper()} {display.node_id}")
    if display.node is not None:
        print(f"  Name:         {display.node.name}")
        if display.node.stored_status:
            print(f"  Stored:       {display.node.stored_status}")
    print(f"  Status:       {_status_cell(display)}")
    print(f"  Risk:         {_risk_cell(display)}")
    print(f"  State:        {display.state}")
    if display.computed_at:
        print(f"  Computed:     {display.computed_at.isoformat()[:19]}")
    if display.child_counts:
        c = display.child_counts
        print(
            f"  Children:     {c.total} total, {c.compliant} compliant, "
            f"{c.non_compliant} non-compliant, {c.expiring} expiring"
        )


def cmd_invalidate(args):
    """Invalidate a node and recompute its ancestors."""
    if not args:
        print("Usage: invalidate <node_id>")
        return

    engine = _engine()
    try:
        future = engine.invalidate(args[0])
        refreshed = future.result() if future is not None else []
    finally:
        engine.shutdown()

    print(f"✓ Invalidated {args[0]}")
    for record in refreshed:
        print(f"  {record.node_kind:<9} {record.node_id}: {record.status} risk={record.risk_score:g}")


def cmd_sweep(args):
    """Refresh every stale or invalidated aggregate."""
    engine = _engine()
    try:
        scheduled = engine.cache.sweep()
    finally:
        engine.shutdown(wait=True)
    stats = engine.cache.stats()
    print(f"✓ Swept: {scheduled} refreshes ({stats.failures} failed, {stats.timeouts} timed out)")


def cmd_tree(args):
    """List schemes, or one page of a node's children."""
    limit = int(args[1]) if len(args) > 1 else None
    engine = _engine()
    try:
        _, session = engine.session()
        if not args:
            nodes = session.open()
            title = "SCHEMES"
            page = None
        else:
            page = engine.children(session, args[0], limit=limit)
            nodes = page.items
            title = f"CHILDREN OF {args[0]}"
        displays = [engine.display(node, wait=True) for node in nodes]
    finally:
        engine.shutdown()

    print_header(title)
    if not nodes:
        print("No children.")
        return

    rows = [
        [node.kind, node.id, node.name[:30], _status_cell(d), _risk_cell(d)]
        for node, d in zip(nodes, displays)
    ]
    print_table(["KIND", "ID", "NAME", "STATUS", "RISK"], rows, [9, 14, 30, 24, 8])
    if page is not None and page.has_more:
        batch = page.next_batch_size(limit or session.page_size)
        print(f"\n  … Show {batch} more ({page.remaining_count} remaining)")


def cmd_search(args):
    """Search a subtree by name or reference."""
    if len(args) < 2:
        print("Usage: search <root_id> <text>")
        return

    root_id, query = args[0], " ".join(args[1:])
    engine = _engine()
    try:
        _, session = engine.session()
        result = engine.search(session, root_id, query)
    finally:
        engine.shutdown()

    print_header(f"SEARCH '{query}' UNDER {root_id}")
    if result is None:
        print("No matches.")
        return

    def show(item, depth):
        marker = "●" if item.matched else "○"
        print(f"{'  ' * depth}{marker} {item.node.kind} {item.node.name} ({item.node.id})")
        for child in item.children:
            show(child, depth + 1)

    show(result, 0)


def cmd_stats(args):
    """Show aggregate record counts."""
    engine = _engine()
    try:
        stats = engine.cache.stats()
    finally:
        engine.shutdown()
    print_header("AGGREGATE CACHE")
    for key, value in stats.to_dict().items():
        print(f"  {key:<14} {value}")


def cmd_init_db(args):
    """Create the asset register schema."""
    db_path = args[0] if args else None
    path = init_db(db_path)
    print(f"✓ Database initialised at {path}")


def cmd_serve(args):
    """Run the API server."""
    from api.server import main as serve

    port = int(args[0]) if args else None
    serve(port=port)


def cmd_help(args):
    """Show help."""
    print_header("COMPLIANCE ENGINE CLI")
    print("""
COMMANDS:

  aggregate <id>         Status and risk for a node
  invalidate <id>        Mark a node changed and recompute its ancestors
  sweep                  Refresh stale and invalidated aggregates
  tree [id] [limit]      List schemes, or a page of a node's children
  search <root> <text>   Search a subtree, keeping ancestors of matches
  stats                  Aggregate cache statistics
  init-db [path]         Create the asset register schema
  serve [port]           Run the API server
  help                   Show this help

ENVIRONMENT:
  COMPLIANCE_ENGINE_DB        Asset register path
  COMPLIANCE_AGGREGATE_TTL    Aggregate staleness bound (seconds)
  COMPLIANCE_LOG_LEVEL        DEBUG, INFO, WARNING, ERROR
""")


COMMANDS = {
    "aggregate": cmd_aggregate,
    "agg": cmd_aggregate,
    "invalidate": cmd_invalidate,
    "sweep": cmd_sweep,
    "tree": cmd_tree,
    "t": cmd_tree,
    "search": cmd_search,
    "s": cmd_search,
    "stats": cmd_stats,
    "init-db": cmd_init_db,
    "serve": cmd_serve,
    "help": cmd_help,
    "-h": cmd_help,
    "--help": cmd_help,
}


def main():
    """Main entry point."""
    configure_logging(config.LOG_LEVEL, json_format=False)
    if len(sys.argv) < 2:
        cmd_help([])
        return

    cmd = sys.argv[1]
    args = sys.argv[2:]

    if cmd not in COMMANDS:
        print(f"Unknown command: {cmd}")
        print("Run 'help' for available commands.")
        sys.exit(1)

    try:
        COMMANDS[cmd](args)
    except EngineError as e:
        print(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
