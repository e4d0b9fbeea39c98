#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp"]
# ///
"""Thinking Fix — strip thinking blocks from Claude Code session logs.

Claude Code sessions that lost their thinking content fail with HTTP 400 on
resume. This tool removes every `thinking` / `redacted_thinking` item from
`message.content` in the latest session log of a project, keeping a backup.

Data source:
  ~/.claude/projects/<project-dir>/*.jsonl   (one JSON record per line)

Backups (beside the session file):
  <stem>.jsonl.bak                 first backup
  <stem>.<YYYYMMDD_HHMMSS>.bak     when <stem>.jsonl.bak already exists

Usage:
    sft_thinking_fix.py projects                       # List projects, most recent first
    sft_thinking_fix.py projects -n 5 -j               # Top 5 as JSON
    sft_thinking_fix.py fix                            # Fix the most recent project
    sft_thinking_fix.py fix ~/.claude/projects/-Users-me-repo
    echo ~/.claude/projects/-Users-me-repo | sft_thinking_fix.py fix -j
    sft_thinking_fix.py mcp-stdio
"""

import argparse
import json
import os
import shutil
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

# =============================================================================
# LOGGING (TSV format)
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv" if _LOG_DIR else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(level: str, event: str, msg: str, *, detail: str = "", metrics: str = "", trace: str = ""):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["projects", "fix"]

CONFIG = {
    "thinking_types": ("thinking", "redacted_thinking"),
    "session_ext": ".jsonl",
    "backup_ext": ".jsonl.bak",
    "backup_ts_format": "%Y%m%d_%H%M%S",
    "default_list_count": 20,
}


# =============================================================================
# CORE FUNCTIONS
# =============================================================================

def _projects_root() -> Path:
    """Return ~/.claude/projects, resolved against the current home directory."""
    return Path.home() / ".claude" / "projects"


def _mtime_ms(path: Path) -> int:
    """Modification time in epoch milliseconds, 0 when unavailable or pre-epoch."""
    try:
        ns = path.stat().st_mtime_ns
    except OSError:
        return 0
    return max(ns // 1_000_000, 0)


def _epoch_ms_to_local(ms: int) -> str:
    """Convert epoch milliseconds to a local datetime string for display."""
    if not ms:
        return ""
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _display_name(name: str) -> str:
    """Short project label: last '-' segment of the encoded directory name."""
    return name.split("-")[-1] or name


def _find_latest_jsonl(project_dir: Path) -> Path | None:
    """Most recently modified .jsonl file directly inside project_dir, or None."""
    try:
        entries = list(project_dir.iterdir())
    except OSError:
        return None

    candidates = []
    for entry in entries:
        if entry.suffix != CONFIG["session_ext"]:
            continue
        try:
            if not entry.is_file():
                continue
            mtime = entry.stat().st_mtime_ns
        except OSError:
            continue
        candidates.append((entry, mtime))

    if not candidates:
        return None
    return max(candidates, key=lambda c: c[1])[0]


def _split_lines(content: str) -> list[str]:
    """Split on '\\n' only, dropping a trailing '\\r' and the final empty line.

    str.splitlines() is not used: it also breaks on U+2028 and friends,
    which may appear unescaped inside JSON strings.
    """
    lines = content.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _reject_constant(name: str):
    raise ValueError(f"Invalid JSON constant: {name}")


def _canonical(value) -> str:
    """Compact JSON form used both for change detection and for output."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _strip_thinking(record) -> int:
    """Remove thinking items from record['message']['content'] in place.

    Any missing or wrong-typed link in the chain is a no-op.

    Returns:
        Number of content items removed.
    """
    if not isinstance(record, dict):
        return 0
    message = record.get("message")
    if not isinstance(message, dict):
        return 0
    content = message.get("content")
    if not isinstance(content, list):
        return 0

    kept = [
        item for item in content
        if not (isinstance(item, dict) and item.get("type") in CONFIG["thinking_types"])
    ]
    removed = len(content) - len(kept)
    if removed:
        message["content"] = kept
    return removed


def _process_lines(lines: list[str]) -> tuple[list[str], dict]:
    """Transform session lines, returning (processed_lines, counters)."""
    processed = []
    counts = {"total_lines": 0, "modified_lines": 0, "thinking_blocks_removed": 0, "errors": 0}

    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            processed.append(line)
            continue

        # Malformed lines still count toward the total
        counts["total_lines"] += 1

        try:
            record = json.loads(line, parse_constant=_reject_constant)
            before = _canonical(record)
            # Escaped lone surrogates parse but cannot be written back as UTF-8
            before.encode("utf-8")
        except ValueError as e:
            counts["errors"] += 1
            _log("DEBUG", "parse_error", f"line {lineno}", detail=str(e))
            processed.append(line)
            continue

        counts["thinking_blocks_removed"] += _strip_thinking(record)
        after = _canonical(record)
        if after != before:
            counts["modified_lines"] += 1
        processed.append(after)

    return processed, counts


def _backup_path_for(jsonl_path: Path) -> Path:
    """Pick the backup target, falling back to a timestamped name on collision."""
    stem = jsonl_path.stem
    plain = jsonl_path.with_name(f"{stem}{CONFIG['backup_ext']}")
    if not plain.exists():
        return plain
    ts = datetime.now().strftime(CONFIG["backup_ts_format"])
    return jsonl_path.with_name(f"{stem}.{ts}.bak")


def _format_fix_report(result: dict) -> str:
    """Render a FixResult as a short human-readable report."""
    headline = "[OK] Fix completed" if result["thinking_blocks_removed"] > 0 else "[OK] No changes needed"
    out = [
        headline,
        f"     File: {result['jsonl_file']}",
        f"     Lines processed: {result['total_lines']}",
        f"     Lines modified: {result['modified_lines']}",
        f"     Thinking blocks removed: {result['thinking_blocks_removed']}",
    ]
    if result["errors"]:
        out.append(f"     Unparseable lines (kept as-is): {result['errors']}")
    if result["backup_path"]:
        out.append(f"     Backup: {result['backup_path']}")
    return "\n".join(out)


# =============================================================================
# IMPL FUNCTIONS (CLI + MCP call these)
# =============================================================================

def _projects_impl() -> list[dict]:
    """List Claude projects in ~/.claude/projects, most recently modified first.

    CLI: projects
    MCP: projects

    Returns:
        List of {name, path, last_modified} dicts (last_modified in epoch ms).
    """
    t0 = time.time()
    root = _projects_root()
    if not root.exists():
        _log("INFO", "projects", "Projects root missing", detail=f"root={root}")
        return []

    try:
        entries = list(root.iterdir())
    except OSError as e:
        _log("ERROR", "projects", "Failed to read projects directory", detail=str(e))
        raise RuntimeError(f"Failed to read projects directory: {e}") from e

    projects = []
    for entry in entries:
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        projects.append({
            "name": entry.name,
            "path": str(entry),
            "last_modified": _mtime_ms(entry),
        })

    projects.sort(key=lambda p: p["last_modified"], reverse=True)

    elapsed = time.time() - t0
    _log("INFO", "projects", f"Listed {len(projects)} projects",
         detail=f"root={root}",
         metrics=f"results={len(projects)} latency_ms={round(elapsed * 1000, 1)}")
    return projects


def _fix_impl(project_path: str = "") -> dict:
    """Remove thinking blocks from the latest session file of a project.

    CLI: fix
    MCP: fix

    Args:
        project_path: Project directory. Empty selects the most recent project.

    Returns:
        Dict with total_lines, modified_lines, thinking_blocks_removed, errors,
        backup_path and jsonl_file.
    """
    t0 = time.time()
    if not project_path:
        projects = _projects_impl()
        if not projects:
            raise FileNotFoundError(f"No Claude projects found in {_projects_root()}")
        project_path = projects[0]["path"]

    project_dir = Path(project_path).expanduser()
    if not project_dir.exists():
        raise FileNotFoundError(f"Project directory not found: {project_path}")

    jsonl_path = _find_latest_jsonl(project_dir)
    if jsonl_path is None:
        raise FileNotFoundError("No .jsonl files found in project directory")

    try:
        with open(jsonl_path, encoding="utf-8", newline="") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        _log("ERROR", "fix", str(jsonl_path), detail=f"read: {e}")
        raise RuntimeError(f"Failed to read JSONL file: {e}") from e

    processed, counts = _process_lines(_split_lines(content))

    # Copy precedes the overwrite
    backup_path = _backup_path_for(jsonl_path)
    try:
        shutil.copy2(jsonl_path, backup_path)
    except OSError as e:
        _log("ERROR", "fix", str(jsonl_path), detail=f"backup: {e}")
        raise RuntimeError(f"Failed to create backup: {e}") from e
    _log("INFO", "backup", str(backup_path))

    try:
        data = "\n".join(processed).encode("utf-8")
        jsonl_path.write_bytes(data)
    except (OSError, UnicodeEncodeError) as e:
        _log("ERROR", "fix", str(jsonl_path), detail=f"write: {e}")
        raise RuntimeError(f"Failed to write JSONL file: {e}") from e

    result = {
        **counts,
        "backup_path": str(backup_path),
        "jsonl_file": jsonl_path.name,
    }

    elapsed = time.time() - t0
    _log("INFO", "fix", str(jsonl_path),
         detail=f"backup={backup_path}",
         metrics=(f"lines={counts['total_lines']} modified={counts['modified_lines']} "
                  f"removed={counts['thinking_blocks_removed']} errors={counts['errors']} "
                  f"latency_ms={round(elapsed * 1000, 1)}"))
    return result


# =============================================================================
# CLI INTERFACE (argparse)
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        prog="sft_thinking_fix",
        description="Strip thinking blocks from Claude Code session logs (fixes 400 thinking errors)",
    )
    parser.add_argument("-V", "--version", action="version", version="%(prog)s 1.0.0")
    sub = parser.add_subparsers(dest="command")

    # CLI for _projects_impl
    p_projects = sub.add_parser("projects", help="List Claude projects, most recent first")
    p_projects.add_argument("-n", "--count", type=int, default=CONFIG["default_list_count"],
                            help="Max projects to list")
    p_projects.add_argument("-j", "--json", action="store_true", help="Output JSON")

    # CLI for _fix_impl
    p_fix = sub.add_parser("fix", help="Remove thinking blocks from a project's latest session")
    p_fix.add_argument("project_path", nargs="?", default="",
                       help="Project directory (or stdin; default: most recent project)")
    p_fix.add_argument("-j", "--json", action="store_true", help="Print result JSON to stdout")

    # MCP
    sub.add_parser("mcp-stdio", help="Run as MCP server")

    args = parser.parse_args()

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return

        elif args.command == "projects":
            projects = _projects_impl()[:args.count]
            if args.json:
                print(json.dumps(projects, indent=2))
            else:
                for p in projects:
                    print(f"{_display_name(p['name']):<24} {_epoch_ms_to_local(p['last_modified']):<19}  {p['path']}")
                print(f"{len(projects)} projects")

        elif args.command == "fix":
            project_path = args.project_path
            if not project_path and not sys.stdin.isatty():
                project_path = sys.stdin.readline().strip()
            result = _fix_impl(project_path)
            print(_format_fix_report(result), file=sys.stderr)
            if args.json:
                print(json.dumps(result, indent=2))

        else:
            parser.print_help()

    except AssertionError as e:
        _log("ERROR", "contract_violation", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        _log("ERROR", "runtime_error", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER (lazy — only loaded when mcp-stdio is invoked)
# =============================================================================

def _run_mcp():
    from fastmcp import FastMCP
    mcp = FastMCP("thinking_fix")

    # MCP for _projects_impl
    @mcp.tool()
    def projects() -> str:
        """List Claude Code projects in ~/.claude/projects, most recent first.

        Args:
            (no arguments — returns every project with name, path, last_modified in epoch ms)
        """
        try:
            return json.dumps(_projects_impl(), indent=2)
        except Exception as e:
            return f"Error: {e}"

    # MCP for _fix_impl
    @mcp.tool()
    def fix(project_path: str = "") -> str:
        """Remove thinking and redacted_thinking blocks from a project's latest session log.

        Fixes Claude Code 400 errors caused by lost thinking content. The original
        file is backed up beside itself before being overwritten.

        Args:
            project_path: Project directory under ~/.claude/projects (empty: most recent project).
        """
        try:
            result = _fix_impl(project_path)
        except Exception as e:
            return f"Error: {e}"
        return _format_fix_report(result) + "\n\n" + json.dumps(result, indent=2)

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
