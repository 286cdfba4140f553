"""
One-shot repair: fix chat_nodes rows whose branch pointers no longer agree
with the parent links.

For every node, child_ids is rebuilt from the ids that still exist and name
the node as their parent (listed order kept, unlisted children appended in
insertion order), and active_child_index is reset to the last child when it
is missing or out of range. Leaves get a NULL index. Rows that cannot be
reached from the root through parent_id (their parent no longer exists) are
deleted together with their descendants.

Usage:
    python scripts/repair_active_paths.py [--dry-run]
"""

import json
import os
import sqlite3
import sys
from pathlib import Path


def get_db_path() -> Path:
    """Resolve the database path from BRANCHCHAT_DB_PATH or the project root."""
    configured = os.environ.get("BRANCHCHAT_DB_PATH")
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parent.parent / "branchchat.db"


def repaired_child_ids(node_id: str, listed: list[str], children_by_parent: dict) -> list[str]:
    """Listed children that really point back at node_id, then any unlisted ones."""
    actual = children_by_parent.get(node_id, [])
    actual_set = set(actual)
    kept = [c for c in dict.fromkeys(listed) if c in actual_set]
    kept_set = set(kept)
    return kept + [c for c in actual if c not in kept_set]


def reachable_from(root_id: str, children_by_parent: dict) -> set[str]:
    """Ids reachable from root_id by following parent_id links downward."""
    seen = {root_id}
    stack = [root_id]
    while stack:
        for child_id in children_by_parent.get(stack.pop(), []):
            if child_id not in seen:
                seen.add(child_id)
                stack.append(child_id)
    return seen


def repaired_index(index: int | None, child_count: int) -> int | None:
    if child_count == 0:
        return None
    if index is None or not 0 <= index < child_count:
        return child_count - 1
    return index


def repair(db_path: Path, dry_run: bool = False) -> None:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    chat_ids = [
        row["chat_id"]
        for row in conn.execute("SELECT DISTINCT chat_id FROM chat_nodes").fetchall()
    ]
    if not chat_ids:
        print("No messages to check.")
        conn.close()
        return

    total_fixed = 0

    for chat_id in chat_ids:
        rows = conn.execute(
            """SELECT id, parent_id, child_ids, active_child_index
               FROM chat_nodes WHERE chat_id = ? ORDER BY rowid""",
            (chat_id,),
        ).fetchall()

        # Children as recorded by parent_id, in insertion order
        children_by_parent: dict[str, list[str]] = {}
        for row in rows:
            if row["parent_id"] is not None:
                children_by_parent.setdefault(row["parent_id"], []).append(row["id"])

        roots = [row["id"] for row in rows if row["parent_id"] is None]
        if len(roots) != 1:
            print(f"  WARNING: chat {chat_id} has {len(roots)} root(s), skipping")
            continue

        reachable = reachable_from(roots[0], children_by_parent)
        orphans = [row["id"] for row in rows if row["id"] not in reachable]
        if orphans:
            print(f"  {chat_id}: deleting {len(orphans)} orphaned node(s): {orphans}")
            if not dry_run:
                conn.executemany(
                    "DELETE FROM chat_nodes WHERE id = ?", [(node_id,) for node_id in orphans],
                )
            rows = [row for row in rows if row["id"] in reachable]

        fixed_in_chat = len(orphans)
        for row in rows:
            try:
                listed = json.loads(row["child_ids"] or "[]")
            except ValueError:
                listed = []
            child_ids = repaired_child_ids(row["id"], listed, children_by_parent)
            index = repaired_index(row["active_child_index"], len(child_ids))

            if child_ids == listed and index == row["active_child_index"]:
                continue

            print(
                f"  {row['id']}: child_ids {listed} -> {child_ids}, "
                f"active_child_index {row['active_child_index']} -> {index}"
            )
            if not dry_run:
                conn.execute(
                    "UPDATE chat_nodes SET child_ids = ?, active_child_index = ? WHERE id = ?",
                    (json.dumps(child_ids), index, row["id"]),
                )
            fixed_in_chat += 1

        if fixed_in_chat:
            print(f"Chat {chat_id}: {fixed_in_chat} node(s) repaired or removed")
        total_fixed += fixed_in_chat

    if not dry_run:
        conn.commit()
    conn.close()
    verb = "Would repair" if dry_run else "Repaired"
    print(f"\nDone. {verb} {total_fixed} node(s).")


if __name__ == "__main__":
    db_path = get_db_path()
    if not db_path.exists():
        print(f"Database not found at {db_path}")
        sys.exit(1)
    print(f"Database: {db_path}")
    repair(db_path, dry_run="--dry-run" in sys.argv[1:])
