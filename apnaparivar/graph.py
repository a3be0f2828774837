from __future__ import annotations

import logging
import sqlite3
from typing import Dict, Iterable, Optional

from . import families
from .db import get_db, now_iso
from .errors import ApiError, bad_request, forbidden, not_found

log = logging.getLogger(__name__)

RELATIONS = ("spouse", "parent", "child")


def parent_role(gender: str) -> str:
    return "mother" if (gender or "").lower() == "female" else "father"


def _load_member(con: sqlite3.Connection, member_id: str) -> Optional[sqlite3.Row]:
    return con.execute(
        "SELECT id, family_id, gender, first_name, last_name FROM family_members WHERE id = ? AND is_deleted = 0",
        (str(member_id),),
    ).fetchone()


def _spouse_pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a < b else (b, a)


# -----------------------------
# ANCESTRY
# -----------------------------
def parents_of(con: sqlite3.Connection, member_id: str) -> list[str]:
    return [r["parent_id"] for r in con.execute("SELECT parent_id FROM parent_links WHERE child_id = ?", (member_id,))]


def is_ancestor(con: sqlite3.Connection, candidate: str, member_id: str) -> bool:
    """True when `candidate` is reachable from `member_id` by following parent links."""
    seen: set[str] = set()
    stack = [member_id]
    while stack:
        cur = stack.pop()
        if cur == candidate:
            return True
        if cur in seen:
            continue
        seen.add(cur)
        stack.extend(parents_of(con, cur))
    return False


# -----------------------------
# EDGE WRITES (caller owns the transaction)
# -----------------------------
def link_spouse(con: sqlite3.Connection, family_id: str, a: str, b: str) -> list[str]:
    if a == b:
        raise bad_request("Cannot relate a member to themselves")
    lo, hi = _spouse_pair(a, b)
    cur = con.execute(
        """
        INSERT OR IGNORE INTO spouse_links (family_id, member_a, member_b, is_current, created_at)
        VALUES (?, ?, ?, 1, ?)
        """,
        (family_id, lo, hi, now_iso()),
    )
    return ["spouse+"] if cur.rowcount else []


def link_parent(con: sqlite3.Connection, family_id: str, parent: sqlite3.Row, child_id: str,
                role: Optional[str] = None) -> list[str]:
    if parent["id"] == child_id:
        raise bad_request("Cannot relate a member to themselves")
    role = role or parent_role(parent["gender"])

    existing = con.execute(
        "SELECT parent_id FROM parent_links WHERE child_id = ? AND role = ?", (child_id, role)
    ).fetchone()
    if existing is not None:
        if existing["parent_id"] == parent["id"]:
            return []
        raise bad_request(f"Child already has a {role} set")

    other = con.execute(
        "SELECT role FROM parent_links WHERE child_id = ? AND parent_id = ?", (child_id, parent["id"])
    ).fetchone()
    if other is not None:
        raise bad_request(f"Member is already linked as the {other['role']}")

    if is_ancestor(con, child_id, parent["id"]):
        raise bad_request("Relationship would make a member their own ancestor")

    con.execute(
        "INSERT INTO parent_links (family_id, child_id, parent_id, role, created_at) VALUES (?, ?, ?, ?, ?)",
        (family_id, child_id, parent["id"], role, now_iso()),
    )
    return [f"child.{role}", "parent.children+"]


def unlink_spouse(con: sqlite3.Connection, a: str, b: str) -> bool:
    lo, hi = _spouse_pair(a, b)
    return con.execute("DELETE FROM spouse_links WHERE member_a = ? AND member_b = ?", (lo, hi)).rowcount > 0


def unlink_parent(con: sqlite3.Connection, parent_id: str, child_id: str) -> bool:
    return (
        con.execute("DELETE FROM parent_links WHERE parent_id = ? AND child_id = ?", (parent_id, child_id)).rowcount
        > 0
    )


def remove_member_edges(con: sqlite3.Connection, member_id: str) -> None:
    con.execute("DELETE FROM parent_links WHERE child_id = ? OR parent_id = ?", (member_id, member_id))
    con.execute("DELETE FROM spouse_links WHERE member_a = ? OR member_b = ?", (member_id, member_id))


# -----------------------------
# CONNECT / DISCONNECT
# -----------------------------
def _resolve_pair(con, family, user, source_id: str, target_id: str, relation: str):
    if not source_id or not target_id or not relation:
        raise bad_request("sourceId, targetId and relation are required")
    if source_id == target_id:
        raise bad_request("Cannot relate a member to themselves")
    if not families.is_admin(family, user["id"]):
        raise forbidden("Only family admins can edit relationships")

    relation = str(relation).strip().lower()
    if relation not in RELATIONS:
        raise bad_request("Unsupported relation. Use spouse, parent, or child")

    src = _load_member(con, source_id)
    dst = _load_member(con, target_id)
    if src is None or dst is None:
        raise not_found("One or both members not found")
    if src["family_id"] != family["id"] or dst["family_id"] != family["id"]:
        raise forbidden("Members must belong to the target family")
    return src, dst, relation


def connect(family: sqlite3.Row, user: sqlite3.Row, source_id: str, target_id: str, relation: str) -> Dict:
    con = get_db()
    src, dst, relation = _resolve_pair(con, family, user, source_id, target_id, relation)

    with con:
        if relation == "spouse":
            changes = link_spouse(con, family["id"], src["id"], dst["id"])
            message = "Spouse connection added"
        else:
            parent, child = (dst, src) if relation == "child" else (src, dst)
            changes = link_parent(con, family["id"], parent, child["id"])
            message = "Parent-child relationship added"
        if changes:
            families.touch_activity(con, family["id"], "last_tree_modified")

    log.info("connect %s %s %s -> %s", relation, src["id"], dst["id"], changes or "unchanged")
    return {"message": message, "changes": changes}


def disconnect(family: sqlite3.Row, user: sqlite3.Row, source_id: str, target_id: str, relation: str) -> bool:
    con = get_db()
    src, dst, relation = _resolve_pair(con, family, user, source_id, target_id, relation)

    with con:
        if relation == "spouse":
            removed = unlink_spouse(con, src["id"], dst["id"])
        else:
            parent, child = (dst, src) if relation == "child" else (src, dst)
            removed = unlink_parent(con, parent["id"], child["id"])
        if removed:
            families.touch_activity(con, family["id"], "last_tree_modified")
    if not removed:
        raise ApiError(404, "Relationship not found")
    return removed


# -----------------------------
# READS
# -----------------------------
def _placeholders(ids: list[str]) -> str:
    return ",".join("?" for _ in ids)


def relations_for(member_ids: Iterable[str]) -> Dict[str, dict]:
    """
    Father / mother / children / spouses for each id, derived from the edge
    tables. Ids not linked to anything still get empty entries.
    """
    ids = [str(i) for i in member_ids]
    out: Dict[str, dict] = {i: {"father": None, "mother": None, "children": [], "spouses": []} for i in ids}
    if not ids:
        return out

    con = get_db()
    marks = _placeholders(ids)
    rows = con.execute(
        f"SELECT child_id, parent_id, role FROM parent_links WHERE child_id IN ({marks}) OR parent_id IN ({marks})",
        ids + ids,
    ).fetchall()
    for r in rows:
        if r["child_id"] in out:
            out[r["child_id"]][r["role"]] = r["parent_id"]
        if r["parent_id"] in out and r["child_id"] not in out[r["parent_id"]]["children"]:
            out[r["parent_id"]]["children"].append(r["child_id"])

    rows = con.execute(
        f"SELECT * FROM spouse_links WHERE member_a IN ({marks}) OR member_b IN ({marks})", ids + ids
    ).fetchall()
    for r in rows:
        for me, other in ((r["member_a"], r["member_b"]), (r["member_b"], r["member_a"])):
            if me in out:
                out[me]["spouses"].append(
                    {
                        "memberId": other,
                        "isCurrentSpouse": bool(r["is_current"]),
                        "marriageDate": r["marriage_date"],
                        "divorceDate": r["divorce_date"],
                    }
                )
    return out


def family_edges(family_id: str) -> tuple[list[sqlite3.Row], list[sqlite3.Row]]:
    con = get_db()
    parents = con.execute(
        "SELECT parent_id, child_id, role FROM parent_links WHERE family_id = ? ORDER BY created_at", (family_id,)
    ).fetchall()
    spouses = con.execute(
        "SELECT member_a, member_b, is_current FROM spouse_links WHERE family_id = ? ORDER BY created_at",
        (family_id,),
    ).fetchall()
    return parents, spouses


def generations(member_ids: Iterable[str], parent_links: Iterable[tuple[str, str]]) -> Dict[str, int]:
    """Roots are generation 0; a child sits one below its deepest parent."""
    ids = list(member_ids)
    known = set(ids)
    parents: Dict[str, list[str]] = {i: [] for i in ids}
    for pid, cid in parent_links:
        if pid in known and cid in known:
            parents[cid].append(pid)

    memo: Dict[str, int] = {}

    def depth(mid: str, trail: frozenset) -> int:
        if mid in memo:
            return memo[mid]
        ps = [p for p in parents[mid] if p not in trail]
        value = 0 if not ps else 1 + max(depth(p, trail | {mid}) for p in ps)
        memo[mid] = value
        return value

    return {mid: depth(mid, frozenset()) for mid in ids}
