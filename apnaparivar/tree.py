from __future__ import annotations

import math
from typing import Any, Dict, Iterable, Optional

from . import graph
from .db import get_db

XGAP = 180
YGAP = 140
MARGIN = 40


def _children_map(links: Iterable[tuple[str, str]], known: set[str]) -> Dict[str, list[str]]:
    kids: Dict[str, list[str]] = {}
    for pid, cid in links:
        if pid in known and cid in known:
            kids.setdefault(pid, [])
            if cid not in kids[pid]:
                kids[pid].append(cid)
    return kids


def find_roots(member_ids: list[str], links: Iterable[tuple[str, str]]) -> list[str]:
    # roots = members with no incoming parent link
    has_parent = {cid for _, cid in links}
    roots = [mid for mid in member_ids if mid not in has_parent]
    if roots:
        return roots
    return member_ids[:1]


def _stored_position(m: Dict[str, Any]) -> Optional[dict]:
    x, y = m.get("position_x"), m.get("position_y")
    if x is None or y is None:
        return None
    x, y = float(x), float(y)
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return {"x": x, "y": y}


def layout(member_ids: list[str], links: list[tuple[str, str]]) -> Dict[str, dict]:
    """
    Depth-first placement: leaves take the next slot on the x axis, a parent
    sits at the mean x of its children, y grows by depth.
    """
    known = set(member_ids)
    kids = _children_map(links, known)
    pos: Dict[str, dict] = {}
    visited: set[str] = set()
    leaf_index = 0

    def assign(mid: str, depth: int) -> None:
        nonlocal leaf_index
        if mid in visited:
            return
        visited.add(mid)
        children = kids.get(mid, [])
        if not children:
            pos[mid] = {"x": leaf_index * XGAP, "y": depth * YGAP}
            leaf_index += 1
            return
        for c in children:
            assign(c, depth + 1)
        xs = [pos[c]["x"] for c in children if c in pos]
        pos[mid] = {"x": sum(xs) / (len(xs) or 1), "y": depth * YGAP}

    for root in find_roots(member_ids, links):
        assign(root, 0)

    if not pos:
        return {}
    shift_x = -min(p["x"] for p in pos.values()) + MARGIN
    return {mid: {"x": p["x"] + shift_x, "y": p["y"] + MARGIN} for mid, p in pos.items()}


def display_name(m: Dict[str, Any]) -> str:
    parts = [m.get("first_name"), m.get("middle_name"), m.get("last_name")]
    return " ".join(p for p in parts if p) or "Unknown"


def build_tree(members: list[Dict[str, Any]], parent_links: list[tuple[str, str]],
               spouse_pairs: list[tuple[str, str]]) -> Dict[str, list]:
    ids = [str(m["id"]) for m in members]
    known = set(ids)
    computed = layout(ids, parent_links)

    nodes = []
    for m in members:
        mid = str(m["id"])
        position = _stored_position(m) or computed.get(mid) or {"x": MARGIN, "y": MARGIN}
        nodes.append(
            {
                "id": mid,
                "type": "member",
                "position": position,
                "data": {"label": display_name(m), "gender": (m.get("gender") or "other").lower()},
            }
        )

    edges = []
    for pid, cid in parent_links:
        if pid in known and cid in known:
            edges.append({"id": f"{pid}->{cid}", "source": pid, "target": cid, "kind": "parent"})

    seen: set[tuple[str, str]] = set()
    for a, b in spouse_pairs:
        pair = (a, b) if a < b else (b, a)
        if pair in seen or a not in known or b not in known:
            continue
        seen.add(pair)
        edges.append({"id": f"{pair[0]}<->{pair[1]}", "source": pair[0], "target": pair[1], "kind": "spouse"})

    return {"nodes": nodes, "edges": edges}


def family_tree(family_id: str) -> Dict[str, list]:
    rows = get_db().execute(
        """
        SELECT id, first_name, middle_name, last_name, gender, position_x, position_y
          FROM family_members
         WHERE family_id = ? AND is_deleted = 0
         ORDER BY generation, first_name, last_name
        """,
        (family_id,),
    ).fetchall()
    links, spouses = graph.family_edges(family_id)
    return build_tree(
        [dict(r) for r in rows],
        [(r["parent_id"], r["child_id"]) for r in links],
        [(r["member_a"], r["member_b"]) for r in spouses],
    )
