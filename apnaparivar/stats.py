from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from . import graph
from .db import dumps, get_db, now_iso, parse_dt, utcnow

log = logging.getLogger(__name__)

YEAR_SECONDS = 365.25 * 24 * 60 * 60


def age_years(dob: Any, until: Optional[datetime] = None) -> Optional[int]:
    born = parse_dt(dob)
    if born is None:
        return None
    end = until or utcnow()
    return int((end - born).total_seconds() // YEAR_SECONDS)


def update_stats(family_id: str) -> Dict[str, Any]:
    """Recompute the denormalised family stats and write member generations back."""
    con = get_db()
    members = con.execute(
        "SELECT id, gender, date_of_birth FROM family_members WHERE family_id = ? AND is_deleted = 0",
        (family_id,),
    ).fetchall()
    ids = [m["id"] for m in members]
    links, _ = graph.family_edges(family_id)
    gens = graph.generations(ids, [(r["parent_id"], r["child_id"]) for r in links])

    stats: Dict[str, Any] = {
        "totalMembers": len(members),
        "totalMales": sum(1 for m in members if m["gender"] == "male"),
        "totalFemales": sum(1 for m in members if m["gender"] == "female"),
        "totalGenerations": len(set(gens.values())),
        "oldestMember": None,
        "youngestMember": None,
    }

    dated = [(parse_dt(m["date_of_birth"]), m["id"]) for m in members]
    dated = [(dob, mid) for dob, mid in dated if dob is not None]
    if dated:
        now = utcnow()
        oldest = min(dated)
        youngest = max(dated)
        stats["oldestMember"] = {"memberId": oldest[1], "age": age_years(oldest[0], now)}
        stats["youngestMember"] = {"memberId": youngest[1], "age": age_years(youngest[0], now)}
    stats["lastUpdated"] = now_iso()

    with con:
        con.execute("UPDATE families SET stats_json = ? WHERE id = ?", (dumps(stats), family_id))
        con.executemany(
            "UPDATE family_members SET generation = ? WHERE id = ?", [(g, mid) for mid, g in gens.items()]
        )
    log.debug("stats for %s: %s", family_id, stats)
    return stats
