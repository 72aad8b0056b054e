"""
Module ownership normalization.

A module is owned per team by at most one PRIMARY member and any number of
distinct SECONDARY members. Edit sessions can produce lists that break those
rules (duplicate claims, stale teams, a member holding both roles), so every
list is routed through `normalize_owners` when a module is loaded for editing
and again right before it is written back.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .models import OwnershipEntry, Role

logger = logging.getLogger(__name__)


def _team_ids(teams: Iterable[Any]) -> list[str]:
    ids: list[str] = []
    for team in teams or []:
        team_id = team.get("id") if isinstance(team, dict) else team
        if team_id is None:
            continue
        team_id = str(team_id)
        if team_id not in ids:
            ids.append(team_id)
    return ids


def _parse_role(value: Any) -> Role | None:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.upper())
    except ValueError:
        return None


def coerce_entry(raw: Any) -> OwnershipEntry | None:
    """Read an ownership claim from a record, tuple or entry; None if malformed."""
    if isinstance(raw, OwnershipEntry):
        return raw
    if isinstance(raw, dict):
        team_id, member_id, role = raw.get("team_id"), raw.get("member_id"), raw.get("role")
    elif isinstance(raw, (tuple, list)) and len(raw) == 3:
        team_id, member_id, role = raw
    else:
        return None

    parsed_role = _parse_role(role)
    if team_id is None or member_id is None or parsed_role is None:
        return None
    member_id = str(member_id)
    if not member_id:
        return None
    return OwnershipEntry(team_id=str(team_id), member_id=member_id, role=parsed_role)


def normalize_owners(raw_owners: Iterable[Any] | None, teams: Iterable[Any]) -> list[OwnershipEntry]:
    """Reconcile raw ownership claims against the known teams.

    Claims are applied in input order. A PRIMARY claim replaces the team's
    current PRIMARY and evicts that member from the team's SECONDARY set; a
    SECONDARY claim is ignored when the member already holds PRIMARY for the
    team. Claims for unknown teams and malformed claims are dropped.

    The output lists teams in the order given by `teams`, PRIMARY first, and
    is stable under re-normalization.
    """
    primaries: dict[str, str | None] = {}
    # dicts double as insertion-ordered sets
    secondaries: dict[str, dict[str, None]] = {}
    for team_id in _team_ids(teams):
        primaries[team_id] = None
        secondaries[team_id] = {}

    dropped = 0
    for raw in raw_owners or []:
        entry = coerce_entry(raw)
        if entry is None or entry.team_id not in primaries:
            dropped += 1
            continue

        if entry.role is Role.PRIMARY:
            primaries[entry.team_id] = entry.member_id
            secondaries[entry.team_id].pop(entry.member_id, None)
        elif primaries[entry.team_id] != entry.member_id:
            secondaries[entry.team_id][entry.member_id] = None
        else:
            dropped += 1

    if dropped:
        logger.debug("Dropped %d ownership claim(s) during normalization", dropped)

    normalized: list[OwnershipEntry] = []
    for team_id, primary in primaries.items():
        if primary:
            normalized.append(OwnershipEntry(team_id, primary, Role.PRIMARY))
        for member_id in secondaries[team_id]:
            normalized.append(OwnershipEntry(team_id, member_id, Role.SECONDARY))
    return normalized


def _coerce_all(owners: Iterable[Any] | None) -> list[OwnershipEntry]:
    entries = (coerce_entry(raw) for raw in owners or [])
    return [entry for entry in entries if entry is not None]


def set_primary(
    owners: Iterable[Any] | None, team_id: str, member_id: str | None
) -> list[OwnershipEntry]:
    """Make `member_id` the team's PRIMARY owner, or clear the slot when None."""
    team_id = str(team_id)
    entries = [
        entry
        for entry in _coerce_all(owners)
        if not (entry.team_id == team_id and entry.role is Role.PRIMARY)
    ]
    if not member_id:
        return entries

    member_id = str(member_id)
    entries = [
        entry
        for entry in entries
        if not (entry.team_id == team_id and entry.member_id == member_id)
    ]
    entries.append(OwnershipEntry(team_id, member_id, Role.PRIMARY))
    return entries


def toggle_secondary(owners: Iterable[Any] | None, team_id: str, member_id: str) -> list[OwnershipEntry]:
    """Add or remove a SECONDARY claim; adding demotes the member from PRIMARY."""
    team_id, member_id = str(team_id), str(member_id)
    entries = _coerce_all(owners)
    secondary = OwnershipEntry(team_id, member_id, Role.SECONDARY)

    if secondary in entries:
        return [entry for entry in entries if entry != secondary]

    entries = [
        entry
        for entry in entries
        if not (entry.team_id == team_id and entry.member_id == member_id)
    ]
    entries.append(secondary)
    return entries
