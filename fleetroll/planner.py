"""Batch planning for rolling updates.

Pure functions over FleetSnapshot; nothing here touches providers or storage.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from .runtime import Batch, FleetSnapshot, Health, Lifecycle, Replica, ReplicaSpec, UpdatePlan, UpdatePolicy


def compute_batch_size(in_service: int, policy: UpdatePolicy) -> int:
    return max(1, min(policy.max_batch_size, in_service - policy.min_in_service))


def distribute(total: int, zones: Iterable[str]) -> dict[str, int]:
    """Even split across zones; the remainder goes to lexicographically-first zones."""
    zs = sorted(set(zones))
    if not zs:
        return {}
    base, extra = divmod(max(0, total), len(zs))
    return {z: base + (1 if i < extra else 0) for i, z in enumerate(zs)}


def pick_zone(counts: dict[str, int], zones: Iterable[str]) -> str:
    """Least-populated zone, ties broken lexicographically."""
    zs = sorted(set(zones))
    if not zs:
        raise ValueError("no zones to place replica in")
    return min(zs, key=lambda z: counts.get(z, 0))


def old_replicas(snap: FleetSnapshot, new_spec: ReplicaSpec) -> list[Replica]:
    return [r for r in snap.live() if r.spec != new_spec]


def select_retirees(replicas: Iterable[Replica], count: int) -> list[Replica]:
    """Oldest replicas first, one per zone per round.

    Each round visits zones with the most remaining candidates first (ties by
    zone name) so repeated batches drain zones evenly.
    """
    by_zone: dict[str, list[Replica]] = {}
    for r in sorted(replicas, key=lambda r: (r.created_at, r.id)):
        by_zone.setdefault(r.zone, []).append(r)

    picked: list[Replica] = []
    while len(picked) < count and any(by_zone.values()):
        order = sorted((z for z in by_zone if by_zone[z]), key=lambda z: (-len(by_zone[z]), z))
        for z in order:
            picked.append(by_zone[z].pop(0))
            if len(picked) == count:
                break
    return picked


def replacement_zones(snap: FleetSnapshot, retirees: list[Replica], new_spec: ReplicaSpec) -> list[str]:
    """Zone for each replacement: the retiree's zone when the new spec allows it."""
    if not new_spec.zones:
        return [r.zone for r in retirees]
    counts = snap.zone_counts(new_spec.zones)
    out: list[str] = []
    for r in retirees:
        if r.zone in new_spec.zones:
            zone = r.zone
        else:
            zone = pick_zone(counts, new_spec.zones)
            counts[zone] = counts.get(zone, 0) + 1
        out.append(zone)
    return out


def next_batch(snap: FleetSnapshot, new_spec: ReplicaSpec, policy: UpdatePolicy) -> Batch | None:
    """The next batch to execute against the current fleet, or None when done."""
    old = old_replicas(snap, new_spec)
    if not old:
        return None
    size = compute_batch_size(len(snap.in_service()), policy)
    retirees = select_retirees(old, size)

    # Replicas above desired capacity (e.g. a scale-out that already launched
    # the new spec) cover part of the batch without launching.
    surplus = max(0, len(snap.live()) - snap.desired_capacity)
    launch = max(0, len(retirees) - surplus)
    zones = replacement_zones(snap, retirees[:launch], new_spec)
    return Batch(retire=tuple(r.id for r in retirees), zones=tuple(zones))


def plan_update(snap: FleetSnapshot, new_spec: ReplicaSpec, policy: UpdatePolicy) -> UpdatePlan:
    """Simulate the whole update assuming every batch succeeds."""
    batches: list[Batch] = []
    sim = snap
    limit = len(snap.replicas) + 1
    while len(batches) < limit:
        batch = next_batch(sim, new_spec, policy)
        if batch is None:
            break
        batches.append(batch)
        sim = _apply(sim, batch, new_spec, len(batches))
    return UpdatePlan(batches=tuple(batches))


def _apply(snap: FleetSnapshot, batch: Batch, new_spec: ReplicaSpec, n: int) -> FleetSnapshot:
    retired = set(batch.retire)
    replicas = [r for r in snap.replicas if r.id not in retired]
    newest = max((r.created_at for r in snap.replicas), default=0.0)
    for i, zone in enumerate(batch.zones):
        replicas.append(
            Replica(
                id=f"planned-{n}-{i}",
                zone=zone,
                spec=new_spec,
                lifecycle=Lifecycle.IN_SERVICE,
                health=Health.HEALTHY,
                created_at=newest + 1,
            )
        )
    return replace(snap, replicas=tuple(replicas))


def select_for_shrink(snap: FleetSnapshot, count: int) -> list[Replica]:
    """Replicas to remove on a manual scale-in.

    Prefers replicas not on the current launch spec, then the most populated
    zone, then the oldest replica.
    """
    candidates = snap.live()
    picked: list[Replica] = []
    counts = snap.zone_counts()

    def key(r: Replica) -> tuple:
        return (r.spec == snap.launch_spec, -counts.get(r.zone, 0), r.created_at, r.id)

    while len(picked) < count and candidates:
        victim = min(candidates, key=key)
        candidates.remove(victim)
        counts[victim.zone] -= 1
        picked.append(victim)
    return picked
