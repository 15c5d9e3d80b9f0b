from dataclasses import replace

from conftest import NEW, OLD, ZONES, Rig

from fleetroll.planner import (
    compute_batch_size,
    distribute,
    next_batch,
    pick_zone,
    plan_update,
    select_for_shrink,
    select_retirees,
)
from fleetroll.runtime import Replica, UpdatePolicy


def test_batch_size_bounded_by_policy_and_headroom():
    p = UpdatePolicy(min_in_service=3, max_batch_size=3)
    assert compute_batch_size(6, p) == 3
    assert compute_batch_size(5, p) == 2
    # Never zero: a single replica at a time still makes progress
    assert compute_batch_size(3, p) == 1
    assert compute_batch_size(20, UpdatePolicy(min_in_service=3, max_batch_size=4)) == 4


def test_distribute_gives_remainder_to_first_zones():
    assert distribute(7, ["c", "a", "b"]) == {"a": 3, "b": 2, "c": 2}
    assert distribute(6, ZONES) == {z: 2 for z in ZONES}
    assert distribute(3, []) == {}


def test_pick_zone_least_populated_then_name():
    assert pick_zone({"a": 2, "b": 1, "c": 1}, ["a", "b", "c"]) == "b"
    assert pick_zone({}, ["c", "b"]) == "b"


def test_select_retirees_oldest_first_across_zones():
    rig = Rig()
    snap = rig.fleet.snapshot()
    picked = select_retirees(snap.replicas, 3)
    assert sorted(r.zone for r in picked) == sorted(ZONES)
    # r-001, r-003, r-005 are the oldest in each zone
    assert sorted(r.id for r in picked) == ["r-001", "r-003", "r-005"]


def test_select_retirees_drains_fullest_zone_first():
    rig = Rig()
    snap = rig.fleet.snapshot()
    uneven = [r for r in snap.replicas if r.id != "r-003"]  # zone b has one left
    picked = select_retirees(uneven, 2)
    assert [r.zone for r in picked] == ["eu-west-1a", "eu-west-1c"]


def test_plan_for_six_replicas_is_two_batches_of_three():
    rig = Rig()
    plan = plan_update(rig.fleet.snapshot(), NEW, UpdatePolicy(min_in_service=3, max_batch_size=3))
    assert len(plan.batches) == 2
    for batch in plan.batches:
        assert len(batch.retire) == 3
        assert sorted(batch.zones) == sorted(ZONES)
    retired = [rid for b in plan.batches for rid in b.retire]
    assert sorted(retired) == sorted(rig.initial_ids)


def test_plan_is_empty_when_fleet_already_on_spec():
    rig = Rig()
    plan = plan_update(rig.fleet.snapshot(), OLD, UpdatePolicy(min_in_service=3, max_batch_size=3))
    assert plan.batches == ()


def test_surplus_replicas_cover_replacements():
    rig = Rig()
    snap = rig.fleet.snapshot()
    # A new-spec replica launched by scale-out, desired unchanged
    extra = Replica(id="r-900", zone="eu-west-1a", spec=NEW, created_at=5000.0)
    snap = snap.with_replica(extra)
    batch = next_batch(snap, NEW, UpdatePolicy(min_in_service=3, max_batch_size=3))
    assert len(batch.retire) == 3
    assert len(batch.zones) == 2


def test_replacements_move_out_of_dropped_zones():
    rig = Rig()
    narrowed = replace(NEW, zones=("eu-west-1a", "eu-west-1b"))
    plan = plan_update(rig.fleet.snapshot(), narrowed, UpdatePolicy(min_in_service=3, max_batch_size=3))
    zones = [z for b in plan.batches for z in b.zones]
    assert "eu-west-1c" not in zones
    assert len(zones) == 6


def test_select_for_shrink_prefers_outdated_then_fullest_zone():
    rig = Rig()
    snap = rig.fleet.snapshot()
    picked = select_for_shrink(snap, 2)
    assert [r.id for r in picked] == ["r-001", "r-003"]

    # Replicas not on the launch spec go first
    snap = replace(snap, launch_spec=NEW).with_replica(
        Replica(id="r-900", zone="eu-west-1c", spec=NEW, created_at=1.0)
    )
    picked = select_for_shrink(snap, 1)
    assert picked[0].spec == OLD
