from dataclasses import replace

import pytest

from conftest import NEW, OLD, FakeClock, FakeDirector, FakeProvider, probe_by_image

from fleetroll import db
from fleetroll.controller import Controller
from fleetroll.runtime import Lifecycle, ScalingPolicy, UpdatePolicy, UpdateState

POLICY = UpdatePolicy(min_in_service=3, max_batch_size=3)


def _controller(provider, clock, probe_fn=probe_by_image, sleep=None):
    director = FakeDirector()
    ctl = Controller(
        provider,
        director,
        probe_fn=probe_fn,
        clock=clock,
        sleep=sleep or clock.sleep,
        autorun=False,
        healthy_threshold=1,
    )
    director.fleet = ctl.fleet
    return ctl


def _create_fleet(ctl):
    ctl.create_fleet(OLD, 6)
    ctl.capacity.reconcile()  # admit the launches
    assert len(ctl.fleet.snapshot().in_service()) == 6


def test_fleet_record_round_trips_through_sqlite():
    clock = FakeClock()
    ctl = _controller(FakeProvider(clock), clock)
    _create_fleet(ctl)

    loaded = db.load_fleet("web")
    snap = ctl.fleet.snapshot()
    assert loaded.version == snap.version
    assert loaded.launch_spec == OLD
    assert {r.id: r for r in loaded.replicas} == {r.id: r for r in snap.replicas}


def test_scaling_policy_survives_restart():
    clock = FakeClock()
    provider = FakeProvider(clock)
    ctl = _controller(provider, clock)
    _create_fleet(ctl)
    ctl.submit_scaling_policy(ScalingPolicy(min=6, max=9, cooldown_s=300))

    again = _controller(provider, clock)
    assert again.capacity.policy == ScalingPolicy(min=6, max=9, cooldown_s=300)


def test_restart_resumes_from_last_completed_batch():
    clock = FakeClock()
    provider = FakeProvider(clock)
    holder = {}

    def probe(replica):
        # Stop the first controller after its first batch
        if "paused" not in holder:
            holder["paused"] = True
            holder["ctl"].orchestrator.pause_update(holder["id"])
        return probe_by_image(replica)

    ctl = _controller(provider, clock)
    _create_fleet(ctl)
    ctl.prober.probe_fn = probe
    st = ctl.submit_update(NEW, POLICY)
    holder.update(ctl=ctl, id=st.id)
    ctl.orchestrator.run(st.id)
    assert st.batch_index == 1

    # Resumed but the process dies before running another batch
    ctl.resume_update(st.id)
    assert db.load_updates("web")[0].state == UpdateState.IN_PROGRESS
    created_before = len(provider.created)

    restarted = _controller(provider, clock)
    resumable = restarted.recover()
    assert resumable == [st.id]
    assert restarted.director.list_in_service() == {r.id for r in restarted.fleet.snapshot().in_service()}

    done = restarted.orchestrator.run(st.id)
    assert done.state == UpdateState.COMPLETED
    assert done.batch_index == 2
    assert len(done.batches) == 2
    # Only the second batch was launched after the restart
    assert len(provider.created) - created_before == 3

    snap = restarted.fleet.snapshot()
    assert all(r.spec == NEW and r.lifecycle == Lifecycle.IN_SERVICE for r in snap.replicas)
    assert len(snap.replicas) == 6


def test_restart_gates_replicas_left_launching():
    clock = FakeClock()
    provider = FakeProvider(clock)
    ctl = _controller(provider, clock)
    _create_fleet(ctl)
    st = ctl.submit_update(NEW, POLICY)

    # Simulate a crash right after the first launches
    ctl.orchestrator._launch(st, ("eu-west-1a", "eu-west-1b", "eu-west-1c"))
    launched = [r.id for r in ctl.fleet.snapshot().replicas if r.update_id == st.id]
    assert len(launched) == 3

    restarted = _controller(provider, clock)
    restarted.recover()
    done = restarted.orchestrator.run(st.id)

    assert done.state == UpdateState.COMPLETED
    assert sorted(done.batches[0].launched) == sorted(launched)
    assert len(restarted.fleet.snapshot().replicas) == 6


class ControllerDied(Exception):
    pass


def test_restart_destroys_replicas_left_draining():
    clock = FakeClock()
    provider = FakeProvider(clock)
    policy = replace(POLICY, drain_grace_s=45)

    def sleep(seconds):
        if seconds == policy.drain_grace_s:
            raise ControllerDied()
        clock.sleep(seconds)

    ctl = _controller(provider, clock, sleep=sleep)
    _create_fleet(ctl)
    old_ids = {r.id for r in ctl.fleet.snapshot().replicas}
    st = ctl.submit_update(NEW, policy)
    with pytest.raises(ControllerDied):
        ctl.orchestrator.run(st.id)

    draining = [r.id for r in ctl.fleet.snapshot().replicas if r.lifecycle == Lifecycle.DRAINING]
    assert len(draining) == 3
    assert db.load_updates("web")[0].state == UpdateState.IN_PROGRESS

    restarted = _controller(provider, clock)
    restarted.recover()
    snap = restarted.fleet.snapshot()
    assert not [r for r in snap.replicas if r.lifecycle == Lifecycle.DRAINING]
    assert set(draining) <= set(provider.destroyed)
    assert len(snap.replicas) == 6

    done = restarted.orchestrator.run(st.id)
    assert done.state == UpdateState.COMPLETED
    snap = restarted.fleet.snapshot()
    assert len(snap.replicas) == 6
    assert all(r.spec == NEW and r.lifecycle == Lifecycle.IN_SERVICE for r in snap.replicas)
    assert old_ids <= set(provider.destroyed)
    assert set(provider.replicas) == {r.id for r in snap.replicas}
