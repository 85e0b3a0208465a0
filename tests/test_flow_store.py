"""
Runaway Guard — Flow Store Tests
"""

import os
import sys
import threading
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from guard.flow_store import CorrelationFlow, FlowInvariantError, FlowStore
from guard.logging import NullSink


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSink(NullSink):
    def __init__(self):
        self.created = []
        self.evicted = []

    def on_flow_created(self, correlation_id, start_time):
        self.created.append(correlation_id)

    def on_flow_evicted(self, correlation_id, age_seconds, trigger):
        self.evicted.append((correlation_id, trigger))


def _store(**kwargs):
    clock = kwargs.pop("clock", FakeClock())
    sink = kwargs.pop("sink", NullSink())
    return FlowStore(clock=clock, sink=sink, **kwargs), clock


class TestCreateAndRead(unittest.TestCase):
    def test_get_or_create_new_flow(self):
        store, clock = _store()
        flow = store.get_or_create("c1")
        self.assertEqual(flow.correlation_id, "c1")
        self.assertEqual(flow.raw_chain, ())
        self.assertEqual(flow.start_time, clock.now)
        self.assertIsNone(flow.last_call_time)
        self.assertEqual(flow.call_count, 0)

    def test_get_or_create_returns_existing(self):
        store, clock = _store()
        first = store.get_or_create("c1")
        clock.advance(10)
        second = store.get_or_create("c1")
        self.assertEqual(second.start_time, first.start_time)
        self.assertEqual(len(store), 1)

    def test_get_absent(self):
        store, _ = _store()
        self.assertIsNone(store.get("missing"))
        self.assertNotIn("missing", store)

    def test_created_event(self):
        sink = RecordingSink()
        store, _ = _store(sink=sink)
        store.get_or_create("c1")
        store.get_or_create("c1")
        self.assertEqual(sink.created, ["c1"])

    def test_injected_backing_map(self):
        backing = {}
        store, _ = _store(backing=backing)
        store.get_or_create("c1")
        store.try_commit("c1", ["s1"])
        self.assertIsInstance(backing["c1"], CorrelationFlow)
        self.assertEqual(backing["c1"].raw_chain, ("s1",))


class TestCommit(unittest.TestCase):
    def test_commit_appends_and_derives(self):
        store, clock = _store()
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        clock.advance(2)
        store.try_commit("c1", ["1", "2"])
        clock.advance(3)
        flow = store.try_commit("c1", ["1", "2", "1"])

        self.assertEqual(flow.raw_chain, ("1", "2", "1"))
        self.assertEqual(flow.collapsed_stack, ["1"])
        self.assertEqual(flow.unique_sessions, frozenset({"1", "2"}))
        self.assertEqual(flow.call_count, 3)
        self.assertEqual(flow.last_call_time, clock.now)
        self.assertEqual(flow.call_timestamps, (1000.0, 1002.0, 1005.0))
        self.assertEqual(store.get("c1"), flow)

    def test_start_time_immutable(self):
        store, clock = _store()
        created = store.get_or_create("c1")
        clock.advance(30)
        flow = store.try_commit("c1", ["1"])
        self.assertEqual(flow.start_time, created.start_time)

    def test_history_is_bounded(self):
        store, clock = _store(history_size=3)
        store.get_or_create("c1")
        chain = []
        for i in range(5):
            chain.append(f"s{i}")
            store.try_commit("c1", chain)
            clock.advance(1)
        flow = store.get("c1")
        self.assertEqual(flow.call_count, 5)
        self.assertEqual(flow.call_timestamps, (1002.0, 1003.0, 1004.0))

    def test_commit_not_extending_raises(self):
        store, _ = _store()
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        with self.assertRaises(FlowInvariantError) as ctx:
            store.try_commit("c1", ["2", "3"])
        self.assertEqual(ctx.exception.stored_chain, ("1",))
        self.assertEqual(ctx.exception.proposed_chain, ("2", "3"))
        self.assertEqual(store.get("c1").raw_chain, ("1",))

    def test_commit_skipping_a_hop_raises(self):
        store, _ = _store()
        store.get_or_create("c1")
        with self.assertRaises(FlowInvariantError):
            store.try_commit("c1", ["1", "2"])
        self.assertEqual(store.get("c1").raw_chain, ())

    def test_commit_same_chain_raises(self):
        store, _ = _store()
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        with self.assertRaises(FlowInvariantError):
            store.try_commit("c1", ["1"])

    def test_commit_unknown_flow_raises(self):
        store, _ = _store()
        with self.assertRaises(FlowInvariantError) as ctx:
            store.try_commit("ghost", ["1"])
        self.assertIsNone(ctx.exception.stored_chain)
        self.assertIn("ghost", str(ctx.exception))


class TestExpiry(unittest.TestCase):
    def test_lazy_eviction_on_read(self):
        sink = RecordingSink()
        store, clock = _store(max_duration=300, sink=sink)
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        clock.advance(301)
        self.assertIsNone(store.get("c1"))
        self.assertNotIn("c1", store)
        self.assertEqual(sink.evicted, [("c1", "lazy")])

    def test_expired_id_restarts_fresh(self):
        store, clock = _store(max_duration=300)
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        clock.advance(360)
        flow = store.get_or_create("c1")
        self.assertEqual(flow.raw_chain, ())
        self.assertEqual(flow.start_time, clock.now)

    def test_not_expired_at_exact_limit(self):
        store, clock = _store(max_duration=300)
        store.get_or_create("c1")
        clock.advance(300)
        self.assertIsNotNone(store.get("c1"))

    def test_evict_expired_sweeps_untouched_flows(self):
        sink = RecordingSink()
        store, clock = _store(max_duration=60, sink=sink)
        store.get_or_create("old1")
        store.get_or_create("old2")
        clock.advance(50)
        store.get_or_create("young")
        clock.advance(20)

        evicted = store.evict_expired()

        self.assertEqual(sorted(evicted), ["old1", "old2"])
        self.assertEqual(len(store), 1)
        self.assertIn("young", store)
        self.assertEqual({t for _, t in sink.evicted}, {"sweep"})

    def test_evict_expired_explicit_now(self):
        store, clock = _store(max_duration=60)
        store.get_or_create("c1")
        self.assertEqual(store.evict_expired(now=clock.now + 30), [])
        self.assertEqual(store.evict_expired(now=clock.now + 61), ["c1"])


class TestIntrospection(unittest.TestCase):
    def test_snapshot(self):
        store, clock = _store()
        store.get_or_create("c1")
        store.try_commit("c1", ["1"])
        store.try_commit("c1", ["1", "2"])
        clock.advance(5)
        snap = store.snapshot()
        self.assertEqual(snap["c1"]["chain"], ["1", "2"])
        self.assertEqual(snap["c1"]["effective_depth"], 2)
        self.assertEqual(snap["c1"]["age_seconds"], 5.0)
        self.assertEqual(snap["c1"]["calls_in_window"], 2)

    def test_calls_in_window_is_sliding(self):
        store, clock = _store()
        store.get_or_create("c1")
        chain = []
        for i in range(4):
            chain.append(str(i))
            store.try_commit("c1", chain)
            clock.advance(30)
        # commits at 1000, 1030, 1060, 1090; now = 1120
        flow = store.get("c1")
        self.assertEqual(flow.calls_in_window(clock.now, 60), 2)
        self.assertEqual(flow.calls_in_window(clock.now, 90), 3)


class TestConcurrency(unittest.TestCase):
    def test_racing_commits_lose_no_hops(self):
        store = FlowStore(max_duration=3600, history_size=1000, sink=NullSink())
        store.get_or_create("shared")
        errors = []
        per_thread = 50

        def worker(tid):
            try:
                for j in range(per_thread):
                    with store.locked("shared"):
                        flow = store.get("shared")
                        store.try_commit("shared", flow.raw_chain + (f"t{tid}-{j}",))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(errors, [])
        flow = store.get("shared")
        self.assertEqual(flow.call_count, 8 * per_thread)
        self.assertEqual(len(flow.unique_sessions), 8 * per_thread)
        # each thread's hops stay in its own order
        for tid in range(8):
            mine = [s for s in flow.raw_chain if s.startswith(f"t{tid}-")]
            self.assertEqual(mine, [f"t{tid}-{j}" for j in range(per_thread)])

    def test_held_key_does_not_block_other_keys(self):
        store, _ = _store()
        store.get_or_create("a")
        holding = threading.Event()
        release = threading.Event()
        done = threading.Event()

        def holder():
            with store.locked("a"):
                holding.set()
                release.wait(timeout=5)

        def other():
            store.get_or_create("b")
            store.try_commit("b", ["1"])
            done.set()

        h = threading.Thread(target=holder)
        h.start()
        holding.wait(timeout=2)

        o = threading.Thread(target=other)
        o.start()
        self.assertTrue(done.wait(timeout=2))

        release.set()
        h.join(timeout=5)
        o.join(timeout=5)

    def test_held_key_blocks_same_key(self):
        store, _ = _store()
        store.get_or_create("a")
        holding = threading.Event()
        release = threading.Event()
        done = threading.Event()

        def holder():
            with store.locked("a"):
                holding.set()
                release.wait(timeout=5)

        def contender():
            store.try_commit("a", ["1"])
            done.set()

        h = threading.Thread(target=holder)
        h.start()
        holding.wait(timeout=2)
        c = threading.Thread(target=contender)
        c.start()

        self.assertFalse(done.wait(timeout=0.2))
        release.set()
        self.assertTrue(done.wait(timeout=2))
        h.join(timeout=5)
        c.join(timeout=5)

    def test_lock_table_released(self):
        store, _ = _store()
        with store.locked("a"):
            with store.locked("a"):
                pass
        self.assertEqual(store._locks, {})


if __name__ == "__main__":
    unittest.main()
