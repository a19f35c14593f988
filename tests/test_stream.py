"""Tests for Stream and EventStream — lazy operators, completion, errors."""

import gc
import itertools
import logging
import threading

from pubfx import DeliveryContext, EventStream, ReactiveState, Stream, StreamTerminalError


class _Recorder:
    """Collects everything a subscription receives. Retains its handles."""

    def __init__(self):
        self.subscriptions = []
        self.values = []
        self.errors = []
        self.completions = 0

    def subscribe(self, stream):
        sub = stream.subscribe(self.values.append, self.errors.append, self._complete)
        self.subscriptions.append(sub)
        return sub

    def _complete(self):
        self.completions += 1


class TestEmitSubscribe:
    """Core EventStream emit/subscribe behavior."""

    def test_subscribe_receives_emitted_values(self):
        stream = EventStream()
        received = []
        sub = stream.subscribe(received.append)
        stream.emit(1)
        stream.emit(2)
        assert received == [1, 2]
        assert sub.active

    def test_multiple_subscribers_in_order(self):
        stream = EventStream()
        log = []
        a = stream.subscribe(lambda v: log.append(("a", v)))
        b = stream.subscribe(lambda v: log.append(("b", v)))
        stream.emit("x")
        assert log == [("a", "x"), ("b", "x")]
        assert a.active and b.active

    def test_cancel(self):
        stream = EventStream()
        received = []
        sub = stream.subscribe(received.append)
        stream.emit(1)
        sub.cancel()
        stream.emit(2)
        assert received == [1]
        assert stream.subscriber_count == 0

    def test_cancel_idempotent(self):
        stream = EventStream()
        sub = stream.subscribe(lambda v: None)
        sub.cancel()
        sub.cancel()  # should not raise
        assert sub.cancelled

    def test_late_subscriber_misses_earlier_values(self):
        stream = EventStream()
        early, late = [], []
        s1 = stream.subscribe(early.append)
        stream.emit(1)
        s2 = stream.subscribe(late.append)
        stream.emit(2)
        assert early == [1, 2]
        assert late == [2]
        assert s1.active and s2.active

    def test_failing_subscriber_is_isolated(self, caplog):
        stream = EventStream()
        received = []

        def boom(v):
            raise RuntimeError("boom")

        s1 = stream.subscribe(boom)
        s2 = stream.subscribe(received.append)
        with caplog.at_level(logging.ERROR, logger="pubfx.stream"):
            stream.emit(1)
        assert received == [1]
        assert s1.active and s2.active
        assert "on_value failed" in caplog.text

    def test_emit_through_context_marshals(self):
        marshaled = []
        stream = EventStream(DeliveryContext(marshal=marshaled.append))
        received = []
        sub = stream.subscribe(received.append)
        t = threading.Thread(target=lambda: stream.emit(5))
        t.start()
        t.join()
        assert received == []
        marshaled[0]()
        assert received == [5]
        assert sub.active


class TestDetachment:
    def test_dropped_handle_detaches(self):
        stream = EventStream()
        received = []
        sub = stream.subscribe(received.append)
        assert stream.subscriber_count == 1
        del sub
        gc.collect()
        stream.emit(1)
        assert received == []
        assert stream.subscriber_count == 0

    def test_dropped_chain_detaches(self):
        stream = EventStream()
        received = []
        sub = stream.map(lambda v: v + 1).filter(lambda v: True).subscribe(received.append)
        stream.emit(1)
        del sub
        gc.collect()
        stream.emit(2)
        assert received == [2]
        assert stream.subscriber_count == 0

    def test_cancel_chain_detaches_root(self):
        stream = EventStream()
        sub = stream.map(lambda v: v).subscribe(lambda v: None)
        assert stream.subscriber_count == 1
        sub.cancel()
        assert stream.subscriber_count == 0


class TestFiniteSources:
    def test_just_replays_to_each_subscriber(self):
        stream = Stream.just(7)
        first, second = _Recorder(), _Recorder()
        first.subscribe(stream)
        second.subscribe(stream)
        assert first.values == [7] and first.completions == 1
        assert second.values == [7] and second.completions == 1

    def test_from_iterable(self):
        rec = _Recorder()
        sub = rec.subscribe(Stream.from_iterable([1, 2, 3]))
        assert rec.values == [1, 2, 3]
        assert rec.completions == 1
        assert not sub.active

    def test_one_shot_iterator_is_consumed_once(self):
        stream = Stream.from_iterable(iter([1, 2]))
        first, second = _Recorder(), _Recorder()
        first.subscribe(stream)
        second.subscribe(stream)
        assert first.values == [1, 2]
        assert second.values == []
        assert second.completions == 1

    def test_failing_iterable(self):
        def gen():
            yield 1
            raise KeyError("gone")

        rec = _Recorder()
        rec.subscribe(Stream.from_iterable(gen()))
        assert rec.values == [1]
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], StreamTerminalError)
        assert isinstance(rec.errors[0].__cause__, KeyError)
        assert rec.completions == 0

    def test_fail_and_empty(self):
        failed, empty = _Recorder(), _Recorder()
        failed.subscribe(Stream.fail(ValueError("x")))
        empty.subscribe(Stream.empty())
        assert isinstance(failed.errors[0].__cause__, ValueError)
        assert failed.completions == 0
        assert empty.values == [] and empty.completions == 1


class TestCreate:
    def test_sequence(self):
        rec = _Recorder()
        rec.subscribe(Stream.create([1, 2]))
        assert rec.values == [1, 2]

    def test_strings_and_mappings_are_single_values(self):
        a, b = _Recorder(), _Recorder()
        a.subscribe(Stream.create("abc"))
        b.subscribe(Stream.create({"k": 1}))
        assert a.values == ["abc"]
        assert b.values == [{"k": 1}]

    def test_stream_passes_through(self):
        stream = EventStream()
        assert Stream.create(stream) is stream

    def test_reactive_state_is_bridged(self):
        state = ReactiveState(3)
        received = []
        sub = Stream.create(state).subscribe(received.append)
        state.set(4)
        assert received == [3, 4]
        assert sub.active


class TestOperators:
    def test_map(self):
        stream = EventStream()
        received = []
        sub = stream.map(lambda v: v * 2).subscribe(received.append)
        stream.emit(3)
        stream.emit(5)
        assert received == [6, 10]
        assert sub.active

    def test_chained_maps(self):
        stream = EventStream()
        received = []
        sub = stream.map(lambda v: v + 1).map(lambda v: v * 10).subscribe(received.append)
        stream.emit(2)
        assert received == [30]
        assert sub.active

    def test_filter_then_map(self):
        stream = EventStream()
        received = []
        sub = stream.filter(lambda v: v > 0).map(lambda v: v * 10).subscribe(received.append)
        stream.emit(-1)
        stream.emit(3)
        assert received == [30]
        assert sub.active

    def test_lazy_until_subscribed(self):
        calls = []
        chain = Stream.from_iterable([1, 2]).map(lambda v: calls.append(v) or v)
        assert calls == []
        chain.subscribe(lambda v: None)
        assert calls == [1, 2]

    def test_each_subscriber_gets_its_own_chain(self):
        chain = Stream.from_iterable([1, 2]).map(lambda v: v * 3)
        a, b = _Recorder(), _Recorder()
        a.subscribe(chain)
        b.subscribe(chain)
        assert a.values == b.values == [3, 6]

    def test_take_stops_infinite_source(self):
        rec = _Recorder()
        rec.subscribe(Stream.from_iterable(itertools.count()).take(3))
        assert rec.values == [0, 1, 2]
        assert rec.completions == 1

    def test_take_zero(self):
        rec = _Recorder()
        rec.subscribe(Stream.from_iterable(itertools.count()).take(0))
        assert rec.values == []
        assert rec.completions == 1

    def test_take_detaches_from_live_source(self):
        stream = EventStream()
        rec = _Recorder()
        sub = rec.subscribe(stream.take(1))
        stream.emit("a")
        stream.emit("b")
        assert rec.values == ["a"]
        assert rec.completions == 1
        assert stream.subscriber_count == 0
        assert not sub.active


class TestCombineLatest:
    def test_waits_for_both_then_emits_per_upstream(self):
        a, b = EventStream(), EventStream()
        received = []
        sub = a.combine_latest(b).subscribe(received.append)

        a.emit(1)
        a.emit(2)
        assert received == []

        b.emit("x")
        assert received == [(2, "x")]

        a.emit(3)
        b.emit("y")
        assert received == [(2, "x"), (3, "x"), (3, "y")]
        assert sub.active

    def test_combiner(self):
        a, b = EventStream(), EventStream()
        received = []
        sub = a.combine_latest(b, lambda x, y: x + y).subscribe(received.append)
        a.emit(1)
        b.emit(10)
        assert received == [11]
        assert sub.active

    def test_completes_when_both_complete(self):
        a, b = EventStream(), EventStream()
        rec = _Recorder()
        rec.subscribe(a.combine_latest(b))
        a.emit(1)
        b.emit(2)
        a.complete()
        assert rec.completions == 0
        b.emit(3)
        assert rec.values == [(1, 2), (1, 3)]
        b.complete()
        assert rec.completions == 1

    def test_completes_early_when_side_never_emitted(self):
        a, b = EventStream(), EventStream()
        rec = _Recorder()
        rec.subscribe(a.combine_latest(b))
        b.emit(1)
        a.complete()
        assert rec.completions == 1
        assert a.subscriber_count == 0
        assert b.subscriber_count == 0

    def test_finite_sources(self):
        rec = _Recorder()
        rec.subscribe(Stream.just(1).combine_latest(Stream.from_iterable(["a", "b"])))
        assert rec.values == [(1, "a"), (1, "b")]
        assert rec.completions == 1


class TestZip:
    def test_pairs_by_index_and_buffers(self):
        a, b = EventStream(), EventStream()
        received = []
        sub = a.zip(b).subscribe(received.append)

        a.emit(1)
        a.emit(2)
        a.emit(3)
        b.emit("x")
        assert received == [(1, "x")]

        b.emit("y")
        b.emit("z")
        assert received == [(1, "x"), (2, "y"), (3, "z")]
        assert sub.active

    def test_completes_when_exhausted_side_is_drained(self):
        rec = _Recorder()
        rec.subscribe(Stream.from_iterable([1, 2, 3]).zip(Stream.from_iterable("ab")))
        assert rec.values == [(1, "a"), (2, "b")]
        assert rec.completions == 1

    def test_combiner(self):
        rec = _Recorder()
        rec.subscribe(Stream.from_iterable([1, 2]).zip(Stream.from_iterable([10, 20]), lambda x, y: x * y))
        assert rec.values == [10, 40]


class TestCompletion:
    def test_complete_exactly_once(self):
        stream = EventStream()
        rec = _Recorder()
        sub = rec.subscribe(stream)
        stream.emit(1)
        stream.complete()
        stream.complete()
        stream.emit(2)
        assert rec.values == [1]
        assert rec.completions == 1
        assert not sub.active

    def test_subscribe_after_complete(self):
        stream = EventStream()
        stream.complete()
        rec = _Recorder()
        rec.subscribe(stream)
        assert rec.completions == 1
        assert stream.closed

    def test_cancel_after_complete_is_noop(self):
        sub = Stream.just(1).subscribe()
        sub.cancel()
        assert not sub.cancelled


class TestErrors:
    def test_error_is_terminal(self):
        stream = EventStream()
        rec = _Recorder()
        rec.subscribe(stream)
        stream.error(OSError("disk"))
        stream.emit(1)
        stream.complete()
        assert rec.values == []
        assert rec.completions == 0
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], StreamTerminalError)
        assert isinstance(rec.errors[0].__cause__, OSError)

    def test_subscribe_after_error(self):
        stream = EventStream()
        stream.error(ValueError("x"))
        rec = _Recorder()
        rec.subscribe(stream)
        assert len(rec.errors) == 1

    def test_operator_failure_only_ends_its_subscription(self):
        stream = EventStream()
        failing, sibling = _Recorder(), _Recorder()
        failing.subscribe(stream.map(lambda v: 1 / v))
        s2 = sibling.subscribe(stream)

        stream.emit(0)
        stream.emit(1)

        assert len(failing.errors) == 1
        assert isinstance(failing.errors[0].__cause__, ZeroDivisionError)
        assert failing.values == []
        assert sibling.values == [0, 1]
        assert sibling.errors == []
        assert s2.active

    def test_error_propagates_through_chain(self):
        a, b = EventStream(), EventStream()
        rec = _Recorder()
        rec.subscribe(a.map(lambda v: v).combine_latest(b))
        b.error(RuntimeError("b failed"))
        assert len(rec.errors) == 1
        assert a.subscriber_count == 0

    def test_unhandled_error_is_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="pubfx.stream"):
            Stream.fail(RuntimeError("nobody listening")).subscribe(lambda v: None)
        assert "Unhandled stream error" in caplog.text


class TestDebounce:
    """debounce() operator."""

    def test_coalesces_rapid_events(self):
        stream = EventStream()
        received = []
        done = threading.Event()

        def on_value(v):
            received.append(v)
            done.set()

        sub = stream.debounce(0.05).subscribe(on_value)

        # Rapid burst — only the last should fire
        stream.emit(1)
        stream.emit(2)
        stream.emit(3)

        done.wait(timeout=1)
        assert received == [3]
        assert sub.active

    def test_separate_bursts(self):
        stream = EventStream()
        received = []
        event = threading.Event()

        def on_value(v):
            received.append(v)
            event.set()

        sub = stream.debounce(0.03).subscribe(on_value)

        stream.emit("a")
        event.wait(timeout=1)
        event.clear()

        stream.emit("b")
        event.wait(timeout=1)

        assert received == ["a", "b"]
        assert sub.active

    def test_complete_flushes_pending(self):
        stream = EventStream()
        rec = _Recorder()
        rec.subscribe(stream.debounce(10))
        stream.emit(1)
        stream.complete()
        assert rec.values == [1]
        assert rec.completions == 1

    def test_delivers_through_context(self):
        marshaled = []
        fired = threading.Event()

        def _marshal(fn):
            marshaled.append(fn)
            fired.set()

        ctx = DeliveryContext(marshal=_marshal)
        stream = EventStream()
        received = []
        sub = stream.debounce(0.01, context=ctx).subscribe(received.append)

        stream.emit("v")
        fired.wait(timeout=1)

        assert received == []
        marshaled[0]()
        assert received == ["v"]
        assert sub.active
