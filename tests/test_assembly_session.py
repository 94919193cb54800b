"""
Integration tests for src/assembly_session.py.

These drive a whole order through AssemblySession with a VirtualClock:
prepare, box scan, scale samples, timer ticks. Qt signals are observed
through plain connected callables (direct connections fire synchronously,
no event loop needed); the timer pump tests use pytest-qt's qtbot.
"""

import pytest

import assembly_session as asm
import logger
import scan_router as sr
import signal_classifier as sc
import weight_validator as wv
from assembly_config import AssemblyConfig, PackingSettings
from assembly_session import AssemblySession
from conftest import FakeLookup, make_product
from exceptions import PackingInfeasible, UnallocatedPortions
from models import BoxDefinition, ItemStatus, OrderLine, WeightSample

STABLE_TAIL = b'\x01\x00\x00'
UNSTABLE_TAIL = b'\x01\x00\x04'


def stable(weight):
    return WeightSample(weight=weight, raw_bytes=STABLE_TAIL)


def statuses(session):
    return {item.id: item.status for item in session.model.items}


class SignalRecorder:
    """Collects emissions of every session signal."""

    def __init__(self, session):
        self.transitions = []
        self.rejections = []
        self.infeasible = []
        self.classified = []
        self.boxes = []
        self.orders = 0
        session.item_transitioned.connect(lambda *args: self.transitions.append(args))
        session.scan_rejected.connect(lambda *args: self.rejections.append(args))
        session.packing_infeasible.connect(self.infeasible.append)
        session.weight_classified.connect(lambda *args: self.classified.append(args))
        session.box_completed.connect(self.boxes.append)
        session.order_completed.connect(self._order_done)

    def _order_done(self):
        self.orders += 1


@pytest.fixture
def session(lookup, boxes, clock):
    return AssemblySession(lookup, boxes, clock=clock, order_id='ORD-1001')


@pytest.fixture
def recorder(session):
    return SignalRecorder(session)


@pytest.fixture
def lunch_order():
    # Borscht 0.42 kg + Chicken Kiev 0.33 kg, one Small box (tare 0.3 kg)
    return [OrderLine('SOUP', 1), OrderLine('MAIN', 1)]


def weigh_box(session, clock):
    session.process_scan('BOX-S')
    session.process_weight_sample(stable(0.3))
    clock.advance(1.5)
    session.tick()


# ============================================================================
# Preparation
# ============================================================================

class TestPrepare:

    def test_single_box_order(self, session, lunch_order):
        model, status = session.prepare(lunch_order)

        assert status == asm.ORDER_LOADED
        assert model is session.model
        assert [item.id for item in model.items] == ['box_1', 'product_1', 'product_2']
        assert session.plan.box.marking == 'S-10'
        assert session.allocation is None
        assert session.errors == []

    def test_order_id_is_stamped_on_log_context(self, session, lunch_order):
        session.prepare(lunch_order)
        assert logger._order_id.get() == 'ORD-1001'

    def test_next_session_does_not_inherit_order_id(self, lookup, boxes, clock, lunch_order):
        AssemblySession(lookup, boxes, clock=clock, order_id='ORD-A').prepare(lunch_order)
        assert logger._order_id.get() == 'ORD-A'

        AssemblySession(lookup, boxes, clock=clock).prepare(lunch_order)

        assert logger._order_id.get() is None

    def test_preview_starts_with_the_box(self, session, lunch_order):
        session.prepare(lunch_order)
        preview = session.preview()

        assert preview.item_id == 'box_1'
        assert preview.expected == pytest.approx(0.3)

    def test_kit_orders_are_expanded(self, session):
        session.prepare([OrderLine('LUNCH', 2)])
        names = {item.name: item.quantity for item in session.model.items if item.is_product}
        assert names == {'Borscht': 2, 'Chicken Kiev': 2}

    def test_lookup_failures_are_reported_not_blocking(self, session):
        model, status = session.prepare([OrderLine('SOUP', 1), OrderLine('GHOST', 1)])

        assert status == asm.ORDER_LOADED
        assert len(session.errors) == 1
        assert any(item.name == 'Unknown product (GHOST)' for item in model.items)

    def test_no_box_fits(self, lookup, clock):
        session = AssemblySession(lookup, [], clock=clock)
        recorder = SignalRecorder(session)

        model, status = session.prepare([OrderLine('SOUP', 3)])

        assert model is None
        assert status == asm.PACKING_INFEASIBLE
        assert isinstance(session.errors[-1], PackingInfeasible)
        assert recorder.infeasible == ["No box configuration fits 3 portions"]

    def test_unallocated_portions_block_the_order(self, lookup, boxes, clock):
        config = AssemblyConfig(packing=PackingSettings(max_box_weight_kg=2.0))
        session = AssemblySession(lookup, boxes, config=config, clock=clock)
        recorder = SignalRecorder(session)

        model, status = session.prepare([OrderLine('SOUP', 30)])

        assert model is None
        assert status == asm.UNALLOCATED_PORTIONS
        assert isinstance(session.errors[-1], UnallocatedPortions)
        assert 'do not fit' in recorder.infeasible[0]

    def test_multi_box_order_is_split(self, session):
        session.prepare([OrderLine('SOUP', 30)])

        assert session.plan.box_count == 2
        ids = [item.id for item in session.model.items]
        assert ids == ['box_1', 'box_2', 'product_0_1', 'product_1_1']
        assert [i.quantity for i in session.model.items if i.is_product] == [15, 15]

    def test_economical_mode_override(self, session):
        session.prepare([OrderLine('SOUP', 11)], mode='economical')
        assert session.plan.box.marking == 'S-10'
        assert session.plan.has_overflow

    def test_ready_to_ship(self, session, recorder, lunch_order):
        session.prepare(lunch_order, ready_to_ship=True)

        assert session.model.is_complete()
        assert recorder.orders == 0
        assert session.process_scan('BOX-S').status == sr.BOX_ALREADY_SCANNED
        assert session.process_scan('4820002').status == sr.ITEM_ALREADY_DONE


# ============================================================================
# Full assembly flow
# ============================================================================

class TestAssemblyFlow:

    def test_order_is_assembled_end_to_end(self, session, recorder, clock, lunch_order):
        session.prepare(lunch_order)

        # Box phase
        assert session.process_scan('BOX-S').status == sr.BOX_SCANNED
        _, check = session.process_weight_sample(stable(0.3))
        assert check.passed
        assert statuses(session)['box_1'] == ItemStatus.SUCCESS

        clock.advance(1.5)
        assert len(session.tick()) == 1
        state = statuses(session)
        assert state['box_1'] == ItemStatus.DONE
        # First product in display order is selected automatically
        assert state['product_1'] == ItemStatus.PENDING

        # Borscht on top of the box
        _, check = session.process_weight_sample(stable(0.72))
        assert check.passed
        assert check.expected == pytest.approx(0.72)
        clock.advance(1.5)
        session.tick()
        assert statuses(session)['product_1'] == ItemStatus.DONE
        assert statuses(session)['product_2'] == ItemStatus.PENDING

        # Chicken Kiev, cumulative
        _, check = session.process_weight_sample(stable(1.05))
        assert check.passed
        assert recorder.boxes == []
        clock.advance(1.5)
        session.tick()

        assert session.model.is_complete()
        assert recorder.boxes == [0]
        assert recorder.orders == 1
        assert ('box_1', 'default', 'pending') in recorder.transitions
        assert ('product_2', 'success', 'done') in recorder.transitions
        assert session.preview() is None

    def test_cumulative_weight_sequence(self, clock):
        lookup = FakeLookup({
            'A': make_product('A', 'Apple pie', weight=330),
            'B': make_product('B', 'Beef stew', weight=420),
        })
        crate = BoxDefinition(name='Crate', marking='C-24', qnt_from=1, qnt_to=24,
                              self_weight=0.5, barcode='BOX-C')
        session = AssemblySession(lookup, [crate], clock=clock, order_id='ORD-2002')
        recorder = SignalRecorder(session)

        model, status = session.prepare([OrderLine('A', 3), OrderLine('B', 2)])
        assert status == asm.ORDER_LOADED
        assert session.plan.box_count == 1

        session.process_scan('BOX-C')
        assert session.process_weight_sample(stable(0.5))[1].passed
        clock.advance(1.5)
        session.tick()

        _, check = session.process_weight_sample(stable(1.49))
        assert check.passed
        assert check.expected == pytest.approx(1.49)
        clock.advance(1.5)
        session.tick()

        _, check = session.process_weight_sample(stable(2.33))
        assert check.passed
        assert check.expected == pytest.approx(2.33)
        clock.advance(1.5)
        session.tick()

        assert session.model.is_complete()
        assert recorder.boxes == [0]
        assert recorder.orders == 1

    def test_wrong_weight_is_retried(self, session, recorder, clock, lunch_order):
        session.prepare(lunch_order)
        weigh_box(session, clock)

        _, check = session.process_weight_sample(stable(0.9))
        assert check.status == wv.WEIGHT_OUT_OF_RANGE
        assert statuses(session)['product_1'] == ItemStatus.ERROR

        clock.advance(2.0)
        session.tick()
        assert statuses(session)['product_1'] == ItemStatus.PENDING

        _, check = session.process_weight_sample(stable(0.72))
        assert check.passed

    def test_repeated_reading_is_not_re_evaluated(self, session, clock, lunch_order):
        session.prepare(lunch_order)
        session.process_scan('BOX-S')
        session.process_weight_sample(stable(0.3))
        clock.advance(1.5)
        session.tick()

        # Scale still shows the box alone; the auto-selected product must not fail on it
        _, check = session.process_weight_sample(stable(0.31))
        assert check is None
        assert statuses(session)['product_1'] == ItemStatus.PENDING

    def test_unstable_samples_are_only_displayed(self, session, recorder, lunch_order):
        session.prepare(lunch_order)
        session.process_scan('BOX-S')

        classification, check = session.process_weight_sample(
            WeightSample(weight=0.3, raw_bytes=UNSTABLE_TAIL))

        assert classification.status == sc.UNSTABLE
        assert check is None
        assert recorder.classified == [(sc.UNSTABLE, 0.3)]
        assert statuses(session)['box_1'] == ItemStatus.PENDING

    def test_disconnected_scale(self, session, recorder, lunch_order):
        session.prepare(lunch_order)
        classification, check = session.process_weight_sample(None, connected=False)

        assert classification.status == sc.DISCONNECTED
        assert check is None
        assert recorder.classified == [(sc.DISCONNECTED, None)]

    def test_multi_box_order_advances_to_next_box(self, session, recorder, clock):
        session.prepare([OrderLine('SOUP', 30)])

        session.process_scan('BOX-M')
        session.process_weight(0.5)
        clock.advance(1.5)
        session.tick()
        assert statuses(session)['product_0_1'] == ItemStatus.PENDING

        # 15 x 0.42 kg on a 0.5 kg box
        assert session.process_weight(6.8).passed
        clock.advance(1.5)
        session.tick()

        assert recorder.boxes == [0]
        assert session.active_box == 1
        assert recorder.orders == 0
        assert session.process_scan('BOX-M').status == sr.BOX_SCANNED
        assert statuses(session)['box_2'] == ItemStatus.PENDING


# ============================================================================
# Scanning through the session
# ============================================================================

class TestSessionScanning:

    def test_rejections_are_emitted(self, session, recorder, lunch_order):
        session.prepare(lunch_order)
        result = session.process_scan('4820001')

        assert result.status == sr.BOX_NOT_FOUND
        assert recorder.rejections == [('4820001', sr.BOX_NOT_FOUND, result.message)]

    def test_duplicates_are_not_emitted(self, session, recorder, lunch_order):
        session.prepare(lunch_order)
        session.process_scan('4820001')
        result = session.process_scan('4820001')

        assert result.status == sr.DUPLICATE_SCAN
        assert len(recorder.rejections) == 1

    def test_manual_selection(self, session, clock, lunch_order):
        session.prepare(lunch_order)
        assert session.select_item('product_2').status == sr.BOX_NOT_WEIGHED

        weigh_box(session, clock)
        result = session.select_item('product_2')

        assert result.status == sr.ITEM_SELECTED
        state = statuses(session)
        assert state['product_2'] == ItemStatus.PENDING
        assert state['product_1'] == ItemStatus.DEFAULT

    def test_manual_selection_of_unknown_row(self, session, recorder, lunch_order):
        session.prepare(lunch_order)
        assert session.select_item('box_1').status == sr.ITEM_NOT_FOUND
        assert recorder.rejections[-1][0] == 'box_1'

    def test_commit_conflict_reroutes_without_duplicate_check(self, session, lunch_order):
        session.prepare(lunch_order)
        original_update = session.model.update
        calls = []

        def conflicting_update(fn):
            def wrapped(items):
                calls.append(items)
                if len(calls) == 1:
                    version, current = session.model.snapshot()
                    session.model.commit(version, current)
                return fn(items)
            return original_update(wrapped)

        session.model.update = conflicting_update
        result = session.process_scan('BOX-S')

        assert result.status == sr.BOX_SCANNED
        assert len(calls) == 2


# ============================================================================
# Timers and reset
# ============================================================================

class TestTimersAndReset:

    def test_stale_retry_timer_does_nothing(self, session, clock, lunch_order):
        session.prepare(lunch_order)
        weigh_box(session, clock)
        session.process_weight_sample(stable(0.9))
        assert statuses(session)['product_1'] == ItemStatus.ERROR

        # Operator picks the other product before the retry fires
        clock.advance(1.0)
        session.process_scan('4820002')
        clock.advance(1.0)

        assert session.tick() == []
        state = statuses(session)
        assert state['product_1'] == ItemStatus.DEFAULT
        assert state['product_2'] == ItemStatus.PENDING

    def test_reset_cancels_timers_and_reverts_rows(self, session, clock, lunch_order):
        session.prepare(lunch_order)
        weigh_box(session, clock)
        session.process_weight_sample(stable(0.72))
        assert statuses(session)['product_1'] == ItemStatus.SUCCESS

        session.reset_scan_state()

        assert len(session.timers) == 0
        assert statuses(session)['product_1'] == ItemStatus.PENDING
        clock.advance(5)
        assert session.tick() == []

    def test_reset_allows_immediate_rescan(self, session, lunch_order):
        session.prepare(lunch_order)
        session.process_scan('4820001')
        session.reset_scan_state()
        assert session.process_scan('4820001').status == sr.BOX_NOT_FOUND

    def test_reset_reverts_box_in_flight(self, session, lunch_order):
        session.prepare(lunch_order)
        session.process_scan('BOX-S')
        session.process_weight_sample(stable(0.6))
        assert statuses(session)['box_1'] == ItemStatus.ERROR

        session.reset_scan_state()
        assert statuses(session)['box_1'] == ItemStatus.AWAITING_CONFIRMATION

    def test_set_active_box(self, session):
        session.prepare([OrderLine('SOUP', 30)])

        assert session.set_active_box(1)
        assert session.active_box == 1
        assert not session.set_active_box(5)
        assert session.active_box == 1

    def test_to_records(self, session, lunch_order):
        session.prepare(lunch_order)
        records = session.to_records()
        assert [r['id'] for r in records] == ['product_1', 'product_2', 'box_1']


class TestTimerPump:

    def test_pump_starts_and_stops(self, qtbot, session):
        session.start_timer_pump(interval_ms=50)
        assert session._pump_timer is not None
        assert session._pump_timer.isActive()

        session.start_timer_pump()
        session.stop_timer_pump()
        assert session._pump_timer is None

    def test_pump_drives_tick(self, qtbot, session):
        ticks = []
        session.tick = lambda: ticks.append(1)
        # The QTimer is connected at start, so replace tick before starting it
        session.start_timer_pump(interval_ms=10)
        qtbot.waitUntil(lambda: len(ticks) > 0, timeout=1000)
        session.stop_timer_pump()
