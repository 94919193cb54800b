# Standard library imports
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

# Qt framework for signals/slots pattern
from PySide6.QtCore import QObject, QTimer, Signal

# Local imports
from assembly_config import AssemblyConfig
from box_allocator import AllocationResult, BoxAllocator
from box_planner import BoxPlan, recommend
from checklist_model import (
    ChecklistModel,
    box_indices,
    find_item,
    is_box_complete,
    is_order_complete,
    next_default,
    products_in_box,
    box_row,
    transition,
)
from exceptions import AssemblyError, InvalidTransitionError
from logger import get_logger, set_order_context
from models import FINAL_STATUSES, ChecklistItem, ItemStatus, OrderLine, WeightSample
from scan_router import (
    BOX_NOT_WEIGHED,
    DUPLICATE_SCAN,
    ITEM_ALREADY_DONE,
    ITEM_BEING_VERIFIED,
    ITEM_NOT_FOUND,
    ITEM_SELECTED,
    WRONG_BOX,
    ScanResult,
    ScanRouter,
    select_product,
)
from set_expander import ExpansionResult, SetExpander
from shared.clock import SystemClock
from signal_classifier import STABLE, Classification, SignalClassifier
from timer_registry import TimerEntry, TimerRegistry
from weight_validator import WeightCheck, WeightPreview, WeightValidator

logger = get_logger(__name__)

# Status strings returned by prepare()
ORDER_LOADED = "ORDER_LOADED"
PACKING_INFEASIBLE = "PACKING_INFEASIBLE"
UNALLOCATED_PORTIONS = "UNALLOCATED_PORTIONS"


class AssemblySession(QObject):
    """
    Runs the assembly of one order: checklist, scans, weighing and timers.

    The session owns every component for its order and is the only thing
    that commits to the checklist. Scanner codes, scale samples and timer
    ticks are pushed in from outside (the UI, the scale service, a QTimer);
    results go back as return values and as Qt signals, which the UI turns
    into toasts and sounds.

    Signals:
        item_transitioned(item_id, old_status, new_status)
        scan_rejected(code, status, message)
        packing_infeasible(message): prepare() could not build a checklist
        weight_classified(status, display_weight): every scale sample
        box_completed(box_index)
        order_completed()

    Attributes:
        model (ChecklistModel): Current checklist
        active_box (int): Index of the box being assembled
        expansion (ExpansionResult | None): Result of the last prepare()
        plan (BoxPlan | None): Box plan of the last prepare()
        allocation (AllocationResult | None): Per-box split when several boxes
        errors (List[AssemblyError]): Everything recorded by prepare()
    """
    item_transitioned = Signal(str, str, str)
    scan_rejected = Signal(str, str, str)
    packing_infeasible = Signal(str)
    weight_classified = Signal(str, object)
    box_completed = Signal(int)
    order_completed = Signal()

    def __init__(self, lookup, boxes: Iterable, config: Optional[AssemblyConfig] = None,
                 clock=None, order_id: Optional[str] = None):
        """
        Args:
            lookup: Product lookup (callable or object with resolve(sku))
            boxes: Box catalog (BoxDefinition list)
            config: AssemblyConfig; defaults when None
            clock: SystemClock by default, VirtualClock in tests
            order_id: Order identifier for logging and box labels
        """
        super().__init__()

        self.config = config or AssemblyConfig()
        self.clock = clock or SystemClock()
        self.boxes = list(boxes)
        self.order_id = order_id

        settings = self.config
        self.expander = SetExpander.from_settings(lookup, settings.expansion)
        self.allocator = BoxAllocator.from_settings(settings.packing)
        self.router = ScanRouter.from_settings(self.clock, settings.scanner)
        self.validator = WeightValidator(
            settings.tolerance,
            settle_delay=settings.assembly.settle_delay_seconds,
            retry_delay=settings.assembly.retry_delay_seconds,
        )
        self.classifier = SignalClassifier.from_settings(self.clock, settings.scale)
        self.timers = TimerRegistry(self.clock)

        self.model = ChecklistModel()
        self.active_box = 0
        self.expansion: Optional[ExpansionResult] = None
        self.plan: Optional[BoxPlan] = None
        self.allocation: Optional[AllocationResult] = None
        self.errors: List[AssemblyError] = []

        self._completed_boxes = set()
        self._order_done = False
        self._last_evaluated: Optional[float] = None
        self._pump_timer = None

        logger.info(f"AssemblySession created for order {order_id} with {len(self.boxes)} box types")

    # === Preparation ===

    def prepare(self, order_lines: Sequence[OrderLine], ready_to_ship: bool = False,
                mode: Optional[str] = None) -> Tuple[Optional[ChecklistModel], str]:
        """
        Expand the order, plan boxes, split items and build the checklist.

        Args:
            order_lines: Lines of the order
            ready_to_ship: Order already assembled; checklist starts finished
            mode: Planner mode, overriding [Assembly] PlannerMode

        Returns:
            (ChecklistModel, "ORDER_LOADED") on success, or
            (None, "PACKING_INFEASIBLE" | "UNALLOCATED_PORTIONS"); the
            blocking error is in ``errors`` and was emitted via packing_infeasible
        """
        # None clears the id a previous session left on this thread
        set_order_context(str(self.order_id) if self.order_id is not None else None)

        self._clear_runtime_state()
        self.errors = []
        self.plan = None
        self.allocation = None

        self.expansion = self.expander.expand(order_lines)
        self.errors.extend(self.expansion.errors)
        items = self.expansion.items

        self.plan = recommend(self.expansion.total_portions, self.boxes,
                              mode or self.config.assembly.planner_mode)
        if not self.plan.feasible:
            return self._block(self.plan.error, PACKING_INFEASIBLE)

        if self.plan.box_count > 1 and not ready_to_ship:
            self.allocation = self.allocator.allocate(
                items, self.plan.box_count, self.plan.portions_per_box, box_tare=self.plan.box.tare,
            )
            if self.allocation.error is not None:
                return self._block(self.allocation.error, UNALLOCATED_PORTIONS)

        self.model = ChecklistModel.build(
            items, self.plan, self.allocation,
            box_initial_status=self.config.assembly.box_initial_status,
            ready_to_ship=ready_to_ship,
        )
        self._mark_finished_boxes()

        logger.info(
            f"Order loaded: {len(items)} items, {self.plan.box_count} x {self.plan.box.marking}, "
            f"{len(self.errors)} issue(s)"
        )
        return self.model, ORDER_LOADED

    def load_checklist(self, model: ChecklistModel, active_box: int = 0):
        """Attach a checklist built elsewhere (e.g. without box rows)."""
        set_order_context(str(self.order_id) if self.order_id is not None else None)
        self._clear_runtime_state()
        self.model = model
        self.active_box = active_box
        self._mark_finished_boxes()

    def _mark_finished_boxes(self):
        items = self.model.items
        self._completed_boxes = {i for i in box_indices(items) if is_box_complete(items, i)}
        self._order_done = is_order_complete(items)

    def _block(self, error: AssemblyError, status: str) -> Tuple[None, str]:
        self.errors.append(error)
        message = error.get_display_message()
        logger.error(f"Order cannot be assembled ({status}): {error}")
        self.packing_infeasible.emit(message)
        return None, status

    def _clear_runtime_state(self):
        self.timers.cancel_all()
        self.router.reset()
        self.classifier.reset()
        self.active_box = 0
        self._completed_boxes = set()
        self._order_done = False
        self._last_evaluated = None

    # === Commit plumbing ===

    def _apply(self, compute: Callable[[Tuple[ChecklistItem, ...]], Any]) -> Any:
        """
        Run ``compute`` on a snapshot and commit its ``items``; emit the
        status changes of whichever attempt was committed.
        """
        def step(items):
            result = compute(items)
            return result.items, (items, result)

        before, result = self.model.update(step)
        if result.items is not None:
            self._after_commit(before, result.items)
        return result

    def _after_commit(self, before: Sequence[ChecklistItem], after: Sequence[ChecklistItem]):
        old_status = {item.id: item.status for item in before}
        for item in after:
            old = old_status.get(item.id)
            if old is not None and old != item.status:
                self.item_transitioned.emit(item.id, old.value, item.status.value)

        for index in box_indices(after):
            if index in self._completed_boxes or not is_box_complete(after, index):
                continue
            self._completed_boxes.add(index)
            logger.info(f"Box {index + 1} complete")
            self.box_completed.emit(index)
            if self.config.assembly.auto_advance_box and index == self.active_box:
                following = [i for i in box_indices(after) if i > index and i not in self._completed_boxes]
                if following:
                    self.set_active_box(following[0])

        if not self._order_done and is_order_complete(after):
            self._order_done = True
            logger.info(f"Order {self.order_id} assembled")
            self.order_completed.emit()

    # === Scanning ===

    def process_scan(self, code: str) -> ScanResult:
        """
        Route a scanned code against the active box and commit the outcome.

        Rejections (except ignored duplicates) are emitted via scan_rejected.
        """
        attempts = []

        def compute(items):
            result = self.router.route(code, items, self.active_box, check_duplicate=not attempts)
            attempts.append(result)
            return result

        result = self._apply(compute)
        if not result.accepted and result.status != DUPLICATE_SCAN:
            self.scan_rejected.emit(str(code), result.status, result.message)
        return result

    def select_item(self, item_id: str) -> ScanResult:
        """Select a product row for weighing by hand, as a scan of its code would."""
        def compute(items):
            item = find_item(items, item_id)
            if item is None or not item.is_product:
                return ScanResult(ITEM_NOT_FOUND, item_id, message=f"No product row {item_id}")
            if item.box_index != self.active_box:
                return ScanResult(WRONG_BOX, item_id,
                                  message=f"{item.name} belongs to box {item.box_index + 1}")
            box = box_row(items, item.box_index)
            if box is not None and box.status not in FINAL_STATUSES:
                return ScanResult(BOX_NOT_WEIGHED, item_id, message=f"Weigh {box.name} first")
            if item.status == ItemStatus.DONE:
                return ScanResult(ITEM_ALREADY_DONE, item_id, message=f"{item.name} is already done")
            if item.status == ItemStatus.SUCCESS:
                return ScanResult(ITEM_BEING_VERIFIED, item_id, message=f"{item.name} is being verified")
            if item.status == ItemStatus.PENDING:
                return ScanResult(ITEM_SELECTED, item_id, message=f"{item.name} is already selected")
            return ScanResult(ITEM_SELECTED, item_id, select_product(items, item_id),
                              f"{item.name} selected")

        result = self._apply(compute)
        if not result.accepted:
            self.scan_rejected.emit(item_id, result.status, result.message)
        return result

    # === Weighing ===

    def process_weight_sample(self, sample: Optional[WeightSample],
                              connected: bool = True) -> Tuple[Classification, Optional[WeightCheck]]:
        """
        Classify a raw scale sample; a stable reading that moved far enough
        from the last evaluated one is checked against the checklist.
        """
        classification = self.classifier.classify(sample, connected)
        self.weight_classified.emit(classification.status, classification.display_weight)

        if classification.status != STABLE:
            return classification, None

        weight = classification.accepted_weight
        threshold = self.config.scale.weight_change_threshold_kg
        if self._last_evaluated is not None and abs(weight - self._last_evaluated) < threshold:
            return classification, None

        self._last_evaluated = weight
        return classification, self.process_weight(weight)

    def process_weight(self, weight: Optional[float]) -> WeightCheck:
        """Check a stable weight against the active box and schedule the follow-up."""
        check = self._apply(lambda items: self.validator.evaluate(weight, items, self.active_box))
        for follow_up in check.follow_ups:
            self.timers.schedule(
                follow_up.item_id, follow_up.target, follow_up.delay,
                expected_status=follow_up.expected_status, box_index=follow_up.box_index,
            )
        return check

    def preview(self) -> Optional[WeightPreview]:
        return self.validator.preview(self.model.items, self.active_box)

    # === Timers ===

    def tick(self) -> List[TimerEntry]:
        """
        Apply every timer that is due. Returns the entries that changed a row;
        entries whose row left the scheduled status are dropped.
        """
        applied = []
        for entry in self.timers.due():
            result = self._apply(lambda items, e=entry: _Outcome(self._fire(items, e)))
            if result.items is not None:
                applied.append(entry)
        return applied

    def _fire(self, items: Sequence[ChecklistItem], entry: TimerEntry):
        item = find_item(items, entry.item_id)
        if item is None or (entry.expected_status is not None and item.status != entry.expected_status):
            logger.debug(f"Timer for {entry.item_id} dropped, row no longer {entry.expected_status}")
            return None

        try:
            next_items = transition(items, entry.item_id, entry.target)
            if entry.target == ItemStatus.DONE:
                has_pending = any(
                    row.status == ItemStatus.PENDING for row in products_in_box(next_items, entry.box_index)
                )
                candidate = next_default(next_items, entry.box_index)
                if not has_pending and candidate is not None:
                    next_items = select_product(next_items, candidate.id)
                    logger.info(f"Auto-selected {candidate.id} ({candidate.name})")
        except InvalidTransitionError as e:
            logger.error(f"Timer transition rejected: {e}")
            return None
        return next_items

    def start_timer_pump(self, interval_ms: Optional[int] = None):
        """
        Drive tick() from a QTimer. Requires a running Qt event loop;
        without one, call tick() directly.
        """
        if self._pump_timer is not None:
            logger.debug("Timer pump already running, skipping start")
            return

        self._pump_timer = QTimer()
        self._pump_timer.timeout.connect(self.tick)
        self._pump_timer.start(interval_ms or self.config.assembly.timer_pump_interval_ms)
        logger.info("Timer pump started")

    def stop_timer_pump(self):
        if self._pump_timer is not None:
            self._pump_timer.stop()
            self._pump_timer = None
            logger.info("Timer pump stopped")

    # === Reset / navigation ===

    def reset_scan_state(self):
        """
        Cancel pending timers, clear the scan cooldown and put rows caught
        mid-verification (success/error) back to be weighed again.
        """
        cancelled = self.timers.cancel_all()
        self.router.reset()
        self.classifier.reset()
        self._last_evaluated = None

        self._apply(lambda items: _Outcome(_revert_in_flight(items)))
        logger.info(f"Scan state reset, {cancelled} timer(s) cancelled")

    def set_active_box(self, box_index: int) -> bool:
        indices = box_indices(self.model.items)
        if box_index not in indices:
            logger.warning(f"Box index {box_index} not in checklist {indices}")
            return False
        if box_index != self.active_box:
            logger.info(f"Active box: {self.active_box + 1} -> {box_index + 1}")
        self.active_box = box_index
        self._last_evaluated = None
        return True

    # === Export ===

    def to_records(self) -> List[Dict[str, Any]]:
        return self.model.to_records()


class _Outcome:
    """Gives a bare item tuple (or None) the ``items`` attribute _apply expects."""

    def __init__(self, items):
        self.items = items


def _revert_in_flight(items: Sequence[ChecklistItem]):
    """
    Rows in success/error go back to pending (products) or
    awaiting_confirmation (boxes), keeping at most one active row per box.
    """
    result = tuple(items)
    changed = False
    for index in box_indices(result):
        box = box_row(result, index)
        box_active = False
        if box is not None and box.status in (ItemStatus.SUCCESS, ItemStatus.ERROR):
            result = transition(result, box.id, ItemStatus.AWAITING_CONFIRMATION)
            box_active = True
            changed = True
        elif box is not None and box.status in (ItemStatus.PENDING, ItemStatus.AWAITING_CONFIRMATION):
            box_active = True

        products = products_in_box(result, index)
        has_pending = box_active or any(p.status == ItemStatus.PENDING for p in products)
        for product in products:
            if product.status not in (ItemStatus.SUCCESS, ItemStatus.ERROR):
                continue
            result = transition(result, product.id, ItemStatus.PENDING)
            if has_pending:
                result = transition(result, product.id, ItemStatus.DEFAULT)
            has_pending = True
            changed = True
    return result if changed else None
