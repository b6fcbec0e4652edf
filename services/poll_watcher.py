"""
Poll Watcher
============

Adaptive polling that keeps client-visible state in step with asynchronous
server-side transitions (funding, proof review, payouts, external submissions)
without unbounded resource use.

Each watched (entity, view) pair is an explicit state machine:

    IDLE --start--> POLLING --terminal observation--> IDLE (final)
                       |----elapsed >= max--------> TIMED_OUT (manual refresh)
                       |----401/403/404/410-------> IDLE (blocked)
                       |----cancel----------------> IDLE (cancelled)

Intervals escalate monotonically with elapsed time and every profile has a hard
ceiling. The clock and sleep are injectable so tests drive time explicitly.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from config import Config
from models import (
    EntityKind,
    EscrowStatus,
    MilestoneStatus,
    ProofStatus,
    PaymentStatus,
    UnrecognizedStatusError,
)
from caching.view_cache import ViewCache, ViewKey
from services.consistency_graph import ConsistencyGraph, EntityIds, MutationKind, consistency_graph
from utils.api_errors import ApiError, ConflictError, ExternalLinkTerminalError, is_blocking
from utils.status_ledger import StatusLedger, status_ledger

logger = logging.getLogger(__name__)


class WatchState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    TIMED_OUT = "timed_out"


class StopReason(Enum):
    TERMINAL = "terminal"
    TIMED_OUT = "timed_out"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    NOT_TRACKED = "not_tracked"


# ============================================================================
# STATUS EXTRACTION
# ============================================================================

def _field(data: Any, name: str) -> Any:
    if data is None:
        return None
    if isinstance(data, Mapping):
        return data.get(name)
    return getattr(data, name, None)


def _path(data: Any, dotted: str) -> Any:
    current = data
    for part in dotted.split("."):
        current = _field(current, part)
        if current is None:
            return None
    return current


def _raw_status(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    return str(value).upper() if isinstance(value, str) and value else None


def _statuses_at(data: Any, paths: Sequence[str]) -> List[str]:
    found = []
    for dotted in paths:
        status = _raw_status(_path(data, dotted))
        if status:
            found.append(status)
    return found


def _collection_statuses(data: Any, name: str) -> List[str]:
    items = _field(data, name)
    if not isinstance(items, (list, tuple)):
        return []
    statuses = []
    for item in items:
        status = _raw_status(_field(item, "status"))
        if status:
            statuses.append(status)
    return statuses


def escrow_status_of(data: Any) -> Optional[str]:
    statuses = _statuses_at(data, ["escrow.status", "status"])
    return statuses[0] if statuses else None


def proof_status_of(data: Any) -> Optional[str]:
    statuses = _statuses_at(data, ["status", "proof.status"])
    return statuses[0] if statuses else None


def milestone_statuses_of(data: Any) -> List[str]:
    statuses = _collection_statuses(data, "milestones")
    if not statuses:
        statuses = _collection_statuses(_field(data, "escrow"), "milestones")
    return statuses


def payment_statuses_of(data: Any) -> List[str]:
    statuses = _statuses_at(data, ["payment.status"])
    if not _field(data, "payments") and not statuses:
        statuses = _statuses_at(data, ["status"])
    statuses.extend(_collection_statuses(data, "payments"))
    return statuses


# ============================================================================
# PROFILES
# ============================================================================

@dataclass(frozen=True)
class PollProfile:
    """
    How one kind of view is polled.

    interval(elapsed, fires) gives the next delay in seconds; should_continue(data)
    is False once the watched status is terminal; tracks(data) says whether the
    status is close-tracked without an explicit opt-in.
    """
    name: str
    max_duration: float
    interval: Callable[[float, int], float]
    should_continue: Callable[[Any], bool]
    tracks: Callable[[Any], bool]
    timeout_message: str
    settle_mutation: Optional[MutationKind] = None


def stepped(steps: Sequence[Tuple[Optional[float], float]]) -> Callable[[float, int], float]:
    """Interval schedule from (elapsed_below, interval) steps; None closes the schedule"""
    def interval(elapsed: float, fires: int) -> float:
        for upper, seconds in steps:
            if upper is None or elapsed < upper:
                return seconds
        return steps[-1][1]
    return interval


def escalating(initial: float, factor: float, ceiling: float) -> Callable[[float, int], float]:
    """Interval growing by `factor` after each fire, capped at `ceiling`"""
    def interval(elapsed: float, fires: int) -> float:
        return min(ceiling, max(initial, round(initial * (factor ** fires), 2)))
    return interval


def _escrow_unfunded(data: Any, ledger: StatusLedger) -> bool:
    status = escrow_status_of(data)
    if status is None:
        return True
    member = ledger.parse_status(EntityKind.ESCROW, status)
    return member in (EscrowStatus.DRAFT, EscrowStatus.ACTIVE)


def _proof_pending(data: Any, ledger: StatusLedger) -> bool:
    status = proof_status_of(data)
    if status is None:
        return True
    return ledger.parse_status(EntityKind.PROOF, status) is ProofStatus.PENDING


_ACTIVE_MILESTONE = frozenset({MilestoneStatus.PENDING_REVIEW, MilestoneStatus.PAYING})


def _milestones_moving(data: Any, ledger: StatusLedger) -> bool:
    statuses = milestone_statuses_of(data)
    if not statuses:
        return True
    return any(ledger.parse_status(EntityKind.MILESTONE, s) in _ACTIVE_MILESTONE for s in statuses)


def _payout_open(data: Any, ledger: StatusLedger) -> bool:
    statuses = payment_statuses_of(data)
    if not statuses:
        return True
    return any(not ledger.is_terminal(EntityKind.PAYMENT, s) for s in statuses)


def _payout_in_flight(data: Any, ledger: StatusLedger) -> bool:
    statuses = payment_statuses_of(data)
    return any(ledger.parse_status(EntityKind.PAYMENT, s) is PaymentStatus.SENT for s in statuses)


def _external_open(data: Any, ledger: StatusLedger) -> bool:
    if _field(data, "terminal"):
        return False
    status = proof_status_of(data)
    return status is None or not ledger.is_terminal(EntityKind.PROOF, status)


def build_profiles(ledger: Optional[StatusLedger] = None) -> Dict[str, PollProfile]:
    ledger = ledger or status_ledger
    return {
        "funding_escrow": PollProfile(
            name="funding_escrow",
            max_duration=5 * 60,
            interval=stepped([(60, 3), (None, 10)]),
            should_continue=lambda data: _escrow_unfunded(data, ledger),
            tracks=lambda data: escrow_status_of(data) == EscrowStatus.DRAFT.value,
            timeout_message="Funding is taking longer than expected. Please refresh later for the latest status.",
            settle_mutation=MutationKind.ESCROW_DEPOSIT,
        ),
        "proof_review": PollProfile(
            name="proof_review",
            max_duration=5 * 60,
            interval=stepped([(120, 5), (None, 15)]),
            should_continue=lambda data: _proof_pending(data, ledger),
            tracks=lambda data: proof_status_of(data) == ProofStatus.PENDING.value,
            timeout_message="Proof review is taking longer than expected. Please refresh later for updates.",
            settle_mutation=MutationKind.PROOF_DECISION,
        ),
        "milestone_progression": PollProfile(
            name="milestone_progression",
            max_duration=5 * 60,
            interval=stepped([(60, 8), (None, 12)]),
            should_continue=lambda data: _milestones_moving(data, ledger),
            tracks=lambda data: bool(milestone_statuses_of(data)) and _milestones_moving(data, ledger),
            timeout_message="Milestone progression is taking longer than expected. Please refresh later.",
            settle_mutation=MutationKind.PAYMENT_EXECUTION,
        ),
        "payout_status": PollProfile(
            name="payout_status",
            max_duration=3 * 60,
            interval=stepped([(60, 5), (None, 20)]),
            should_continue=lambda data: _payout_open(data, ledger),
            tracks=lambda data: _payout_in_flight(data, ledger),
            timeout_message="Payout status is taking longer than expected. Please refresh later.",
            settle_mutation=MutationKind.PAYMENT_EXECUTION,
        ),
        "webhook_catchup": PollProfile(
            name="webhook_catchup",
            max_duration=3 * 60,
            interval=stepped([(None, 10)]),
            should_continue=lambda data: True,
            tracks=lambda data: False,
            timeout_message="Webhook updates are delayed. Please refresh later or try again in a few minutes.",
        ),
        "external_proof_status": PollProfile(
            name="external_proof_status",
            max_duration=10 * 60,
            interval=escalating(3, 1.5, 15),
            should_continue=lambda data: _external_open(data, ledger),
            tracks=lambda data: _external_open(data, ledger),
            timeout_message="Your proof is still being reviewed. Please check again later.",
        ),
    }


PROFILES: Dict[str, PollProfile] = build_profiles()


# ============================================================================
# WATCH STATE MACHINE
# ============================================================================

@dataclass(frozen=True)
class WatchSnapshot:
    profile: str
    state: WatchState
    stop_reason: Optional[StopReason]
    fire_count: int
    elapsed: float
    auto_refresh_active: bool
    manual_refresh_available: bool
    message: Optional[str]


class PollWatch:
    """Polling state for one (entity, view) pair"""

    def __init__(self, profile: PollProfile, clock: Callable[[], float] = time.monotonic,
                 duration_scale: Optional[float] = None, label: str = ""):
        self.profile = profile
        self.label = label or profile.name
        self._clock = clock
        scale = Config.POLL_MAX_DURATION_SCALE if duration_scale is None else duration_scale
        self.max_duration = profile.max_duration * scale
        self.state = WatchState.IDLE
        self.stop_reason: Optional[StopReason] = None
        self.started_at: Optional[float] = None
        self.fire_count = 0
        self.final = False
        self.last_data: Any = None

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at

    @property
    def is_polling(self) -> bool:
        return self.state is WatchState.POLLING

    @property
    def needs_manual_refresh(self) -> bool:
        return self.state is WatchState.TIMED_OUT

    def _continues(self, data: Any) -> bool:
        try:
            return self.profile.should_continue(data)
        except UnrecognizedStatusError as e:
            # Keep polling within the ceiling until the status is understood
            logger.warning(f"⚠️ POLL_UNKNOWN_STATUS: {self.label}: {e}")
            return True

    def _tracked(self, data: Any) -> bool:
        try:
            return self.profile.tracks(data)
        except UnrecognizedStatusError:
            return False

    def start(self, data: Any = None, opt_in: bool = False) -> bool:
        """Try to enter POLLING; returns True when a new polling cycle began"""
        if self.state is WatchState.POLLING:
            logger.debug(f"Poll {self.label} already in flight, not restarting")
            return False
        if self.final:
            return False
        if self.state is WatchState.TIMED_OUT:
            # Needs an explicit reset (manual refresh) first
            return False

        if data is not None:
            self.last_data = data
            if not self._continues(data):
                self._settle()
                return False
            if not (opt_in or self._tracked(data)):
                self.stop_reason = StopReason.NOT_TRACKED
                return False
        elif not opt_in:
            self.stop_reason = StopReason.NOT_TRACKED
            return False

        self.state = WatchState.POLLING
        self.stop_reason = None
        self.started_at = self._clock()
        self.fire_count = 0
        logger.info(f"🔄 POLL_STARTED: {self.label} (max {self.max_duration:.0f}s)")
        return True

    def _settle(self):
        self.state = WatchState.IDLE
        self.stop_reason = StopReason.TERMINAL
        self.final = True
        logger.info(f"✅ POLL_SETTLED: {self.label} after {self.fire_count} fire(s)")

    def check_deadline(self) -> bool:
        """Move to TIMED_OUT once the ceiling is reached; True while still polling"""
        if self.state is not WatchState.POLLING:
            return False
        if self.elapsed >= self.max_duration:
            self.state = WatchState.TIMED_OUT
            self.stop_reason = StopReason.TIMED_OUT
            logger.warning(f"⚠️ POLL_TIMED_OUT: {self.label} after {self.fire_count} fire(s)")
            return False
        return True

    def next_interval(self) -> Optional[float]:
        """Delay before the next fire, or None when no further fire should happen"""
        if not self.check_deadline():
            return None
        return self.profile.interval(self.elapsed, self.fire_count)

    def record_fire(self):
        self.fire_count += 1

    def observe(self, data: Any) -> bool:
        """Feed a fresh observation; returns True while polling should go on"""
        self.last_data = data
        if self.state is not WatchState.POLLING:
            return False
        if not self._continues(data):
            self._settle()
            return False
        return self.check_deadline()

    def block(self, error: BaseException = None):
        self.state = WatchState.IDLE
        self.stop_reason = StopReason.BLOCKED
        logger.warning(f"🔐 POLL_BLOCKED: {self.label}: {error}")

    def stop_settled(self):
        """Stop after a conflict: the server already moved on"""
        self._settle()

    def cancel(self):
        if self.state is WatchState.POLLING:
            self.state = WatchState.IDLE
            self.stop_reason = StopReason.CANCELLED
            logger.debug(f"Poll {self.label} cancelled")

    def reset(self):
        """Manual refresh: clear a timeout so polling may start again"""
        if self.state is WatchState.TIMED_OUT:
            self.state = WatchState.IDLE
            self.stop_reason = None

    def snapshot(self) -> WatchSnapshot:
        return WatchSnapshot(
            profile=self.profile.name,
            state=self.state,
            stop_reason=self.stop_reason,
            fire_count=self.fire_count,
            elapsed=self.elapsed,
            auto_refresh_active=self.state is WatchState.POLLING,
            manual_refresh_available=True,
            message=self.profile.timeout_message if self.state is WatchState.TIMED_OUT else None,
        )


# ============================================================================
# SCHEDULER
# ============================================================================

Fetcher = Callable[[], Awaitable[Any]]
WatchKey = Tuple[str, str]


class PollScheduler:
    """Runs at most one asyncio task per (entity, view) watch"""

    def __init__(
        self,
        cache: Optional[ViewCache] = None,
        graph: Optional[ConsistencyGraph] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        duration_scale: Optional[float] = None,
        profiles: Optional[Dict[str, PollProfile]] = None,
    ):
        self.cache = cache
        self.graph = graph or consistency_graph
        self._clock = clock
        self._sleep = sleep
        self.duration_scale = duration_scale
        self.profiles = profiles or PROFILES
        self._watches: Dict[WatchKey, PollWatch] = {}
        self._tasks: Dict[WatchKey, asyncio.Task] = {}

    def _profile(self, profile) -> PollProfile:
        if isinstance(profile, PollProfile):
            return profile
        return self.profiles[profile]

    def watch_for(self, entity_key: str, profile, view: Optional[str] = None) -> PollWatch:
        resolved = self._profile(profile)
        key = (str(entity_key), view or resolved.name)
        watch = self._watches.get(key)
        if watch is None:
            watch = PollWatch(resolved, clock=self._clock, duration_scale=self.duration_scale,
                              label=f"{resolved.name}:{entity_key}")
            self._watches[key] = watch
        return watch

    def get(self, entity_key: str, view: str) -> Optional[PollWatch]:
        return self._watches.get((str(entity_key), view))

    def start(
        self,
        entity_key: str,
        profile,
        fetch: Optional[Fetcher] = None,
        view_key: Optional[ViewKey] = None,
        data: Any = None,
        opt_in: bool = False,
        ids: Optional[EntityIds] = None,
        view: Optional[str] = None,
    ) -> PollWatch:
        """
        Start polling an entity for a view unless a watch is already in flight.

        Data is fetched with `fetch`, or by refetching `view_key` from the shared
        cache. On a terminal observation the profile's settle mutation is applied
        through the consistency graph.
        """
        resolved = self._profile(profile)
        key = (str(entity_key), view or resolved.name)
        watch = self.watch_for(entity_key, resolved, view)

        task = self._tasks.get(key)
        if task is not None and not task.done():
            return watch

        if fetch is None:
            if view_key is None or self.cache is None:
                raise ValueError("start() needs a fetch callable or a cached view_key")
            fetch = lambda: self.cache.refetch(view_key)

        if watch.start(data=data, opt_in=opt_in):
            task = asyncio.create_task(self._run(watch, fetch, ids))
            task.add_done_callback(lambda done, key=key: self._task_done(key, done))
            self._tasks[key] = task
        return watch

    def _task_done(self, key: WatchKey, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _run(self, watch: PollWatch, fetch: Fetcher, ids: Optional[EntityIds]):
        try:
            while True:
                delay = watch.next_interval()
                if delay is None:
                    break
                await self._sleep(delay)
                if not watch.check_deadline():
                    break

                watch.record_fire()
                try:
                    data = await fetch()
                except ConflictError as e:
                    logger.info(f"Poll {watch.label} hit conflict, settling: {e}")
                    watch.stop_settled()
                    await self._settle(watch, ids)
                    break
                except ExternalLinkTerminalError as e:
                    watch.block(e)
                    break
                except ApiError as e:
                    if is_blocking(e):
                        watch.block(e)
                        break
                    # Transient: keep polling within the ceiling
                    logger.warning(f"⚠️ POLL_TRANSIENT_ERROR: {watch.label}: {e}")
                    continue

                if not watch.observe(data):
                    if watch.stop_reason is StopReason.TERMINAL:
                        await self._settle(watch, ids)
                    break
        except asyncio.CancelledError:
            watch.cancel()
            raise
        except Exception as e:
            logger.error(f"❌ POLL_FAILED: {watch.label}: {e}", exc_info=True)
            watch.block(e)

    async def _settle(self, watch: PollWatch, ids: Optional[EntityIds]):
        mutation = watch.profile.settle_mutation
        if mutation is None or ids is None or self.cache is None:
            return
        await self.graph.apply(mutation, ids, self.cache)

    async def wait(self, entity_key: str, view: str):
        """Wait for a watch task to finish (returns immediately when none is running)"""
        task = self._tasks.get((str(entity_key), view))
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def active(self) -> List[WatchKey]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def _drop(self, matches: Callable[[WatchKey], bool]) -> int:
        cancelled = 0
        for key in [key for key in self._watches if matches(key)]:
            task = self._tasks.get(key)
            if task is not None and not task.done():
                task.cancel()
                cancelled += 1
            self._watches.pop(key).cancel()
        return cancelled

    def cancel(self, entity_key: str, view: Optional[str] = None) -> int:
        """Cancel and forget the watch(es) of an entity; returns how many tasks were cancelled"""
        entity_key = str(entity_key)
        return self._drop(lambda key: key[0] == entity_key and (view is None or key[1] == view))

    def cancel_view(self, view: str) -> int:
        """Tear down every watch of a view"""
        return self._drop(lambda key: key[1] == view)

    def prune(self) -> int:
        """Forget watches that stopped for good; timed-out watches stay for manual refresh"""
        idle = [
            key for key, watch in self._watches.items()
            if watch.state is WatchState.IDLE and key not in self._tasks
        ]
        for key in idle:
            del self._watches[key]
        return len(idle)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for key, task in list(self._tasks.items()):
            task.cancel()
            watch = self._watches.get(key)
            if watch is not None:
                watch.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._watches.clear()
        logger.info(f"Poll scheduler stopped ({len(tasks)} task(s) cancelled)")

    def snapshots(self) -> Dict[WatchKey, WatchSnapshot]:
        return {key: watch.snapshot() for key, watch in self._watches.items()}
