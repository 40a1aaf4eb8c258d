"""
Negotiation manager.

WHAT: Host-side orchestration of every negotiation action
WHY: The engine is pure; something must load, authorize, serialize, persist
     and drive the counter-offer agent and the expiry sweep
HOW: Per-negotiation locks around load -> lazy expiry -> engine -> compare-and-set
     save; the agent runs outside any lock and its result is a new unit of work
"""

import asyncio
import threading
import weakref
from datetime import datetime
from typing import Callable, Iterable, Optional

import pydantic

from .config import settings
from .repository import NegotiationRepository
from ..agents.counter_offer_agent import (
    AgentRequest,
    AgentSignal,
    CounterOfferAgent,
    LLMCounterOfferAgent,
    NegotiationContext,
)
from ..models.negotiation import (
    Event,
    EventKind,
    Negotiation,
    NegotiationStatus,
    OFFER_KINDS,
    ParticipantRole,
    utcnow,
)
from ..services import event_ledger, expiry_policy, negotiation_engine, timeline_auditor
from ..services.listing_lookup import ListingLookup, get_listing_lookup
from ..utils.exceptions import (
    AgentTimeoutError,
    APIException,
    ConcurrencyConflictError,
    InvalidEventKindError,
    NegotiationAlreadyActiveError,
    UnauthorizedError,
    ValidationError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

MESSAGE_KINDS = frozenset({EventKind.TEXT, EventKind.ACCEPTANCE, EventKind.REJECTION})

AGENT_FAILURE_MESSAGE = "Agent failed to respond"
AGENT_ROUND_LIMIT_MESSAGE = "Agent could not counter: the round limit has been reached"


class NegotiationManager:
    """
    Serialize and persist negotiation actions.

    WHAT: Public operations used by the HTTP layer
    WHY: One place that owns locking, lazy expiry, authorization and saving
    HOW: `_mutate` runs an engine function inside the negotiation's lock
    """

    def __init__(
        self,
        repository: Optional[NegotiationRepository] = None,
        listing_lookup: Optional[ListingLookup] = None,
        agent: Optional[CounterOfferAgent] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository or NegotiationRepository()
        self._listing_lookup = listing_lookup
        self._agent = agent
        self._clock = clock
        # Entries disappear once no thread holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._sweep_timer: Optional[threading.Timer] = None
        self._sweep_running = False

    def now(self) -> datetime:
        return self._clock()

    # ========== Collaborators ==========

    @property
    def listing_lookup(self) -> ListingLookup:
        return self._listing_lookup or get_listing_lookup()

    @property
    def agent(self) -> Optional[CounterOfferAgent]:
        """Configured agent, built lazily from the LLM provider."""
        if not settings.AGENT_ENABLED:
            return None
        if self._agent is None:
            from ..llm.provider_factory import get_provider

            self._agent = LLMCounterOfferAgent(
                get_provider(),
                temperature=settings.AGENT_TEMPERATURE,
                max_tokens=settings.AGENT_MAX_TOKENS,
            )
        return self._agent

    # ========== Locking and units of work ==========

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _load_fresh(self, negotiation_id: str, now: datetime) -> Negotiation:
        """
        Load a negotiation, persisting a pending expiry first.

        Must be called with the negotiation's lock held.
        """
        negotiation = self.repository.get(negotiation_id)
        expired, changed = negotiation_engine.enforce_expiry(negotiation, now)
        if not changed:
            return negotiation
        try:
            stored = self.repository.save(expired, negotiation.version)
        except ConcurrencyConflictError:
            logger.info(f"Expiry of {negotiation_id} raced another writer, reloading")
            return self.repository.get(negotiation_id)
        logger.info(f"Negotiation {negotiation_id} expired (deadline {negotiation.expires_at.isoformat()})")
        return stored

    @staticmethod
    def _authorize(negotiation: Negotiation, actor_id: str) -> ParticipantRole:
        role = negotiation.participant_role(actor_id)
        if role is None:
            raise UnauthorizedError(actor_id)
        return role

    def _mutate(self, negotiation_id: str, actor_id: str, operation: str, work):
        """
        Run `work(negotiation, role, now)` as one unit of work.

        `work` returns the new aggregate, or a tuple whose first item is it.
        The stored aggregate and any extra items are returned.
        """
        with self._lock_for(negotiation_id):
            now = self._clock()
            negotiation = self._load_fresh(negotiation_id, now)
            role = self._authorize(negotiation, actor_id)

            result = work(negotiation, role, now)
            updated, extra = (result[0], result[1:]) if isinstance(result, tuple) else (result, ())

            stored = self.repository.save(updated, negotiation.version)
            logger.info(
                f"{operation} on {negotiation_id} by {role.value}: "
                f"status={stored.status.value}, rounds={stored.rounds}/{stored.max_rounds}, "
                f"version={stored.version}"
            )
            return (stored, *extra) if extra else stored

    # ========== Creation and reads ==========

    def create(
        self,
        requester_id: str,
        listing_id: str,
        initial_offer: float,
        message: Optional[str] = None,
        max_rounds: Optional[int] = None,
    ) -> Negotiation:
        """Open a negotiation; at most one active per (listing, requester)."""
        listing = self.listing_lookup.get_listing(listing_id)

        with self._lock_for(f"create:{listing_id}:{requester_id}"):
            now = self._clock()
            existing = self.repository.find_active(listing_id, requester_id)
            if existing is not None:
                with self._lock_for(existing.id):
                    existing = self._load_fresh(existing.id, now)
                if not existing.is_terminal:
                    raise NegotiationAlreadyActiveError(listing_id, existing.id)

            negotiation = negotiation_engine.create(
                listing, requester_id, initial_offer, now,
                max_rounds=max_rounds, message=message,
            )
            self.repository.add(negotiation)

        logger.info(
            f"Negotiation {negotiation.id} started on listing {listing_id} "
            f"by {requester_id} (initial offer {initial_offer:.2f} {negotiation.pricing.currency})"
        )
        return negotiation

    def get(self, negotiation_id: str, actor_id: str) -> tuple[Negotiation, ParticipantRole]:
        with self._lock_for(negotiation_id):
            negotiation = self._load_fresh(negotiation_id, self._clock())
        return negotiation, self._authorize(negotiation, actor_id)

    def list_for_actor(
        self,
        actor_id: str,
        role: Optional[ParticipantRole] = None,
        statuses: Optional[Iterable[NegotiationStatus]] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Negotiation], int]:
        negotiations, total = self.repository.find_by_participant(
            actor_id, role=role, statuses=statuses, page=page, limit=limit
        )
        now = self._clock()
        fresh = []
        for negotiation in negotiations:
            if expiry_policy.is_elapsed(negotiation, now):
                with self._lock_for(negotiation.id):
                    negotiation = self._load_fresh(negotiation.id, now)
            fresh.append(negotiation)
        return fresh, total

    def statistics(self, actor_id: str) -> dict:
        return self.repository.statistics(actor_id)

    def list_events(self, negotiation_id: str, actor_id: str, cursor: Optional[int] = None) -> list[Event]:
        negotiation, _ = self.get(negotiation_id, actor_id)
        return event_ledger.list_since(negotiation, cursor)

    def timeline(self, negotiation_id: str, actor_id: str, cursor: Optional[int] = None):
        negotiation, _ = self.get(negotiation_id, actor_id)
        return timeline_auditor.entries_since(negotiation, cursor)

    # ========== Ledger mutations ==========

    def send_message(
        self,
        negotiation_id: str,
        actor_id: str,
        content: str,
        kind: EventKind = EventKind.TEXT,
    ) -> tuple[Negotiation, Event]:
        if kind not in MESSAGE_KINDS:
            raise InvalidEventKindError(kind.value, "use the offer endpoint for offers")

        def work(negotiation, role, now):
            return negotiation_engine.append_event(negotiation, role, kind, content, now)

        return self._mutate(negotiation_id, actor_id, "send_message", work)

    def make_offer(
        self,
        negotiation_id: str,
        actor_id: str,
        amount: float,
        content: Optional[str] = None,
        kind: Optional[EventKind] = None,
        currency: Optional[str] = None,
    ) -> tuple[Negotiation, Event]:
        if kind is not None and kind not in OFFER_KINDS:
            raise InvalidEventKindError(kind.value, "offers must be offer or counter_offer")

        def work(negotiation, role, now):
            offer_kind = kind or negotiation_engine.default_offer_kind(negotiation)
            offer_currency = currency or negotiation.pricing.currency
            text = content or f"I can offer {amount:.2f} {offer_currency}"
            return negotiation_engine.append_event(
                negotiation, role, offer_kind, text, now,
                amount=amount, currency=offer_currency,
            )

        return self._mutate(negotiation_id, actor_id, "make_offer", work)

    def edit_event(self, negotiation_id: str, actor_id: str, event_ref: int, content: str) -> Negotiation:
        def work(negotiation, role, now):
            return negotiation_engine.edit_event(negotiation, event_ref, role, content, now)

        return self._mutate(negotiation_id, actor_id, "edit_event", work)

    def delete_event(self, negotiation_id: str, actor_id: str, event_ref: int) -> Negotiation:
        def work(negotiation, role, now):
            return negotiation_engine.soft_delete_event(negotiation, event_ref, role, now)

        return self._mutate(negotiation_id, actor_id, "delete_event", work)

    def add_reaction(self, negotiation_id: str, actor_id: str, event_ref: int, symbol: str) -> tuple[Negotiation, bool]:
        def work(negotiation, role, now):
            return negotiation_engine.add_reaction(negotiation, event_ref, actor_id, symbol, now)

        return self._mutate(negotiation_id, actor_id, "add_reaction", work)

    def mark_read(self, negotiation_id: str, actor_id: str) -> tuple[Negotiation, int]:
        def work(negotiation, role, now):
            return negotiation_engine.mark_read(negotiation, role, now)

        return self._mutate(negotiation_id, actor_id, "mark_read", work)

    # ========== Transitions ==========

    def accept_offer(self, negotiation_id: str, actor_id: str) -> Negotiation:
        def work(negotiation, role, now):
            return negotiation_engine.accept_offer(negotiation, role, now)

        return self._mutate(negotiation_id, actor_id, "accept_offer", work)

    def reject_offer(self, negotiation_id: str, actor_id: str, reason: Optional[str] = None) -> Negotiation:
        def work(negotiation, role, now):
            return negotiation_engine.reject_offer(negotiation, role, now, reason=reason)

        return self._mutate(negotiation_id, actor_id, "reject_offer", work)

    def cancel(self, negotiation_id: str, actor_id: str, reason: Optional[str] = None) -> Negotiation:
        def work(negotiation, role, now):
            return negotiation_engine.cancel(negotiation, role, actor_id, now, reason=reason)

        return self._mutate(negotiation_id, actor_id, "cancel", work)

    # ========== Counter-offer agent ==========

    def should_run_agent(self, negotiation: Negotiation) -> bool:
        """Agent answers the requester on agent-assisted negotiations that are still open."""
        last = negotiation.last_event
        return (
            self.agent is not None
            and negotiation.agent_assisted
            and not negotiation.is_terminal
            and not expiry_policy.is_elapsed(negotiation, self._clock())
            and last is not None
            and last.sender == ParticipantRole.REQUESTER
        )

    async def run_agent_turn(self, negotiation_id: str) -> Optional[Negotiation]:
        """
        Let the agent answer the requester's latest event.

        The LLM call happens without holding any lock. Its result is applied
        to freshly loaded state; a negotiation that closed meanwhile is left
        alone. Failures become one system event.
        """
        with self._lock_for(negotiation_id):
            negotiation = self._load_fresh(negotiation_id, self._clock())
        if not self.should_run_agent(negotiation):
            return None

        signal: Optional[AgentSignal] = None
        failure: Optional[str] = None
        try:
            listing = self.listing_lookup.get_listing(negotiation.listing_id)
            request = AgentRequest(
                listing_context=listing,
                negotiation_context=NegotiationContext(
                    negotiation_id=negotiation.id,
                    currency=negotiation.pricing.currency,
                    initial_offer=negotiation.pricing.initial_offer,
                    current_offer=negotiation.pricing.current_offer,
                    rounds=negotiation.rounds,
                    max_rounds=negotiation.max_rounds,
                    events=negotiation.events,
                ),
                last_user_message=negotiation.last_event.content,
            )
            signal = await asyncio.wait_for(
                self.agent.propose(request),
                timeout=settings.AGENT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            failure = f"no answer within {settings.AGENT_TIMEOUT_SECONDS}s"
        except AgentTimeoutError as e:
            failure = e.message
        except APIException as e:
            failure = e.message
        except pydantic.ValidationError as e:
            failure = f"invalid agent decision ({e.error_count()} errors)"

        if failure is not None:
            logger.warning(f"Agent failed for negotiation {negotiation_id}: {failure}")

        try:
            return self._apply_agent_result(negotiation_id, signal)
        except APIException as e:
            logger.warning(f"Agent result for {negotiation_id} was not applied: {e.message}")
            return None

    def _apply_agent_result(self, negotiation_id: str, signal: Optional[AgentSignal]) -> Optional[Negotiation]:
        with self._lock_for(negotiation_id):
            now = self._clock()
            negotiation = self._load_fresh(negotiation_id, now)
            if negotiation.is_terminal:
                logger.info(f"Negotiation {negotiation_id} closed before the agent answered, skipping")
                return None

            try:
                updated = self._agent_events(negotiation, signal, now)
            except ValidationError as e:
                if signal is None:
                    raise
                logger.warning(f"Agent {signal.action} rejected for {negotiation_id}: {e.message}")
                signal = None
                updated = self._agent_events(negotiation, signal, now)
            stored = self.repository.save(updated, negotiation.version)

        action = signal.action if signal is not None else "failure"
        logger.info(
            f"Agent {action} applied to {negotiation_id}: "
            f"status={stored.status.value}, rounds={stored.rounds}/{stored.max_rounds}"
        )
        return stored

    @staticmethod
    def _agent_events(negotiation: Negotiation, signal: Optional[AgentSignal], now: datetime) -> Negotiation:
        """Translate a signal (or its absence) into engine calls."""
        agent = ParticipantRole.AGENT

        if signal is None:
            updated, _ = negotiation_engine.append_event(
                negotiation, ParticipantRole.SYSTEM, EventKind.SYSTEM, AGENT_FAILURE_MESSAGE, now
            )
            return updated

        if signal.action == "counter" and signal.amount is not None:
            if negotiation.rounds >= negotiation.max_rounds:
                updated, _ = negotiation_engine.append_event(
                    negotiation, ParticipantRole.SYSTEM, EventKind.SYSTEM, AGENT_ROUND_LIMIT_MESSAGE, now
                )
                return updated
            updated, _ = negotiation_engine.append_event(
                negotiation, agent, EventKind.COUNTER_OFFER, signal.message, now,
                amount=signal.amount, metadata=signal.metadata,
            )
            return updated

        if signal.action == "accept" and negotiation.pricing.current_offer is not None:
            updated, _ = negotiation_engine.append_event(
                negotiation, agent, EventKind.ACCEPTANCE, signal.message, now, metadata=signal.metadata
            )
            return negotiation_engine.accept_offer(updated, agent, now)

        if signal.action == "reject":
            updated, _ = negotiation_engine.append_event(
                negotiation, agent, EventKind.REJECTION, signal.message, now, metadata=signal.metadata
            )
            return negotiation_engine.reject_offer(updated, agent, now, reason=signal.message)

        updated, _ = negotiation_engine.append_event(
            negotiation, agent, EventKind.TEXT, signal.message, now, metadata=signal.metadata
        )
        return updated

    # ========== Expiry sweep ==========

    def sweep_expired(self) -> int:
        """Expire every overdue negotiation; returns how many were expired."""
        now = self._clock()
        expired = 0
        for negotiation_id in self.repository.find_expiry_candidates(now):
            try:
                with self._lock_for(negotiation_id):
                    negotiation = self._load_fresh(negotiation_id, now)
            except APIException as e:
                logger.error(f"Expiry sweep failed for {negotiation_id}: {e.message}")
                continue
            if negotiation.status == NegotiationStatus.EXPIRED:
                expired += 1

        if expired:
            logger.info(f"Expiry sweep expired {expired} negotiations")
        return expired

    def start_expiry_sweeper(self, interval_seconds: Optional[float] = None) -> None:
        """
        Start the periodic expiry sweep.

        WHAT: Background expiry of negotiations nobody touches
        WHY: Lazy expiry alone never closes abandoned negotiations
        HOW: Self-rescheduling daemon threading.Timer
        """
        interval = interval_seconds or settings.EXPIRY_SWEEP_INTERVAL_SECONDS
        self._sweep_running = True

        def sweep_task():
            if not self._sweep_running:
                return
            try:
                self.sweep_expired()
            except APIException as e:
                logger.error(f"Expiry sweep failed: {e.message}")
            if self._sweep_running:
                self._schedule_sweep(interval, sweep_task)

        self._schedule_sweep(interval, sweep_task)
        logger.info(f"Started expiry sweep thread (interval: {interval}s)")

    def _schedule_sweep(self, interval: float, task) -> None:
        self._sweep_timer = threading.Timer(interval, task)
        self._sweep_timer.daemon = True
        self._sweep_timer.start()

    def stop_expiry_sweeper(self) -> None:
        self._sweep_running = False
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
            logger.info("Stopped expiry sweep thread")

    async def close(self) -> None:
        """Stop the sweeper and release the agent's provider client."""
        self.stop_expiry_sweeper()
        provider = getattr(self._agent, "provider", None)
        if provider is not None:
            await provider.close()


_manager: Optional[NegotiationManager] = None


def get_negotiation_manager() -> NegotiationManager:
    """Process-wide manager singleton (FastAPI dependency)."""
    global _manager
    if _manager is None:
        _manager = NegotiationManager()
    return _manager


def reset_negotiation_manager() -> None:
    """Stop and drop the singleton (for tests)."""
    global _manager
    if _manager is not None:
        _manager.stop_expiry_sweeper()
    _manager = None
