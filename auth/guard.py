"""
auth/guard.py -- Push-driven access guard for a protected operation or view.

States:

    checking --> allowed       role resolved and in the allowed set
             --> denied        role resolved but not allowed, or no role at all
             --> no_identity   nothing to resolve with; go sign in

Every identity-change event (sign-in, sign-out, claims change) starts a new
check: the generation counter is bumped, the guard publishes "checking", and a
resolution task is launched. When a resolution finishes it is applied only if
its captured generation is still current; otherwise it is discarded. A slow
lookup for a previous identity can therefore never overwrite the verdict for
the identity that replaced it.

Denied callers are sent to one generic unauthorized destination whatever the
reason. The audit log records whether the role was wrong or missing; callers
never see the difference.

Usage:
    guard = AccessGuard(resolver, allowed_roles=[Role.ADMIN])
    unsubscribe = guard.watch(provider, session_cache.load)
    async for decision in guard.decisions():
        if decision.verdict is Verdict.ALLOW: ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from auth.models import Identity, ProviderUser, Resolution, ResolutionStatus, Role, SessionRecord, normalize_role
from auth.provider import LocalIdentityProvider, TokenBearer
from auth.resolver import RoleResolver, build_identity
from core.config import get_settings

logger = logging.getLogger("schoolgate.auth.guard")

DecisionListener = Callable[["GuardDecision"], None]


class GuardState(str, Enum):
    CHECKING = "checking"
    ALLOWED = "allowed"
    DENIED = "denied"
    NO_IDENTITY = "no_identity"


class Verdict(str, Enum):
    PENDING = "pending"
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    generation: int
    role: Optional[Role] = None
    redirect_to: Optional[str] = None

    @property
    def verdict(self) -> Verdict:
        if self.state is GuardState.CHECKING:
            return Verdict.PENDING
        if self.state is GuardState.ALLOWED:
            return Verdict.ALLOW
        return Verdict.DENY

    @property
    def settled(self) -> bool:
        return self.state is not GuardState.CHECKING


class AccessGuard:
    def __init__(
        self,
        resolver: RoleResolver,
        allowed_roles: Iterable[Union[Role, str]],
        login_path: Optional[str] = None,
        unauthorized_path: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        allowed = set()
        for raw in allowed_roles:
            role = normalize_role(raw)
            if role is None:
                raise ValueError(f"Unknown role in allowed set: {raw!r}")
            allowed.add(role)
        self.resolver = resolver
        self.allowed_roles: frozenset[Role] = frozenset(allowed)
        self.login_path = login_path or settings.login_path
        self.unauthorized_path = unauthorized_path or settings.unauthorized_path
        self.generation = 0
        self._decision = GuardDecision(GuardState.CHECKING, 0)
        self._listeners: list[DecisionListener] = []
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def decision(self) -> GuardDecision:
        return self._decision

    @property
    def state(self) -> GuardState:
        return self._decision.state

    def subscribe(self, listener: DecisionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, decision: GuardDecision) -> None:
        self._decision = decision
        for listener in list(self._listeners):
            listener(decision)

    async def decisions(self) -> AsyncIterator[GuardDecision]:
        """Yield the current decision, then every later one (pending/allow/deny stream)."""
        queue: asyncio.Queue[GuardDecision] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            yield self._decision
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    async def wait_settled(self) -> GuardDecision:
        async with aclosing(self.decisions()) as stream:
            async for decision in stream:
                if decision.settled:
                    return decision
        raise RuntimeError("decision stream ended")  # pragma: no cover

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def begin(self, identity: Identity, bearer: Optional[TokenBearer] = None) -> asyncio.Task:
        """Start a check for a new identity snapshot. Must be called on the event loop.

        The generation is bumped and "checking" published synchronously, so
        events are ordered by when they arrive, not by when their tasks run.
        """
        self.generation += 1
        generation = self.generation
        self._publish(GuardDecision(GuardState.CHECKING, generation))
        task = asyncio.get_running_loop().create_task(self._run(generation, identity, bearer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def evaluate(self, identity: Identity, bearer: Optional[TokenBearer] = None) -> Optional[GuardDecision]:
        """Run one check to completion. Returns None if a newer check superseded it."""
        return await self.begin(identity, bearer)

    async def _run(
        self, generation: int, identity: Identity, bearer: Optional[TokenBearer]
    ) -> Optional[GuardDecision]:
        if identity.is_empty:
            resolution = Resolution.no_identity()
        else:
            try:
                resolution = await self.resolver.resolve(identity, bearer)
            except Exception:
                logger.exception("Resolver raised; treating as denial")
                resolution = Resolution.no_role()

        if generation != self.generation:
            logger.debug("Discarding stale resolution (generation %d, current %d)", generation, self.generation)
            return None

        decision = self._decide(resolution, generation, identity)
        self._publish(decision)
        return decision

    def _decide(self, resolution: Resolution, generation: int, identity: Identity) -> GuardDecision:
        if resolution.status is ResolutionStatus.NO_IDENTITY:
            return GuardDecision(GuardState.NO_IDENTITY, generation, redirect_to=self.login_path)
        if resolution.status is ResolutionStatus.RESOLVED and resolution.role in self.allowed_roles:
            return GuardDecision(GuardState.ALLOWED, generation, role=resolution.role)
        reason = "wrong_role" if resolution.status is ResolutionStatus.RESOLVED else "no_role"
        logger.info(
            "Access denied uid=%s reason=%s role=%s allowed=%s",
            identity.uid or identity.email or identity.username_lower,
            reason,
            resolution.role.value if resolution.role else None,
            sorted(r.value for r in self.allowed_roles),
        )
        return GuardDecision(GuardState.DENIED, generation, redirect_to=self.unauthorized_path)

    # ------------------------------------------------------------------
    # Provider wiring
    # ------------------------------------------------------------------

    def watch(
        self,
        provider: LocalIdentityProvider,
        session_loader: Optional[Callable[[], Optional[SessionRecord]]] = None,
    ) -> Callable[[], None]:
        """Re-check on every identity change the provider pushes.

        Evaluates the current snapshot immediately, then once per event.
        Returns a function that stops watching.
        """

        def on_change(user: Optional[ProviderUser]) -> None:
            session = session_loader() if session_loader is not None else None
            identity = build_identity(user, session)
            self.begin(identity, provider.bearer(user) if user is not None else None)

        unsubscribe = provider.subscribe(on_change)
        on_change(provider.current_user)
        return unsubscribe

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
