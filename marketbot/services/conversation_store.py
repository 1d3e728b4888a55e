"""
Per-user conversation state.

At most one state per user. `begin` overwrites unconditionally (cancel by
overwrite); every other mutation is a compare-and-set on the current phase,
done under the user's key lock, so a stale handler loses with
ConcurrencyConflict instead of clobbering a newer state.
"""

import logging

from marketbot.core.errors import ConcurrencyConflict
from marketbot.services.entities import ConversationState
from marketbot.services.metrics import record_failed_atomic_update
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.store.persistence import COLLECTION_CONVERSATION_STATES

logger = logging.getLogger(__name__)


class ConversationStore:
    def __init__(self, store: EntityStore):
        self._store = store
        self._states: dict[int, ConversationState] = {}

    def _key(self, user_id: int) -> tuple:
        return ("conversation", user_id)

    def hydrate(self) -> None:
        for doc in self._store.read_all(COLLECTION_CONVERSATION_STATES):
            state = ConversationState.from_document(doc)
            self._states[state.user_id] = state
        logger.info(f"ConversationStore hydrated: {len(self._states)} open states")

    def flush(self) -> None:
        for state in list(self._states.values()):
            self._mirror(state)

    def get(self, user_id: int) -> ConversationState | None:
        return self._states.get(user_id)

    def phase_of(self, user_id: int) -> str | None:
        state = self._states.get(user_id)
        return state.phase if state else None

    def _mirror(self, state: ConversationState) -> None:
        self._store.write(
            COLLECTION_CONVERSATION_STATES,
            state.user_id,
            {"phase": state.phase, "payload": dict(state.payload)},
        )

    def _check(self, user_id: int, expected_phase: str) -> ConversationState:
        state = self._states.get(user_id)
        actual = state.phase if state else None
        if actual != expected_phase:
            record_failed_atomic_update(
                operation="conversation_transition",
                entity_id=user_id,
                expected_status=expected_phase,
                actual_status=actual,
            )
            raise ConcurrencyConflict(
                f"User {user_id} conversation at {actual!r}, expected {expected_phase!r}",
                user_message="That step was already handled.",
            )
        return state

    async def begin(self, user_id: int, phase: str, payload: dict | None = None) -> ConversationState:
        """Start a new interaction, discarding any prior one."""
        async with self._store.locks.hold(self._key(user_id)):
            previous = self._states.get(user_id)
            if previous is not None:
                logger.info(f"User {user_id}: discarding conversation at {previous.phase} for {phase}")
            state = ConversationState(user_id=user_id, phase=phase, payload=dict(payload or {}))
            self._states[user_id] = state
            self._mirror(state)
            return state

    async def transition(
        self,
        user_id: int,
        expected_phase: str,
        new_phase: str,
        updates: dict | None = None,
    ) -> ConversationState:
        """Advance from expected_phase to new_phase, merging updates into the payload."""
        async with self._store.locks.hold(self._key(user_id)):
            state = self._check(user_id, expected_phase)
            state.payload.update(updates or {})
            state.phase = new_phase
            self._mirror(state)
            return state

    async def take(self, user_id: int, expected_phase: str) -> ConversationState:
        """Atomically remove the state if it is at expected_phase and return it."""
        async with self._store.locks.hold(self._key(user_id)):
            state = self._check(user_id, expected_phase)
            del self._states[user_id]
            self._store.remove(COLLECTION_CONVERSATION_STATES, user_id)
            return state

    async def clear(self, user_id: int) -> ConversationState | None:
        """Drop whatever state the user is in. Returns the discarded state, if any."""
        async with self._store.locks.hold(self._key(user_id)):
            state = self._states.pop(user_id, None)
            if state is not None:
                self._store.remove(COLLECTION_CONVERSATION_STATES, user_id)
            return state
