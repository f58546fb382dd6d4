# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Mission orchestrator wiring the chat session to the game state machine.

Turn sequence:
1. Render the system prompt from live game state and install it in the session
2. Stream the model reply; thinking/answer/usage fragments go to the listener
3. Extract the fenced JSON payload from the finalized answer
4. Apply the payload, then advance the turn counter
5. Relay queued game events (stats, objectives, hint, game_over) and a
   final `complete` event to the listener
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from mission_chat.logging import PhaseTimer, StructuredLogger, redact_secrets, sanitize_for_log
from mission_chat.metrics import MetricsTimer
from mission_chat.models import GameStats, Objective, SessionStateResponse, UsageTotals
from mission_chat.services.chat_session import ChatSession, SessionCallbacks
from mission_chat.services.game_state import GameObserver, GameStateMachine
from mission_chat.services.payload_extractor import PayloadExtractor
from mission_chat.streaming.transport import StreamEvent

logger = StructuredLogger(__name__)

EventListener = Callable[[StreamEvent], Awaitable[None]]


class MissionOverError(Exception):
    """Raised when a turn is requested after the mission has ended."""
    pass


class TurnInFlightError(Exception):
    """Raised when a turn is requested while another is still streaming."""
    pass


@dataclass
class TurnResult:
    """Outcome of a single orchestrated turn.

    Attributes:
        answer: Finalized answer text, or None when the turn failed
        payload_found: Whether a JSON payload was extracted from the answer
        stats: Stats after the turn
        objectives: Objectives after the turn
        summary: Game-over summary when the mission has ended
        error: Error message surfaced by the session, if any
    """
    answer: Optional[str]
    payload_found: bool
    stats: GameStats
    objectives: List[Objective] = field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def outcome(self) -> str:
        return self.stats.outcome


class MissionOrchestrator:
    """Runs mission turns: prompt, stream, extract, apply, advance.

    The orchestrator owns the session's callbacks and the game's observer and
    translates both into StreamEvents for the listener of the current turn.
    Game observer callbacks are synchronous, so their events are queued and
    flushed once the state machine has finished applying the turn.
    """

    def __init__(
        self,
        session: ChatSession,
        game: Optional[GameStateMachine] = None,
        extractor: Optional[PayloadExtractor] = None
    ):
        self.session = session
        self.game = game or GameStateMachine()
        self.extractor = extractor or PayloadExtractor()

        self._listener: Optional[EventListener] = None
        self._pending_events: List[StreamEvent] = []
        self._last_error: Optional[str] = None
        self._turn_active = False
        self._claim_id = 0

        self.session.callbacks = SessionCallbacks(
            on_thinking_delta=self._on_thinking_delta,
            on_answer_delta=self._on_answer_delta,
            on_error=self._on_error,
            on_usage_update=self._on_usage_update
        )
        self.game.observer = GameObserver(
            on_stats_changed=self._on_stats_changed,
            on_objectives_changed=self._on_objectives_changed,
            on_game_over=self._on_game_over,
            on_hint=self._on_hint
        )

    @property
    def is_busy(self) -> bool:
        return self._turn_active or self.session.is_busy

    def claim_turn(self) -> int:
        """Reserve the orchestrator for one turn before it starts running.

        Lets a caller reject a second turn synchronously even when the first
        one is only scheduled. Pass the returned claim to run_turn(), or to
        release_turn() if the turn will never run.

        Raises:
            MissionOverError: If the mission has already ended
            TurnInFlightError: If another turn holds the orchestrator
        """
        if self.game.is_terminal:
            raise MissionOverError(f"Mission is over ({self.game.outcome}); reset to play again")
        if self.is_busy:
            raise TurnInFlightError("A turn is already in flight")

        self._claim_id += 1
        self._turn_active = True
        return self._claim_id

    def release_turn(self, claim: int) -> None:
        """Drop a claim. Stale claims are ignored."""
        if claim == self._claim_id:
            self._turn_active = False

    async def run_turn(
        self,
        text: str,
        listener: Optional[EventListener] = None,
        claim: Optional[int] = None
    ) -> TurnResult:
        """Play one turn.

        Args:
            text: Player's message
            listener: Optional async receiver of StreamEvents for this turn
            claim: Claim from claim_turn(); taken here when omitted

        Returns:
            TurnResult describing the turn

        Raises:
            MissionOverError: If the mission has already ended
            TurnInFlightError: If another turn is in flight
        """
        if claim is None:
            claim = self.claim_turn()

        self._listener = listener
        self._pending_events = []
        self._last_error = None

        logger.info(
            "Starting mission turn",
            turns_left=self.game.stats.turns_left,
            message_preview=sanitize_for_log(text, 50)
        )

        try:
            with MetricsTimer("mission_turn"):
                self.session.set_system_prompt(self.game.render_system_prompt())

                with PhaseTimer("chat_stream", logger):
                    answer = await self.session.send(text)

                payload = None
                if answer is not None:
                    with PhaseTimer("payload_apply", logger):
                        payload = self.extractor.extract(answer)
                        self.game.apply_payload(payload)
                        self.game.advance_turn()

                await self._flush_game_events()

            result = TurnResult(
                answer=answer,
                payload_found=payload is not None,
                stats=self.game.stats,
                objectives=self.game.objectives,
                summary=self.game.summary,
                error=self._last_error
            )

            if answer is not None:
                await self._send(StreamEvent(type="complete", data={
                    "answer": answer,
                    "payload_found": result.payload_found,
                    "stats": result.stats.model_dump(),
                    "outcome": result.outcome
                }))

            logger.info(
                "Mission turn finished",
                answered=answer is not None,
                payload_found=result.payload_found,
                turns_left=result.stats.turns_left,
                outcome=result.outcome or None
            )
            return result
        finally:
            self._listener = None
            self._pending_events = []
            self.release_turn(claim)

    def reset(self) -> None:
        """Start a fresh run: clear conversation, usage and game state."""
        if self.is_busy:
            raise TurnInFlightError("Cannot reset while a turn is in flight")
        self.session.reset()
        self.game.reset()
        logger.info("Mission orchestrator reset")

    def get_state(self) -> SessionStateResponse:
        return SessionStateResponse(
            stats=self.game.stats,
            objectives=self.game.objectives,
            summary=self.game.summary,
            usage=self.session.usage_totals,
            history_length=len(self.session.history),
            busy=self.is_busy
        )

    async def _send(self, event: StreamEvent) -> None:
        if self._listener is None:
            return
        try:
            await self._listener(event)
        except Exception as e:
            logger.warning(
                "Turn listener raised exception",
                event_type=event.type,
                error_type=type(e).__name__,
                error=redact_secrets(str(e))
            )

    async def _flush_game_events(self) -> None:
        events, self._pending_events = self._pending_events, []
        for event in events:
            await self._send(event)

    # Session callbacks (async)

    async def _on_thinking_delta(self, text: str) -> None:
        await self._send(StreamEvent(type="thinking", data={"text": text}))

    async def _on_answer_delta(self, text: str) -> None:
        await self._send(StreamEvent(type="answer", data={"text": text}))

    async def _on_usage_update(self, usage: UsageTotals) -> None:
        await self._send(StreamEvent(type="usage", data={
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens
        }))

    async def _on_error(self, message: str) -> None:
        self._last_error = message
        await self._send(StreamEvent(type="error", data={"message": message}))

    # Game observer callbacks (sync, queued)

    def _on_stats_changed(self, stats: GameStats) -> None:
        self._pending_events.append(StreamEvent(type="stats", data=stats.model_dump()))

    def _on_objectives_changed(self, objectives: List[Objective]) -> None:
        self._pending_events.append(StreamEvent(
            type="objectives",
            data={"objectives": [o.model_dump() for o in objectives]}
        ))

    def _on_game_over(self, result: str, summary: str) -> None:
        self._pending_events.append(StreamEvent(
            type="game_over",
            data={"result": result, "summary": summary}
        ))

    def _on_hint(self, text: str) -> None:
        self._pending_events.append(StreamEvent(type="hint", data={"text": text}))
