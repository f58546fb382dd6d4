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
"""Mission state machine driven by payloads extracted from model answers.

States are Active -> Terminal(victory) or Active -> Terminal(defeat). A
terminal outcome is permanent for the run; only reset() returns to Active
with initial stats and a fresh objective set.

Payload application order:
1. effects (additive, clamped); morale <= 0 ends in defeat
2. objective_progress (unknown ids ignored, idempotent)
3. flags.hint relayed to the observer
4. flags.end_state forces victory/defeat and stops evaluation
5. all objectives complete -> victory
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from mission_chat.logging import StructuredLogger
from mission_chat.models import (
    AIPayload,
    GameStats,
    INTEL_RANGE,
    MORALE_RANGE,
    Objective,
    OUTCOME_DEFEAT,
    OUTCOME_VICTORY,
    TURNS_RANGE,
)
from mission_chat.prompting.prompt_builder import PromptBuilder

logger = StructuredLogger(__name__)

DEFAULT_OBJECTIVES = (
    Objective(
        id="briefing",
        title="Absorb the briefing",
        description="Review the target, the team roster and the rules of engagement with the handler."
    ),
    Objective(
        id="access_plan",
        title="Secure an access plan",
        description="Find a reliable way past the perimeter and into the vault level."
    ),
    Objective(
        id="extraction",
        title="Extract the team",
        description="Get everyone and the package out before the alarm net closes."
    ),
)

DEFAULT_STATS = GameStats(morale=60, intel=0, turns_left=10)

SUMMARY_TURNS_EXHAUSTED = "Time ran out before the team could complete its objectives. The mission is scrubbed."
SUMMARY_MORALE_COLLAPSED = "Team morale collapsed and the operation was abandoned."
SUMMARY_VICTORY = "Every objective is complete. The team slips away clean: mission accomplished."
SUMMARY_DEFEAT = "The operation has failed."


@dataclass
class GameObserver:
    """Synchronous callbacks notified of mission state changes."""
    on_stats_changed: Optional[Callable[[GameStats], None]] = None
    on_objectives_changed: Optional[Callable[[List[Objective]], None]] = None
    on_game_over: Optional[Callable[[str, str], None]] = None
    on_hint: Optional[Callable[[str], None]] = None


def _clamp(value: int, bounds) -> int:
    low, high = bounds
    return max(low, min(high, value))


class GameStateMachine:
    """Holds mission stats and objectives and applies model payloads."""

    def __init__(
        self,
        objectives: Optional[Sequence[Objective]] = None,
        initial_stats: Optional[GameStats] = None,
        observer: Optional[GameObserver] = None,
        prompt_builder: Optional[PromptBuilder] = None
    ):
        """Initialize the state machine in the Active state.

        Args:
            objectives: Objective template for each run (defaults to the three
                        standard objectives)
            initial_stats: Stats each run starts from
            observer: Optional state-change callbacks
            prompt_builder: Renders the system prompt
        """
        self._objective_template = [o.model_copy() for o in (objectives or DEFAULT_OBJECTIVES)]
        self._initial_stats = (initial_stats or DEFAULT_STATS).model_copy()
        self.observer = observer or GameObserver()
        self.prompt_builder = prompt_builder or PromptBuilder()

        self._stats = GameStats()
        self._objectives: List[Objective] = []
        self.summary: Optional[str] = None
        self.reset()

    @property
    def stats(self) -> GameStats:
        return self._stats.model_copy()

    @property
    def objectives(self) -> List[Objective]:
        return [o.model_copy() for o in self._objectives]

    @property
    def outcome(self) -> str:
        return self._stats.outcome

    @property
    def is_terminal(self) -> bool:
        return self._stats.outcome != ""

    def all_objectives_completed(self) -> bool:
        return all(o.completed for o in self._objectives)

    def reset(self) -> None:
        """Return to Active with initial stats and a fresh objective set."""
        self._stats = self._initial_stats.model_copy(update={"outcome": ""})
        self._objectives = [o.model_copy(update={"completed": False}) for o in self._objective_template]
        self.summary = None
        logger.info(
            "Mission reset",
            morale=self._stats.morale,
            intel=self._stats.intel,
            turns_left=self._stats.turns_left,
            objectives=len(self._objectives)
        )

    def advance_turn(self) -> GameStats:
        """Consume one turn; running out with objectives pending is a defeat."""
        if self.is_terminal:
            logger.debug("advance_turn ignored - mission is over", outcome=self.outcome)
            return self.stats

        self._stats.turns_left = max(0, self._stats.turns_left - 1)
        logger.info("Turn advanced", turns_left=self._stats.turns_left)

        if self._stats.turns_left == 0 and not self.all_objectives_completed():
            self._finish(OUTCOME_DEFEAT, SUMMARY_TURNS_EXHAUSTED)
        else:
            self._notify_stats()
        return self.stats

    def apply_payload(self, payload: Any) -> GameStats:
        """Apply an untrusted payload extracted from a model answer.

        Args:
            payload: AIPayload, raw decoded dict, or None

        Returns:
            Stats after application (unchanged when the mission is over)
        """
        if self.is_terminal:
            logger.debug("apply_payload ignored - mission is over", outcome=self.outcome)
            return self.stats

        if payload is None:
            return self.stats

        payload = AIPayload.from_raw(payload)

        if payload.effects is not None:
            self._apply_effects(payload)
            if self._stats.morale <= 0:
                self._finish(OUTCOME_DEFEAT, SUMMARY_MORALE_COLLAPSED)
                return self.stats

        objectives_changed = self._apply_progress(payload.objective_progress)

        if payload.hint and self.observer.on_hint:
            self.observer.on_hint(payload.hint)

        if payload.end_state:
            default = SUMMARY_VICTORY if payload.end_state == OUTCOME_VICTORY else SUMMARY_DEFEAT
            logger.info("Model forced mission end", end_state=payload.end_state)
            self._finish(payload.end_state, payload.summary or default)
            return self.stats

        if self.all_objectives_completed():
            self._finish(OUTCOME_VICTORY, SUMMARY_VICTORY)
            return self.stats

        self._notify_stats()
        if objectives_changed:
            self._notify_objectives()
        return self.stats

    def render_system_prompt(self) -> str:
        """Render the system prompt describing the current state."""
        return self.prompt_builder.build_system_prompt(self._stats, self._objectives, self.summary)

    def _apply_effects(self, payload: AIPayload) -> None:
        effects = payload.effects
        before = self._stats.model_copy()

        if effects.morale is not None:
            self._stats.morale = _clamp(self._stats.morale + effects.morale, MORALE_RANGE)
        if effects.intel is not None:
            self._stats.intel = _clamp(self._stats.intel + effects.intel, INTEL_RANGE)
        if effects.turns is not None:
            self._stats.turns_left = _clamp(self._stats.turns_left + effects.turns, TURNS_RANGE)

        logger.info(
            "Applied payload effects",
            morale=f"{before.morale}->{self._stats.morale}",
            intel=f"{before.intel}->{self._stats.intel}",
            turns_left=f"{before.turns_left}->{self._stats.turns_left}"
        )

    def _apply_progress(self, objective_ids: List[str]) -> bool:
        changed = False
        known = {o.id: o for o in self._objectives}
        for objective_id in objective_ids:
            objective = known.get(objective_id)
            if objective is None:
                logger.warning("Ignoring unknown objective id", objective_id=objective_id)
                continue
            if not objective.completed:
                objective.completed = True
                changed = True
                logger.info("Objective completed", objective_id=objective_id)
        return changed

    def _finish(self, outcome: str, summary: str) -> None:
        self._stats.outcome = outcome
        self.summary = summary
        logger.info(
            "Mission ended",
            outcome=outcome,
            morale=self._stats.morale,
            turns_left=self._stats.turns_left
        )
        self._notify_stats()
        self._notify_objectives()
        if self.observer.on_game_over:
            self.observer.on_game_over(outcome, summary)

    def _notify_stats(self) -> None:
        if self.observer.on_stats_changed:
            self.observer.on_stats_changed(self.stats)

    def _notify_objectives(self) -> None:
        if self.observer.on_objectives_changed:
            self.observer.on_objectives_changed(self.objectives)
