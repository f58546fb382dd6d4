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
"""Prompt builder for the mission system prompt."""

import json
from typing import List, Optional

from mission_chat.models import GameStats, Objective

VALID_IDS_LABEL = "Valid objective ids:"


def get_payload_example() -> str:
    """Example of the fenced payload the model must end every answer with."""
    example = {
        "narrative": "You slip past the east gate while the guards change shifts.",
        "effects": {"morale": 5, "intel": 1, "turns": 0},
        "objective_progress": ["briefing"],
        "flags": {"end_state": None, "summary": "", "hint": "The service lift is unguarded."}
    }
    return "```json\n" + json.dumps(example, indent=2) + "\n```"


class PromptBuilder:
    """Builds the system prompt describing live mission state.

    The prompt embeds current stats and objectives, so it must be rebuilt and
    re-sent as the first message before every model call.
    """

    SYSTEM_INSTRUCTIONS = """You are the mission handler for a covert infiltration operation in a turn-based text game.
The player leads a small team. Narrate the consequences of the player's orders and keep the mission moving.

Your role:
- Respond IMMEDIATELY and DIRECTLY to the player's order; describe what happens, do not ask for confirmation
- Keep narrative concise (1-3 short paragraphs) and consistent with the current mission state
- Reward careful planning with intel and morale; punish recklessness with morale loss
- Mark an objective complete only when the story has clearly achieved it
- Declare an end_state only when the mission is unambiguously won or lost

Rules for effects:
- morale, intel and turns are ADDITIVE changes (e.g. -10, +1), not absolute values
- Morale is clamped to 0-100, intel to 0-10, turns to 0-20
- Morale reaching 0 ends the mission in defeat"""

    OUTPUT_CONTRACT = """OUTPUT FORMAT (STRICT):
Write your narrative, then end the answer with exactly one fenced JSON block:
- "narrative": string, a one-sentence recap of this turn
- "effects": object with optional integer fields "morale", "intel", "turns"
- "objective_progress": list of objective ids completed this turn (may be empty)
- "flags": object with "end_state" ("victory", "defeat" or null), optional "summary" and "hint"
Use ONLY the valid objective ids listed above. Do not output any other JSON blocks."""

    def build_system_prompt(
        self,
        stats: GameStats,
        objectives: List[Objective],
        summary: Optional[str] = None
    ) -> str:
        """Render the system prompt for the current state.

        Args:
            stats: Current mission stats
            objectives: Current objective set, in order
            summary: Game-over summary when the mission has ended

        Returns:
            Complete system prompt text
        """
        sections = [
            self.SYSTEM_INSTRUCTIONS,
            self._format_stats(stats, summary),
            self._format_objectives(objectives),
            f"{VALID_IDS_LABEL} {', '.join(o.id for o in objectives)}",
            self.OUTPUT_CONTRACT,
            "EXAMPLE:\n" + get_payload_example(),
        ]
        return "\n\n".join(sections)

    @staticmethod
    def _format_stats(stats: GameStats, summary: Optional[str]) -> str:
        lines = [
            "MISSION STATUS:",
            f"- Morale: {stats.morale}/100",
            f"- Intel: {stats.intel}/10",
            f"- Turns left: {stats.turns_left}",
        ]
        if stats.outcome:
            lines.append(f"- Outcome: {stats.outcome.upper()} (the mission is over; narrate the aftermath only)")
            if summary:
                lines.append(f"- Summary: {summary}")
        return "\n".join(lines)

    @staticmethod
    def _format_objectives(objectives: List[Objective]) -> str:
        lines = ["OBJECTIVES:"]
        for objective in objectives:
            status = "DONE" if objective.completed else "PENDING"
            lines.append(f"- [{status}] {objective.id}: {objective.title} - {objective.description}")
        return "\n".join(lines)
