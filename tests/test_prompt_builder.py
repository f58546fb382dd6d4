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
"""Tests for PromptBuilder."""

import json

from mission_chat.models import GameStats, Objective
from mission_chat.prompting.prompt_builder import PromptBuilder, get_payload_example
from mission_chat.services.payload_extractor import PayloadExtractor


def make_objectives():
    return [
        Objective(id="recon", title="Scout", description="Map the guard rotation", completed=True),
        Objective(id="vault", title="Crack", description="Open the vault"),
    ]


def test_prompt_contains_live_stats():
    prompt = PromptBuilder().build_system_prompt(GameStats(morale=42, intel=7, turns_left=3), make_objectives())
    assert "Morale: 42/100" in prompt
    assert "Intel: 7/10" in prompt
    assert "Turns left: 3" in prompt


def test_prompt_lists_objectives_with_status():
    prompt = PromptBuilder().build_system_prompt(GameStats(), make_objectives())
    assert "- [DONE] recon: Scout - Map the guard rotation" in prompt
    assert "- [PENDING] vault: Crack - Open the vault" in prompt


def test_valid_ids_listed_in_objective_order():
    prompt = PromptBuilder().build_system_prompt(GameStats(), make_objectives())
    assert "Valid objective ids: recon, vault" in prompt


def test_output_contract_present():
    prompt = PromptBuilder().build_system_prompt(GameStats(), make_objectives())
    assert "```json" in prompt
    for key in ('"narrative"', '"effects"', '"objective_progress"', '"end_state"'):
        assert key in prompt


def test_terminal_outcome_and_summary_shown():
    stats = GameStats(outcome="defeat")
    prompt = PromptBuilder().build_system_prompt(stats, make_objectives(), summary="Captured at the gate.")
    assert "Outcome: DEFEAT" in prompt
    assert "Summary: Captured at the gate." in prompt


def test_rendering_is_pure():
    builder = PromptBuilder()
    stats = GameStats()
    objectives = make_objectives()
    assert builder.build_system_prompt(stats, objectives) == builder.build_system_prompt(stats, objectives)
    assert stats == GameStats()


def test_example_payload_is_extractable():
    payload = PayloadExtractor().extract(get_payload_example())
    assert payload is not None
    assert set(payload) == {"narrative", "effects", "objective_progress", "flags"}
    assert json.dumps(payload["flags"]["end_state"]) == "null"
