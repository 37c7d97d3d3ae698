"""Continuity verifier: cross-chapter checks plus end-of-chapter state extraction."""

import json
import re
from typing import Optional

from loguru import logger

from ..backend import GenerationBackend, GenerationOptions
from ..errors import BackendError, ResponseParseError
from ..models.blueprint import BookBlueprint, CharacterProfile
from ..models.chapter import CharacterStateSnapshot
from ..models.quality import ContinuityCategory, ContinuityIssue, ContinuityReport, Severity
from ..utils.text import head, list_field, parse_json_object, string_list

CONTINUITY_CHAR_LIMIT = 6000
RECENT_EVENT_LIMIT = 20
TIMELINE_EVENT_LIMIT = 10
LOCATION_LIMIT = 10
STATE_LIMIT = 5

ISSUE_SHAPE = """Respond in JSON:
{{
  "issues": [
    {{
      "subject": "{subject}",
      "issue_type": "{types}",
      "severity": "critical|major|minor",
      "description": "description",
      "expected": "what was expected",
      "actual": "what was found",
      "suggested_fix": "how to fix"
    }}
  ]
}}"""

STATES_PROMPT = """Extract character states at the end of this chapter.

Characters to track: {names}

Chapter content:
{content}

For each character present, provide:
{{
  "states": [
    {{
      "character_name": "name",
      "emotional_state": "current emotional state",
      "location": "where they are at end of chapter",
      "arc_progress": "progress in their arc as a percentage"
    }}
  ]
}}"""

EVENTS_PROMPT = """Extract key plot events from this chapter.

Chapter content:
{content}

List the key events that happened (5-10 events):
{{
  "events": ["event 1", "event 2"]
}}"""


def _severity(value) -> Severity:
    if isinstance(value, str):
        v = value.strip().lower()
        if v == "critical":
            return Severity.CRITICAL
        if v == "major":
            return Severity.MAJOR
    return Severity.MINOR


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def parse_issues(response: str, category: ContinuityCategory) -> list[ContinuityIssue]:
    """Parse an ``{"issues": [...]}`` response; items without a description are dropped.

    Raises:
        ResponseParseError: if the response is not a JSON object or "issues" is not a list.
    """
    data = parse_json_object(response)
    issues = []
    for item in list_field(data, "issues"):
        if not isinstance(item, dict) or not _text(item.get("description")):
            continue
        issues.append(
            ContinuityIssue(
                category=category,
                severity=_severity(item.get("severity")),
                issue_type=_text(item.get("issue_type")),
                subject=_text(item.get("subject")),
                description=item["description"],
                expected=_text(item.get("expected")),
                actual=_text(item.get("actual")),
                suggested_fix=_text(item.get("suggested_fix")) or None,
            )
        )
    return issues


def parse_arc_progress(value) -> int:
    """Accept ``40``, ``40.0``, ``"40"`` or ``"40%"``; anything else is 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, min(100, int(value)))
    if isinstance(value, str):
        m = re.search(r"-?\d+(?:\.\d+)?", value)
        if m:
            return max(0, min(100, int(float(m.group()))))
    return 0


def parse_character_states(response: str, characters: list[CharacterProfile]) -> list[CharacterStateSnapshot]:
    data = parse_json_object(response)
    by_name = {c.full_name.strip().lower(): c for c in characters}
    states = []
    for item in list_field(data, "states"):
        if not isinstance(item, dict):
            continue
        name = _text(item.get("character_name")).strip()
        if not name:
            continue
        profile = by_name.get(name.lower())
        states.append(
            CharacterStateSnapshot(
                character_id=profile.id if profile else None,
                character_name=profile.full_name if profile else name,
                emotional_state=_text(item.get("emotional_state")),
                location=_text(item.get("location")),
                arc_progress=parse_arc_progress(item.get("arc_progress")),
            )
        )
    return states


def parse_key_events(response: str) -> list[str]:
    """``{"events": [...]}`` or, failing that, a bulleted list."""
    try:
        data = parse_json_object(response)
        return string_list(list_field(data, "events"))
    except ResponseParseError:
        events = []
        for line in response.splitlines():
            line = line.strip()
            if line.startswith(("- ", "* ")):
                events.append(line[2:].strip())
        if not events:
            raise
        return events


class ContinuityVerifier:
    def __init__(self, backend: GenerationBackend):
        self.backend = backend

    async def verify(
        self,
        chapter_number: int,
        content: str,
        blueprint: BookBlueprint,
        previous_events: Optional[list[str]] = None,
        character_states: Optional[list[CharacterStateSnapshot]] = None,
    ) -> ContinuityReport:
        """Run every category check against ``content``.

        Each check degrades to an empty list on backend or parse failure,
        so a report is always returned.
        """
        logger.info(f"Verifying continuity for chapter {chapter_number}")
        excerpt = head(content, CONTINUITY_CHAR_LIMIT)

        report = ContinuityReport(
            chapter_number=chapter_number,
            character_issues=await self.check_characters(excerpt, blueprint, character_states or []),
            plot_issues=await self.check_plot(excerpt, previous_events or []),
            timeline_issues=await self.check_timeline(excerpt, blueprint),
            setting_issues=await self.check_setting(excerpt, blueprint),
            object_issues=await self.check_objects(excerpt),
        )
        logger.info(
            f"Continuity check complete: score={report.continuity_score}, "
            f"issues={report.total_issue_count}, critical={report.critical_issue_count}"
        )
        return report

    async def check_characters(
        self, excerpt: str, blueprint: BookBlueprint, states: list[CharacterStateSnapshot]
    ) -> list[ContinuityIssue]:
        names = [c.full_name for c in blueprint.characters.main_characters]
        if not names:
            return []
        recent = json.dumps([s.model_dump() for s in states[:STATE_LIMIT]], indent=2)
        prompt = (
            "Check for character continuity issues in this chapter.\n\n"
            f"Known characters: {', '.join(names)}\n\n"
            f"Previous character states:\n{recent}\n\n"
            f"Chapter content:\n{excerpt}\n\n"
            "Check for:\n"
            "1. Characters knowing things they shouldn't know yet\n"
            "2. Characters behaving inconsistently with established traits\n"
            "3. Characters appearing in wrong locations\n"
            "4. Physical description changes\n"
            "5. Relationship inconsistencies\n\n"
            + ISSUE_SHAPE.format(
                subject="character name",
                types="knowledge|behavior|appearance|location",
            )
        )
        return await self._check(ContinuityCategory.CHARACTER, prompt, max_tokens=2000)

    async def check_plot(self, excerpt: str, previous_events: list[str]) -> list[ContinuityIssue]:
        if not previous_events:
            return []
        recent = previous_events[-RECENT_EVENT_LIMIT:]
        prompt = (
            "Check for plot continuity issues in this chapter.\n\n"
            "Previous events:\n" + "\n".join(f"- {e}" for e in recent) + "\n\n"
            f"Chapter content:\n{excerpt}\n\n"
            "Check for:\n"
            "1. Plot contradictions with previous chapters\n"
            "2. Forgotten plot threads\n"
            "3. Events referenced that haven't happened\n"
            "4. Inconsistent cause and effect\n\n"
            + ISSUE_SHAPE.format(
                subject="plot thread",
                types="contradiction|forgotten_thread|future_reference|causality_error",
            )
        )
        return await self._check(ContinuityCategory.PLOT, prompt, max_tokens=2000)

    async def check_timeline(self, excerpt: str, blueprint: BookBlueprint) -> list[ContinuityIssue]:
        events = [str(e) for e in blueprint.world.timeline[:TIMELINE_EVENT_LIMIT]]
        prompt = (
            "Check for timeline/temporal continuity issues in this chapter.\n\n"
            "Known timeline:\n" + "\n".join(events) + "\n\n"
            f"Chapter content:\n{excerpt}\n\n"
            "Check for:\n"
            "1. Time inconsistencies (wrong day, impossible travel time)\n"
            "2. Chronological errors\n"
            "3. Season/weather mismatches\n"
            "4. Age inconsistencies\n\n"
            + ISSUE_SHAPE.format(
                subject="event or period",
                types="time_skip|chronology_error|season_mismatch|age_inconsistency",
            )
        )
        return await self._check(ContinuityCategory.TIMELINE, prompt, max_tokens=1500)

    async def check_setting(self, excerpt: str, blueprint: BookBlueprint) -> list[ContinuityIssue]:
        locations = [f"{l.name}: {l.description}" for l in blueprint.world.locations[:LOCATION_LIMIT]]
        if not locations:
            return []
        prompt = (
            "Check for setting/location continuity issues.\n\n"
            "Known locations:\n" + "\n".join(locations) + "\n\n"
            f"Chapter content:\n{excerpt}\n\n"
            "Check for:\n"
            "1. Location description inconsistencies\n"
            "2. Geography errors\n"
            "3. Setting detail contradictions\n\n"
            + ISSUE_SHAPE.format(
                subject="location name",
                types="description_change|geography_error|detail_contradiction",
            )
        )
        return await self._check(ContinuityCategory.SETTING, prompt, max_tokens=1500)

    async def check_objects(self, excerpt: str) -> list[ContinuityIssue]:
        # No object registry exists in the blueprint yet, so nothing is tracked.
        return []

    async def _check(self, category: ContinuityCategory, prompt: str, max_tokens: int) -> list[ContinuityIssue]:
        options = GenerationOptions(temperature=0.2, max_tokens=max_tokens, response_format="json")
        try:
            response = await self.backend.generate(prompt, options)
            return parse_issues(response, category)
        except (BackendError, ResponseParseError) as e:
            logger.warning(f"Error checking {category.value} continuity: {e}")
            return []

    async def extract_character_states(self, content: str, blueprint: BookBlueprint) -> list[CharacterStateSnapshot]:
        """End-of-chapter state for each main character; empty on failure."""
        characters = blueprint.characters.main_characters
        if not characters:
            return []
        prompt = STATES_PROMPT.format(
            names=", ".join(c.full_name for c in characters),
            content=head(content, CONTINUITY_CHAR_LIMIT),
        )
        options = GenerationOptions(temperature=0.3, max_tokens=2000, response_format="json")
        try:
            response = await self.backend.generate(prompt, options)
            return parse_character_states(response, characters)
        except (BackendError, ResponseParseError) as e:
            logger.warning(f"Error extracting character states: {e}")
            return []

    async def extract_key_events(self, content: str) -> list[str]:
        prompt = EVENTS_PROMPT.format(content=head(content, CONTINUITY_CHAR_LIMIT))
        options = GenerationOptions(temperature=0.3, max_tokens=1000, response_format="json")
        try:
            response = await self.backend.generate(prompt, options)
            return parse_key_events(response)
        except (BackendError, ResponseParseError) as e:
            logger.warning(f"Error extracting key events: {e}")
            return []
