"""Context builder: token-budgeted prompt fragments for one chapter."""

from typing import Optional

from loguru import logger

from ..backend import GenerationBackend, GenerationOptions, estimate_tokens
from ..config import GenerationConfig
from ..errors import BackendError, NoBlueprintForChapter
from ..models.blueprint import (
    BookBlueprint,
    ChapterBlueprint,
    CharacterBible,
    PlotArchitecture,
    SetupPayoff,
    StyleGuide,
    WorldBible,
)
from ..models.chapter import (
    ChapterGenerationContext,
    CharacterStateSnapshot,
    GeneratedChapter,
    TokenBudget,
)
from ..utils.text import last_paragraphs, truncate_middle

FIRST_CHAPTER_NARRATIVE = "This is the first chapter of the book."
MAIN_CHARACTER_LIMIT = 5
SUPPORTING_CHARACTER_LIMIT = 3
LOCATION_LIMIT = 3
RECENT_EVENT_LIMIT = 10

QUALITY_REQUIREMENTS = [
    "Show, don't tell - use vivid sensory details",
    "Write natural, character-appropriate dialogue",
    "Maintain consistent pacing and tension",
    "End chapters with hooks that compel reading",
    "Stay true to established character voices and traits",
]

COMPRESSION_PROMPT = """Compress the following context while preserving all critical information for story continuity.
Keep character names, key events, emotional states, and plot-relevant details.
Remove redundancy and verbose descriptions.

Context to compress:
{context}

Provide only the compressed context, nothing else."""


def _block(title: str, lines: list[str]) -> str:
    return "\n".join([title, "", *lines]).rstrip() + "\n"


class ContextBuilder:
    """Assemble the seven prompt fragments and token budget for a chapter.

    Everything except the optional backend compression of the narrative
    fragment is a pure function of its inputs, so two builds with the same
    blueprint and prior chapters produce identical strings.
    """

    def __init__(self, backend: Optional[GenerationBackend] = None):
        self.backend = backend

    async def build(
        self,
        chapter_number: int,
        blueprint: BookBlueprint,
        previous_chapters: list[GeneratedChapter],
        config: Optional[GenerationConfig] = None,
        feedback: Optional[str] = None,
    ) -> ChapterGenerationContext:
        chapter = blueprint.chapter(chapter_number)
        if chapter is None:
            raise NoBlueprintForChapter(chapter_number)

        config = config or blueprint.generation
        logger.debug(f"Building context for chapter {chapter_number}")

        prior = sorted(
            (c for c in previous_chapters if c.chapter_number < chapter_number),
            key=lambda c: c.chapter_number,
        )
        budget = TokenBudget.allocate(config.context_window_size)
        states = self.latest_character_states(prior)
        events = self.accumulated_events(prior)
        active = blueprint.plot.active_setups(chapter_number)
        due = blueprint.plot.due_payoffs(chapter_number)

        narrative = self.build_narrative_context(prior, config)
        compressed = False
        if estimate_tokens(narrative) > budget.narrative_context:
            narrative = await self.compress(narrative, budget.narrative_context, config)
            compressed = True

        instructions = self.build_chapter_instructions(chapter)
        if feedback:
            instructions += f"\nREVISION FEEDBACK:\n{feedback}\n"

        return ChapterGenerationContext(
            chapter_number=chapter_number,
            chapter_blueprint=chapter,
            blueprint=blueprint,
            config=config,
            system_prompt=self.build_system_prompt(blueprint, config),
            narrative_context=narrative,
            character_context=self.build_character_context(blueprint.characters, chapter, states),
            world_context=self.build_world_context(blueprint.world, chapter),
            plot_context=self.build_plot_context(blueprint.plot, chapter, events, active, due),
            style_context=self.build_style_context(blueprint.style),
            chapter_instructions=instructions,
            previous_summaries=[self.summary_for(c) for c in prior],
            character_states=states,
            previous_events=events,
            active_setups=active,
            due_payoffs=due,
            token_budget=budget,
            narrative_compressed=compressed,
        )

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    def build_system_prompt(self, blueprint: BookBlueprint, config: GenerationConfig) -> str:
        lines = [
            "You are an expert fiction author with decades of experience writing compelling narratives.",
            "",
        ]
        identity = blueprint.identity
        if identity.title or identity.genre:
            lines.append(f'You are writing "{identity.title}" - {identity.genre}.')
            if identity.premise:
                lines.append(f"Premise: {identity.premise}")
            lines.append("")

        style = blueprint.style
        if style.voice or style.prose:
            lines.append("WRITING STYLE:")
            if style.voice:
                lines.append(f"- Voice: {style.voice.description}")
                lines.append(f"- POV: {style.voice.point_of_view}")
                lines.append(f"- Tense: {style.voice.tense}")
            if style.prose:
                lines.append(f"- Sentence style: {style.prose.sentence_style}")
                lines.append(f"- Vocabulary level: {style.prose.vocabulary_level}")
            lines.append("")

        lines.append("QUALITY REQUIREMENTS:")
        lines.extend(f"- {item}" for item in QUALITY_REQUIREMENTS)
        lines.append("")

        lines.append(f"Content rating: {config.content.content_rating}")
        if config.content.avoid_topics:
            lines.append(f"Avoid: {', '.join(config.content.avoid_topics)}")
        return "\n".join(lines) + "\n"

    def build_narrative_context(
        self, previous_chapters: list[GeneratedChapter], config: GenerationConfig
    ) -> str:
        """Summaries of the most recent chapters plus the last chapter's ending.

        ``previous_chapters`` must already be sorted by chapter number.
        """
        if not previous_chapters:
            return FIRST_CHAPTER_NARRATIVE

        recent = previous_chapters[-config.narrative_chapter_window:]
        lines = ["STORY SO FAR:", ""]
        for c in recent:
            lines.append(f"Chapter {c.chapter_number} ({c.title or f'Chapter {c.chapter_number}'}):")
            lines.append(self.summary_for(c))
            lines.append("")

        last = previous_chapters[-1]
        if last.content:
            lines.append("LAST CHAPTER ENDED WITH:")
            lines.append(last_paragraphs(last.content, 2))
            lines.append("")
        return "\n".join(lines)

    def build_character_context(
        self,
        bible: CharacterBible,
        chapter: ChapterBlueprint,
        states: list[CharacterStateSnapshot],
    ) -> str:
        wanted = set(chapter.character_ids)

        def relevant(profiles):
            return [p for p in profiles if not wanted or p.id in wanted]

        mains = relevant(bible.main_characters)[:MAIN_CHARACTER_LIMIT]
        supporting = relevant(bible.supporting_characters)[:SUPPORTING_CHARACTER_LIMIT]
        if not mains and not supporting and not states:
            return ""

        lines = []
        for p in mains:
            lines.append(f"**{p.full_name}** ({p.role})")
            lines.append(f"  Concept: {p.concept}")
            if p.core_traits:
                lines.append(f"  Traits: {', '.join(p.core_traits[:5])}")
            if p.speech_pattern:
                lines.append(f"  Speech: {p.speech_pattern}")
            if p.arc:
                lines.append(f"  Arc: {p.arc.type} - Current: {p.arc.current_phase}")
            lines.append("")

        if supporting:
            lines.append("Supporting characters:")
            lines.extend(f"- {p.full_name}: {p.concept}" for p in supporting)
            lines.append("")

        if states:
            lines.append("CURRENT CHARACTER STATES:")
            for s in states:
                where = f" at {s.location}" if s.location else ""
                lines.append(
                    f"- {s.character_name}: {s.emotional_state or 'unknown'}{where} "
                    f"(arc {s.arc_progress}%)"
                )
            lines.append("")

        return _block("CHARACTERS IN THIS CHAPTER:", lines)

    def build_world_context(self, world: WorldBible, chapter: ChapterBlueprint) -> str:
        wanted = set(chapter.location_ids)
        locations = [l for l in world.locations if not wanted or l.id in wanted][:LOCATION_LIMIT]
        magic = world.magic_system if world.magic_system and world.magic_system.name else None
        if not locations and not world.rules and not magic:
            return ""

        lines = []
        for loc in locations:
            lines.append(f"**{loc.name}**")
            lines.append(f"  {loc.description}")
            if loc.atmosphere:
                lines.append(f"  Atmosphere: {loc.atmosphere}")
            if loc.sensory_details:
                lines.append(f"  Sensory: {'; '.join(loc.sensory_details[:3])}")
            lines.append("")

        if world.rules:
            lines.append("World rules to maintain:")
            lines.extend(f"- {rule}" for rule in world.rules[:5])
            lines.append("")

        if magic:
            lines.append("Magic system:")
            lines.append(f"  {magic.description}")
            if magic.limitations:
                lines.append(f"  Limitations: {', '.join(magic.limitations[:3])}")
            lines.append("")

        return _block("SETTING FOR THIS CHAPTER:", lines)

    def build_plot_context(
        self,
        plot: PlotArchitecture,
        chapter: ChapterBlueprint,
        events: list[str],
        active: list[SetupPayoff],
        due: list[SetupPayoff],
    ) -> str:
        lines = []
        if plot.main_plot:
            lines.append(f"Central conflict: {plot.main_plot.central_conflict}")
            lines.append(f"Stakes: {plot.main_plot.stakes}")
            lines.append("")

        subplots = [s for s in plot.subplots if s.status == "active"][:3]
        if subplots:
            lines.append("Active subplots:")
            lines.extend(f"- {s.name}: {s.description}" for s in subplots)
            lines.append("")

        if chapter.plot_points:
            lines.append("Plot points for this chapter:")
            lines.extend(f"- {p}" for p in chapter.plot_points)
            lines.append("")

        if events:
            lines.append("Key events so far:")
            lines.extend(f"- {e}" for e in events[-RECENT_EVENT_LIMIT:])
            lines.append("")

        if active:
            lines.append("Open setups to keep alive:")
            lines.extend(f"- {sp.description} (set up in chapter {sp.setup_chapter})" for sp in active)
            lines.append("")

        if due:
            lines.append("Payoffs due in this chapter:")
            lines.extend(f"- {sp.description} (set up in chapter {sp.setup_chapter})" for sp in due)
            lines.append("")

        if not lines:
            return ""
        return _block("PLOT CONTEXT:", lines)

    def build_style_context(self, style: StyleGuide) -> str:
        lines = []
        if style.voice:
            lines.append(f"Voice: {style.voice.description}")
            lines.append(f"POV: {style.voice.point_of_view}")
            lines.append(f"Tense: {style.voice.tense}")
            lines.append("")
        if style.prose:
            lines.append(f"Prose style: {style.prose.sentence_style}")
            lines.append(f"Paragraph length: {style.prose.paragraph_length}")
            if style.prose.preferred_words:
                lines.append(f"Preferred vocabulary: {', '.join(style.prose.preferred_words[:10])}")
            if style.prose.avoid_words:
                lines.append(f"Avoid: {', '.join(style.prose.avoid_words[:10])}")
            lines.append("")
        if style.dialogue:
            lines.append(f"Dialogue style: {style.dialogue.tag_style}")
            lines.append(f"Dialogue percentage: ~{style.dialogue.dialogue_ratio}%")
            lines.append("")

        if not lines:
            return ""
        return _block("STYLE GUIDELINES:", lines)

    def build_chapter_instructions(self, chapter: ChapterBlueprint) -> str:
        lines = [
            "CHAPTER REQUIREMENTS:",
            "",
            f"Chapter {chapter.chapter_number}: {chapter.title}",
            f"Purpose: {chapter.purpose}",
            f"Target length: ~{chapter.target_word_count:,} words "
            f"({chapter.min_word_count:,}-{chapter.max_word_count:,})",
            f"Pacing: {chapter.pacing.value}",
            "",
        ]
        if chapter.opening_hook:
            lines.append(f"Opening: {chapter.opening_hook}")

        if chapter.scenes:
            lines.append("")
            lines.append("Scenes to include:")
            for scene in sorted(chapter.scenes, key=lambda s: s.order):
                lines.append(f"  {scene.order}. {scene.title}: {scene.purpose}")
                lines.append(f"     Location: {scene.location}, Characters: {', '.join(scene.characters)}")

        if chapter.must_include:
            lines.append("")
            lines.append("MUST include:")
            lines.extend(f"  - {item}" for item in chapter.must_include)

        if chapter.must_avoid:
            lines.append("")
            lines.append("MUST avoid:")
            lines.extend(f"  - {item}" for item in chapter.must_avoid)

        if chapter.closing_hook:
            lines.append("")
            lines.append(f"End with: {chapter.closing_hook}")

        if chapter.emotional_arc:
            lines.append("")
            lines.append(
                f"Emotional journey: {chapter.emotional_arc.starting_emotion} -> "
                f"{chapter.emotional_arc.ending_emotion}"
            )
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Compression and helpers
    # ------------------------------------------------------------------

    async def compress(self, context: str, max_tokens: int, config: GenerationConfig) -> str:
        """Shrink ``context`` to roughly ``max_tokens``.

        Asks the backend first when allowed; otherwise, or when that call
        fails, keeps the head and tail (``max_tokens * 3`` characters in
        total) around an ellipsis marker.
        """
        logger.info(f"Compressing narrative context from {estimate_tokens(context)} to {max_tokens} tokens")

        if self.backend is not None and config.compress_with_backend:
            try:
                compressed = await self.backend.generate(
                    COMPRESSION_PROMPT.format(context=context),
                    GenerationOptions(temperature=0.2, max_tokens=max_tokens),
                )
                if compressed and compressed.strip():
                    return compressed
                logger.warning("Compression returned no text, truncating instead")
            except BackendError as e:
                logger.warning(f"Error compressing context, truncating instead: {e}")

        return truncate_middle(context, max_tokens * 3)

    @staticmethod
    def summary_for(chapter: GeneratedChapter) -> str:
        return chapter.summary_text or "Events occurred in this chapter."

    @staticmethod
    def latest_character_states(previous_chapters: list[GeneratedChapter]) -> list[CharacterStateSnapshot]:
        if not previous_chapters:
            return []
        return list(previous_chapters[-1].character_states)

    @staticmethod
    def accumulated_events(previous_chapters: list[GeneratedChapter]) -> list[str]:
        events = []
        for c in previous_chapters:
            events.extend(c.key_events)
        return events
