import pytest

from book_author.backend import BaseBackend, GenerationOptions
from book_author.config import GenerationConfig
from book_author.models import (
    BookBlueprint,
    BookIdentity,
    ChapterBlueprint,
    CharacterArc,
    CharacterBible,
    CharacterProfile,
    EmotionalJourney,
    LocationProfile,
    MainPlot,
    PlotArchitecture,
    SetupPayoff,
    StyleGuide,
    Subplot,
    TimelineEvent,
    VoiceGuide,
    WorldBible,
)

CHAPTER_TEXT = "Ava walked along the harbor.\n\nShe found a map in the lighthouse."
GOOD_SCORE = '{"score": 85, "strengths": ["vivid"], "weaknesses": [], "explanation": "solid"}'
SUMMARY = (
    "BRIEF: Ava finds a map.\n"
    "DETAILED: Ava discovers a map hidden in the lighthouse.\n"
    "EVENTS:\n"
    "- Ava finds the map"
)
STATES = (
    '{"states": [{"character_name": "Ava Stone", "emotional_state": "determined", '
    '"location": "Harbor", "arc_progress": "40%"}]}'
)

DEFAULT_RULES = [
    ("Create a detailed outline", "1. Arrival\n2. Discovery"),
    ("Compress the following context", "Compressed story so far."),
    ("Fix this minor issue", "fixed text"),
    ("Revise this chapter based on", "Revised chapter text."),
    ("Revise the following chapter", "Manually revised chapter text."),
    ("Summarize this chapter", SUMMARY),
    ("Extract character states", STATES),
    ("Extract key plot events", '{"events": ["Ava finds the map", "Milo lies about the storm"]}'),
    ("Evaluate on these criteria", GOOD_SCORE),
    ("Check for", '{"issues": []}'),
    ("Write Scene", "A scene unfolds."),
    ("Write the complete chapter", CHAPTER_TEXT),
]


class ScriptedBackend(BaseBackend):
    """Deterministic backend: the first rule whose substring occurs in the prompt wins.

    A rule's response may be a string, an exception instance to raise, or a
    callable taking the prompt.
    """

    def __init__(self, rules=None, default=""):
        super().__init__("scripted")
        self.rules = list(rules or []) + DEFAULT_RULES
        self.default = default
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []

    async def _generate(self, prompt: str, options: GenerationOptions) -> str:
        self.prompts.append(prompt)
        self.options.append(options)
        for needle, response in self.rules:
            if needle in prompt:
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response(prompt)
                return response
        return self.default

    def count(self, needle: str) -> int:
        return sum(1 for p in self.prompts if needle in p)


def make_blueprint(**generation) -> BookBlueprint:
    return BookBlueprint(
        id="bp-1",
        identity=BookIdentity(title="The Lighthouse Map", genre="Mystery", premise="A keeper's daughter finds a map."),
        chapters=[
            ChapterBlueprint(
                chapter_number=n,
                title=title,
                purpose=f"Purpose of chapter {n}",
                target_word_count=1000,
                must_include=["the map"] if n == 1 else [],
                opening_hook="Fog rolls in" if n == 1 else "",
                closing_hook="A knock at the door" if n == 1 else "",
                emotional_arc=EmotionalJourney(starting_emotion="calm", ending_emotion="alarmed"),
                plot_points=[f"Plot point {n}"],
                character_ids=["char-ava"],
            )
            for n, title in [(1, "Arrival"), (2, "The Storm"), (3, "Landfall")]
        ],
        characters=CharacterBible(
            main_characters=[
                CharacterProfile(
                    id="char-ava",
                    full_name="Ava Stone",
                    role="protagonist",
                    concept="Lighthouse keeper's daughter",
                    core_traits=["stubborn", "curious"],
                    speech_pattern="Clipped sentences",
                    arc=CharacterArc(type="growth", current_phase="denial"),
                ),
                CharacterProfile(id="char-rex", full_name="Rex Vale", role="antagonist", concept="Smuggler"),
            ],
            supporting_characters=[
                CharacterProfile(id="char-milo", full_name="Milo", role="friend", concept="Fisherman"),
            ],
        ),
        world=WorldBible(
            locations=[
                LocationProfile(id="loc-harbor", name="Harbor", description="A stone harbor", atmosphere="briny"),
                LocationProfile(id="loc-light", name="Lighthouse", description="A white tower"),
            ],
            rules=["No ships sail at night"],
            timeline=[TimelineEvent(when="1890", description="The lighthouse is built")],
        ),
        plot=PlotArchitecture(
            main_plot=MainPlot(central_conflict="Ava versus the smugglers", stakes="The town's safety"),
            subplots=[Subplot(name="Milo's debt", description="Milo owes Rex money")],
            setup_payoffs=[
                SetupPayoff(description="The broken lamp", setup_chapter=1, payoff_chapter=3),
                SetupPayoff(description="Milo's secret", setup_chapter=1),
            ],
        ),
        style=StyleGuide(voice=VoiceGuide(description="Atmospheric and tense")),
        generation=GenerationConfig(**generation),
    )


@pytest.fixture
def blueprint():
    return make_blueprint()


@pytest.fixture
def backend():
    return ScriptedBackend()
