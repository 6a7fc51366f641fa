"""Rule-based detection of interview topics in candidate messages.

Every rule pairs a controlled topic name (``"salary"``, ``"relocation"`` ...)
with regular expressions and keyword phrases. A message matches a topic when
any pattern or keyword occurs in it. Keywords are matched on word boundaries
and case-insensitively, so ``"led"`` does not fire inside ``"called"``.

The rule set covers the four interview stages the platform runs:

- screening: experience, work history, authorisation, location, salary ...
- technical: technologies, architecture, projects, best practices ...
- behavioral: teamwork, conflict, leadership, failure, achievement
- final: motivation, career goals, culture fit, why this company, questions
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

__all__ = ("DEFAULT_TOPIC_RULES", "TopicExtractor", "TopicRule")


@dataclass(frozen=True)
class TopicRule:
    """Detection rule for one topic.

    Attributes:
        topic: Controlled topic string stored on memory facts.
        stage: Interview stage the topic belongs to.
        patterns: Regular expressions searched case-insensitively.
        keywords: Phrases matched on word boundaries.
    """

    topic: str
    stage: str
    patterns: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()

    def compile(self) -> Tuple[Pattern[str], ...]:
        """Return compiled matchers for this rule."""

        compiled = [re.compile(pattern, re.IGNORECASE) for pattern in self.patterns]
        if self.keywords:
            alternatives = "|".join(re.escape(keyword) for keyword in self.keywords)
            compiled.append(re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE))
        return tuple(compiled)


DEFAULT_TOPIC_RULES: Tuple[TopicRule, ...] = (
    # screening
    TopicRule(
        "experience",
        "screening",
        patterns=(r"\b\d+\+?\s*years?\s*(?:of\s*)?(?:experience|developer|engineer|working)",),
        keywords=("years of experience", "worked for", "been a developer", "been working as"),
    ),
    TopicRule(
        "work_history",
        "screening",
        keywords=("worked at", "was with", "my last role", "previous company", "currently at", "current employer"),
    ),
    TopicRule(
        "intro",
        "screening",
        keywords=("my name is", "i am a", "i'm a", "my background", "about myself", "let me introduce"),
    ),
    TopicRule(
        "work_authorization",
        "screening",
        patterns=(r"\b(?:green\s*card|citizen|h-?1b|visa|ead|opt|cpt|permanent\s*resident)\b",),
        keywords=("authorized to work", "sponsorship", "work permit"),
    ),
    TopicRule(
        "location",
        "screening",
        patterns=(r"\b(?:located in|based in|live in|living in|currently in)\b",),
        keywords=("i live", "my location", "working from", "remote from"),
    ),
    TopicRule(
        "relocation",
        "screening",
        keywords=("open to relocate", "willing to move", "can relocate", "not willing to relocate", "prefer remote", "relocate"),
    ),
    TopicRule(
        "availability",
        "screening",
        patterns=(r"\bstart\s*(?:immediately|right away|asap)\b|\b\d+\s*weeks?\s*notice\b|\bnotice\s*period\b",),
        keywords=("can start", "available to start", "notice period", "two weeks", "one month"),
    ),
    TopicRule(
        "salary",
        "screening",
        patterns=(
            r"\$\s*\d{2,3}(?:[,\s]?\d{3})?\s*k?\b",
            r"\b\d{2,3}\s*k\b",
            r"\b\d{2,3},\d{3}\b",
            r"\bhundred\s*(?:and\s*\w+\s*)?thousand\b",
        ),
        keywords=("salary", "compensation", "expecting", "looking for around", "base pay", "total comp"),
    ),
    TopicRule(
        "timeline",
        "screening",
        keywords=("decision", "timeline", "making a decision", "need to decide", "by next week"),
    ),
    TopicRule(
        "other_interviews",
        "screening",
        keywords=("interviewing", "other companies", "other interviews", "talking to", "offer from"),
    ),
    # technical
    TopicRule(
        "technologies",
        "technical",
        patterns=(
            r"\b(?:react|angular|vue|node|python|java|typescript|javascript|aws|azure|gcp|docker|kubernetes"
            r"|sql|postgres|mongodb|graphql|rest\s*api)\b",
        ),
        keywords=("tech stack", "programming", "framework", "language", "database", "cloud"),
    ),
    TopicRule(
        "architecture",
        "technical",
        patterns=(r"\b(?:microservices?|monolith|serverless|event\s*driven|distributed)\b",),
        keywords=("architecture", "system design", "scaling", "designed the", "architected"),
    ),
    TopicRule(
        "projects",
        "technical",
        keywords=("project", "built", "developed", "implemented", "created", "worked on a", "my biggest"),
    ),
    TopicRule(
        "problem_solving",
        "technical",
        keywords=("solved", "debugged", "fixed", "optimized", "improved", "reduced", "approach to"),
    ),
    TopicRule(
        "best_practices",
        "technical",
        patterns=(r"\bci\s*/?\s*cd\b|\bunit\s*tests?\b|\btdd\b|\bcode\s*reviews?\b|\bagile\b|\bscrum\b",),
        keywords=("testing", "deployment", "version control", "git", "code quality", "documentation"),
    ),
    # behavioral
    TopicRule(
        "teamwork",
        "behavioral",
        keywords=("team", "collaborated", "worked with", "together", "group project", "cross-functional"),
    ),
    TopicRule(
        "conflict",
        "behavioral",
        keywords=("disagreement", "conflict", "difficult situation", "tension", "resolved", "compromise"),
    ),
    TopicRule(
        "leadership",
        "behavioral",
        keywords=("led", "managed", "mentored", "coached", "supervised", "took ownership", "initiated"),
    ),
    TopicRule(
        "failure",
        "behavioral",
        keywords=("failed", "mistake", "learned", "lesson", "wrong", "setback", "challenge"),
    ),
    TopicRule(
        "achievement",
        "behavioral",
        keywords=("proud of", "accomplished", "achievement", "succeeded", "award", "recognition"),
    ),
    # final
    TopicRule(
        "motivation",
        "final",
        keywords=("passionate about", "enjoy", "love", "motivates me", "excited about", "interested in"),
    ),
    TopicRule(
        "career_goals",
        "final",
        keywords=("career", "long term", "five years", "goal", "aspiration", "grow", "future"),
    ),
    TopicRule(
        "culture_fit",
        "final",
        keywords=("culture", "values", "work environment", "team dynamics", "company mission"),
    ),
    TopicRule(
        "why_company",
        "final",
        keywords=("why this company", "attracted to", "researched", "impressed by", "read about"),
    ),
    TopicRule(
        "questions_asked",
        "final",
        keywords=("can i ask", "want to know", "wondering about", "my question is"),
    ),
)


class TopicExtractor:
    """Detect interview topics in free text.

    Examples:
        >>> extractor = TopicExtractor()
        >>> extractor.extract("I can start in two weeks and I'm expecting $150k base.")
        ['availability', 'salary']
        >>> TopicExtractor(stages=["final"]).extract("I'm passionate about developer tools")
        ['motivation']
    """

    def __init__(
        self,
        rules: Sequence[TopicRule] = DEFAULT_TOPIC_RULES,
        *,
        stages: Optional[Iterable[str]] = None,
    ) -> None:
        allowed = None if stages is None else frozenset(stages)
        self._rules = tuple(rule for rule in rules if allowed is None or rule.stage in allowed)
        self._compiled = tuple((rule.topic, rule.compile()) for rule in self._rules)

    @property
    def topics(self) -> List[str]:
        """Return the topics this extractor can emit, in rule order."""

        return [rule.topic for rule in self._rules]

    def extract(self, message: str) -> List[str]:
        """Return the topics mentioned in ``message`` in rule order."""

        if not message or not message.strip():
            return []
        return [topic for topic, matchers in self._compiled if any(m.search(message) for m in matchers)]
