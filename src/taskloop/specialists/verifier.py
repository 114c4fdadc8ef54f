from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from taskloop.backends.base import BackendExecutionError
from taskloop.specialists.base import SpecialistAgent

logger = logging.getLogger(__name__)

TRUE_WORDS = {"true", "yes"}
FALSE_WORDS = {"false", "no"}
WORD_PATTERN = re.compile(r"[a-z]+")


def parse_boolean_reply(text: str) -> bool | None:
    """Read a strict true/false reply. Anything ambiguous yields None."""
    words = WORD_PATTERN.findall(text.lower())
    if not words:
        return None
    if any(word in FALSE_WORDS for word in words) and any(word in TRUE_WORDS for word in words):
        return None
    if words[0] in TRUE_WORDS:
        return True
    if words[0] in FALSE_WORDS:
        return False
    return None


@dataclass(slots=True)
class AcceptanceReport:
    met: dict[str, bool] = field(default_factory=dict)
    calls: int = 0

    @property
    def all_met(self) -> bool:
        return bool(self.met) and all(self.met.values())

    @property
    def confidence(self) -> float:
        if not self.met:
            return 0.0
        return sum(1 for value in self.met.values() if value) / len(self.met)


class CriteriaVerifier(SpecialistAgent):
    role = "verifier"
    system_prompt = """
You are the acceptance verifier.
Inspect the workspace and answer whether the stated criterion holds.
Respond with only "true" or "false".
""".strip()

    @staticmethod
    def build_prompt(criterion: str, progress: float) -> str:
        return (
            f'Check if the following acceptance criteria is met: "{criterion}". '
            f"Current progress: {progress:.0f}%. "
            'Respond with only "true" or "false".'
        )

    async def check(self, criterion: str, progress: float) -> bool:
        try:
            response = await self.run(self.build_prompt(criterion, progress))
        except BackendExecutionError as exc:
            logger.warning("Acceptance check failed for %r: %s", criterion, exc)
            return False
        verdict = parse_boolean_reply(response.content)
        if verdict is None:
            logger.info("Ambiguous acceptance reply for %r: %r", criterion, response.content[:80])
            return False
        return verdict

    async def verify(self, criteria: Sequence[str], progress: float) -> AcceptanceReport:
        report = AcceptanceReport()
        for criterion in criteria:
            report.met[criterion] = await self.check(criterion, progress)
            report.calls += 1
        return report
