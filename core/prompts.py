"""
Prompt Builder — the one short instruction sent to the text generator.

The generator only ever rephrases a sentence the flow already decided on.
The instruction carries the output contract, a minimal persona, the
language, and the canonical sentence; never conversation history, so the
generator cannot drift into other steps.
"""
from __future__ import annotations

from typing import Optional

from flows.models import AgentPersona
from slots.lexicon import LANGUAGE_NAMES

CONTRACT_PROMPT = (
    'You are a voice bot. You MUST respond with this JSON only: '
    '{"type":"SPEAK","text":"your sentence here"}\n'
    "Rules:\n"
    "- Output only the JSON object\n"
    "- No greetings, no thanks, no goodbyes\n"
    "- No explanations and no extra text\n"
    "- No markdown, lists or links\n"
    "- At most one sentence and at most one question"
)

STRICT_PROMPT = (
    'STRICT: Respond ONLY with this format: {"type":"SPEAK","text":"..."} '
    "NO other output allowed."
)


class PromptBuilder:

    def __init__(self, contract_prompt: str = CONTRACT_PROMPT, strict_prompt: str = STRICT_PROMPT):
        self.contract_prompt = contract_prompt
        self.strict_prompt = strict_prompt

    @staticmethod
    def persona_line(agent: Optional[AgentPersona]) -> str:
        agent = agent or AgentPersona()
        return f"Name: {agent.name}. Tone: {agent.tone}. Style: {agent.style}."

    @staticmethod
    def language_line(language: str) -> str:
        if not language or language == "en":
            return ""
        name = LANGUAGE_NAMES.get(language, language)
        return f"Respond in {name} only."

    def build(
        self,
        canonical_text: str,
        language: str = "en",
        agent: Optional[AgentPersona] = None,
        instruction: str = "",
        strict: bool = False,
    ) -> str:
        if strict:
            # Retry after a contract violation: shorter, no persona, no guidance
            lines = [self.strict_prompt, self.language_line(language)]
        else:
            lines = [
                self.contract_prompt,
                self.persona_line(agent),
                self.language_line(language),
                f"Guidance: {instruction}" if instruction else "",
            ]
        lines.append(f'Speak this: "{canonical_text}"')
        return "\n".join(line for line in lines if line)
