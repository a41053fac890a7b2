"""
Response Contract — the gate every piece of outgoing text passes through.

Flow template text is trusted: it is whitespace-normalized and emitted as
is. Generated text is not. It has to come back as

    {"type": "SPEAK", "text": "..."}   or   {"type": "SILENCE"}

and the text must read like one short spoken turn:

  1. Parse       — JSON object, JSON embedded in prose, or plain prose
                   (treated as SPEAK). Unusable payloads fail structurally.
  2. Sanitize    — markdown, code, links and stray symbols removed.
  3. Detect      — greetings, closings, extra questions, trailing text
                   after the question, too many sentences, explanations.
  4. Auto-fix    — detachable violations are cut away; the remainder is
                   checked again and accepted only if clean.

The negotiator drives the generator: at most `max_attempts` calls, the
second one with a stricter instruction, each bounded by a timeout. When
every attempt fails the step's canonical text is used instead, so a turn
never fails because of the generator.
"""
from __future__ import annotations

import asyncio
import json
import re
import structlog
from typing import Any, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from config.settings import ContractConfig
from core.engine import TextGenerator
from core.prompts import PromptBuilder
from flows.models import AgentPersona
from models.errors import ContractViolation, GenerationFailed
from models.schemas import ContractResult, ResponseKind, TextSource, Violation
from utils.text import collapse_ws, split_sentences

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Patterns
# ──────────────────────────────────────────────────────────────

_GREETING_WORDS = (
    r"hi|hello|hey|good morning|good afternoon|good evening|"
    r"namaste|namaskar|welcome|greetings"
)
_GREETING = re.compile(rf"^(?:(?:{_GREETING_WORDS})\b|नमस्ते|नमस्कार)", re.IGNORECASE)
_GREETING_PREFIX = re.compile(
    rf"^(?:(?:{_GREETING_WORDS})\b(?:\s+there)?|नमस्ते|नमस्कार)[\s,!.।]*", re.IGNORECASE
)
_CLOSING = re.compile(
    r"\b(?:thank you|thanks|goodbye|bye|have a (?:nice|great|good) day)\b|धन्यवाद|शुभ दिन",
    re.IGNORECASE,
)
_EXPLANATION = re.compile(
    r"let me explain|as i mentioned|to summarize|in summary|\bfirst\b.*\bthen\b.*\bfinally\b",
    re.IGNORECASE,
)
_MARKDOWN_LEFTOVER = re.compile(r"[*_#`\[\]]")
_SENTENCE_SPLIT = re.compile(r"[.!?।]+")
_EMBEDDED_JSON = re.compile(r"\{[\s\S]*\}")

# Sanitizing passes, applied in order
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`([^`]*)`")
_BOLD = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC = re.compile(r"\*(.+?)\*")
_LINK = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_URL = re.compile(r"https?://\S+|www\.\S+")
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-•*+]|\d+[.)])\s+", re.MULTILINE)
_SYMBOLS = re.compile(r"[#@$%^&*{}\[\]|\\<>]")

# Violations the auto-fixer can cut away without changing the meaning
DETACHABLE = frozenset({
    Violation.GREETING,
    Violation.CLOSING,
    Violation.MULTIPLE_QUESTIONS,
    Violation.AFTER_QUESTION,
    Violation.TOO_MANY_SENTENCES,
    Violation.TOO_LONG,
})


def sanitize(text: str) -> str:
    t = _CODE_BLOCK.sub(" ", text)
    t = _INLINE_CODE.sub(r"\1", t)
    t = _BOLD.sub(r"\2", t)
    t = _ITALIC.sub(r"\1", t)
    t = _LINK.sub(r"\1", t)
    t = _URL.sub("", t)
    t = _HEADING.sub("", t)
    t = _BULLET.sub("", t)
    t = _SYMBOLS.sub("", t)
    return collapse_ws(t)


def count_sentences(text: str) -> int:
    return len([s for s in _SENTENCE_SPLIT.split(text) if s.strip()])


# ──────────────────────────────────────────────────────────────
#  Validator
# ──────────────────────────────────────────────────────────────

class ResponseContractValidator:

    def __init__(self, config: Optional[ContractConfig] = None):
        self.config = config or ContractConfig()

    def validate(self, raw: Any, trusted: bool = False) -> ContractResult:
        if trusted:
            text = collapse_ws(raw if isinstance(raw, str) else "")
            return ContractResult(
                text=text, raw=raw if isinstance(raw, str) else "",
                violations=[] if text else [Violation.EMPTY],
                remaining=[] if text else [Violation.EMPTY],
                valid=bool(text),
            )

        raw_str = raw if isinstance(raw, str) else ""
        kind, text, structural = self.parse(raw)
        if structural:
            return ContractResult(raw=raw_str, violations=[structural],
                                  remaining=[structural], valid=False)
        if kind == ResponseKind.SILENCE:
            return ContractResult(kind=kind, raw=raw_str, valid=True)

        clean = sanitize(text)
        sanitized = clean != text.strip()
        if not clean:
            return ContractResult(raw=raw_str, violations=[Violation.EMPTY],
                                  remaining=[Violation.EMPTY], sanitized=sanitized)

        violations = self.detect(clean)
        if not violations:
            return ContractResult(text=clean, raw=raw_str, sanitized=sanitized, valid=True)

        if any(v not in DETACHABLE for v in violations):
            return ContractResult(raw=raw_str, violations=violations,
                                  remaining=violations, sanitized=sanitized)

        fixed = self.fix(clean)
        remaining = self.detect(fixed) if fixed else [Violation.EMPTY]
        if remaining:
            return ContractResult(raw=raw_str, violations=violations,
                                  remaining=remaining, sanitized=sanitized)

        logger.info("contract_auto_fixed", violations=[v.value for v in violations],
                    before=clean, after=fixed)
        return ContractResult(text=fixed, raw=raw_str, violations=violations,
                              sanitized=sanitized, auto_fixed=True, valid=True)

    # ── Parse ─────────────────────────────────────────────

    @staticmethod
    def parse(raw: Any) -> tuple[Optional[ResponseKind], str, Optional[Violation]]:
        """(kind, text, structural violation)."""
        if not isinstance(raw, str):
            return None, "", Violation.NOT_A_STRING
        s = raw.strip()
        if not s:
            return None, "", Violation.EMPTY

        payload: Any = None
        if s.startswith("{"):
            try:
                payload = json.loads(s)
            except json.JSONDecodeError:
                return None, "", Violation.NOT_JSON
        else:
            match = _EMBEDDED_JSON.search(s)
            if match:
                try:
                    payload = json.loads(match.group(0))
                except json.JSONDecodeError:
                    payload = None

        if payload is None:
            return ResponseKind.SPEAK, s, None
        if not isinstance(payload, dict):
            return None, "", Violation.NOT_JSON

        kind = str(payload.get("type", ResponseKind.SPEAK.value)).upper()
        if kind == ResponseKind.SILENCE.value:
            return ResponseKind.SILENCE, "", None
        if kind != ResponseKind.SPEAK.value:
            return None, "", Violation.UNKNOWN_TYPE
        if "text" not in payload:
            return None, "", Violation.MISSING_TEXT
        if not isinstance(payload["text"], str):
            return None, "", Violation.NOT_A_STRING
        return ResponseKind.SPEAK, payload["text"], None

    # ── Detect / fix ──────────────────────────────────────

    def detect(self, text: str) -> list[Violation]:
        found: list[Violation] = []
        if _GREETING.match(text):
            found.append(Violation.GREETING)
        sentences = split_sentences(text)
        if sentences and "?" not in sentences[-1] and _CLOSING.search(sentences[-1]):
            found.append(Violation.CLOSING)
        first_q = text.find("?")
        trailing = first_q != -1 and bool(text[first_q + 1:].strip())
        # Anything after the question is a second ask, whatever its punctuation
        if trailing or text.count("?") > self.config.max_questions:
            found.append(Violation.MULTIPLE_QUESTIONS)
        if trailing:
            found.append(Violation.AFTER_QUESTION)
        if count_sentences(text) > self.config.max_sentences:
            found.append(Violation.TOO_MANY_SENTENCES)
        if len(text) > self.config.max_length:
            found.append(Violation.TOO_LONG)
        if _EXPLANATION.search(text):
            found.append(Violation.EXPLANATION)
        if _MARKDOWN_LEFTOVER.search(text):
            found.append(Violation.MARKDOWN)
        return found

    def fix(self, text: str) -> str:
        t = _GREETING_PREFIX.sub("", text).strip()
        sentences = split_sentences(t)

        while sentences and "?" not in sentences[-1] and _CLOSING.search(sentences[-1]):
            sentences.pop()

        question_at = next((i for i, s in enumerate(sentences) if "?" in s), None)
        limit = self.config.max_sentences
        if question_at is not None:
            # End on the first question, keeping the sentences right before it
            q = sentences[question_at]
            sentences[question_at] = q[:q.index("?") + 1]
            sentences = sentences[max(0, question_at + 1 - limit):question_at + 1]
        else:
            sentences = sentences[:limit]

        while len(sentences) > 1 and len(" ".join(sentences)) > self.config.max_length:
            # Keep the question the reply ends on
            sentences.pop(0 if question_at is not None else -1)

        fixed = collapse_ws(" ".join(sentences))
        if fixed[:1].islower():
            fixed = fixed[0].upper() + fixed[1:]
        return fixed


# ──────────────────────────────────────────────────────────────
#  Negotiation with the generator
# ──────────────────────────────────────────────────────────────

class GenerationAttempt:
    """One generator call and what the contract made of it."""

    __slots__ = ("number", "strict", "prompt", "raw", "result", "error")

    def __init__(self, number: int, strict: bool, prompt: str):
        self.number = number
        self.strict = strict
        self.prompt = prompt
        self.raw: Optional[str] = None
        self.result: Optional[ContractResult] = None
        self.error: Optional[str] = None

    def __repr__(self):
        status = "ok" if self.result and self.result.valid else (self.error or "invalid")
        return f"<GenerationAttempt #{self.number} strict={self.strict} {status}>"


class NegotiatedText:
    def __init__(self, text: str, source: TextSource, attempts: list[GenerationAttempt]):
        self.text = text
        self.source = source
        self.attempts = attempts

    @property
    def fell_back(self) -> bool:
        return self.source == TextSource.FALLBACK

    def __repr__(self):
        return f"<NegotiatedText {self.source.value} attempts={len(self.attempts)} {self.text[:30]!r}>"


class ContractNegotiator:
    """
    Rephrases canonical step text through the generator under the response
    contract. Never raises; worst case returns the canonical text.
    """

    def __init__(
        self,
        generator: TextGenerator,
        validator: Optional[ResponseContractValidator] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        config: Optional[ContractConfig] = None,
    ):
        self.generator = generator
        self.config = config or ContractConfig()
        self.validator = validator or ResponseContractValidator(self.config)
        self.prompts = prompt_builder or PromptBuilder()

    async def negotiate(
        self,
        canonical_text: str,
        language: str = "en",
        agent: Optional[AgentPersona] = None,
        instruction: str = "",
        conversation_id: str = "",
    ) -> NegotiatedText:
        attempts: list[GenerationAttempt] = []
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_attempts),
                retry=retry_if_exception_type(ContractViolation),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    text = await self._attempt(number, canonical_text, language, agent,
                                               instruction, attempts)
        except ContractViolation as e:
            logger.warning("generation_fallback", conversation_id=conversation_id,
                           attempts=len(attempts), violations=e.violations, error=str(e))
            return NegotiatedText(collapse_ws(canonical_text), TextSource.FALLBACK, attempts)

        return NegotiatedText(text, TextSource.GENERATED, attempts)

    async def _attempt(self, number, canonical_text, language, agent, instruction,
                       attempts: list[GenerationAttempt]) -> str:
        strict = number > 1
        prompt = self.prompts.build(canonical_text, language=language, agent=agent,
                                    instruction=instruction, strict=strict)
        record = GenerationAttempt(number, strict, prompt)
        attempts.append(record)

        try:
            raw = await asyncio.wait_for(self.generator(prompt),
                                         timeout=self.config.generation_timeout_seconds)
        except asyncio.TimeoutError:
            record.error = "timeout"
            logger.warning("generation_timeout", attempt=number,
                           timeout=self.config.generation_timeout_seconds)
            raise GenerationFailed("timeout")
        except ContractViolation as e:
            record.error = str(e)
            raise
        except Exception as e:
            record.error = str(e)
            logger.warning("generation_error", attempt=number, error=str(e))
            raise GenerationFailed(str(e)) from e

        record.raw = raw
        result = self.validator.validate(raw)
        record.result = result
        if not result.valid:
            logger.info("contract_violation", attempt=number, strict=strict,
                        violations=[v.value for v in result.remaining])
            raise ContractViolation([v.value for v in result.remaining])
        if result.kind != ResponseKind.SPEAK:
            # A step that must speak cannot be answered with silence
            raise ContractViolation([ResponseKind.SILENCE.value],
                                    "Generator chose silence for a speaking step")
        return result.text
