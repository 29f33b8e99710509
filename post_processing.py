"""Text clean-up, spell checking and grammar correction of final transcripts."""

from __future__ import annotations

import logging
import re
import string
import time
from pathlib import Path
from typing import Any, Optional

from symspellpy import SymSpell, Verbosity

from errors import ModelLoadError, PostProcessingError
from interfaces import PostProcessingStage
from models import Transcript, TranscriptStage

try:
    from llama_cpp import Llama
except Exception:  # pragma: no cover
    Llama = None  # type: ignore

logger = logging.getLogger(__name__)

SILENCE_MARKER = "[silence]"

GRAMMAR_PROMPT = """<|im_start|>system
You are a copy editor. Fix grammar, punctuation and capitalization of the dictated text. Keep the wording and meaning. Reply with the corrected text only.<|im_end|>
<|im_start|>user
{text}<|im_end|>
<|im_start|>assistant
"""

_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.?!%])")
_MULTI_SPACE = re.compile(r" {2,}")


def clean_transcript(text: str) -> str:
    """Tidy raw engine output: floating punctuation, doubled spaces, first capital."""
    cleaned = _SPACE_BEFORE_PUNCT.sub(r"\1", text.strip())
    cleaned = _MULTI_SPACE.sub(" ", cleaned)
    if cleaned and cleaned[0].islower():
        cleaned = cleaned[0].upper() + cleaned[1:]
    return cleaned


def _strip_punctuation(word: str) -> tuple[str, str, str]:
    start, end = 0, len(word)
    while start < end and word[start] in string.punctuation:
        start += 1
    while end > start and word[end - 1] in string.punctuation:
        end -= 1
    return word[:start], word[start:end], word[end:]


def _match_case(suggestion: str, original: str) -> str:
    if original.isupper():
        return suggestion.upper()
    if original[:1].isupper():
        return suggestion[:1].upper() + suggestion[1:]
    return suggestion.lower()


def _is_skippable(word: str) -> bool:
    return len(word) <= 1 or all(c.isdigit() or c in string.punctuation for c in word)


class SpellCheckStage:
    """Word-by-word SymSpell correction against a frequency dictionary."""

    name = "spellcheck"
    stage = TranscriptStage.SPELL_CHECKED

    def __init__(self, dictionary_path: str | Path, max_edit_distance: int = 2, prefix_length: int = 7) -> None:
        self.dictionary_path = Path(dictionary_path) if dictionary_path else None
        self.max_edit_distance = max_edit_distance
        self.prefix_length = prefix_length
        self._sym_spell: Optional[SymSpell] = None

    @property
    def is_ready(self) -> bool:
        return self._sym_spell is not None

    def load(self) -> None:
        if self.is_ready:
            return
        if self.dictionary_path is None or not self.dictionary_path.is_file():
            raise ModelLoadError(f"Spellcheck dictionary not found: {self.dictionary_path}")
        started = time.perf_counter()
        sym_spell = SymSpell(max_dictionary_edit_distance=self.max_edit_distance, prefix_length=self.prefix_length)
        if not sym_spell.load_dictionary(str(self.dictionary_path), term_index=0, count_index=1, separator=" "):
            raise ModelLoadError(f"Could not read spellcheck dictionary {self.dictionary_path}")
        self._sym_spell = sym_spell
        logger.info("[SPELL] Dictionary loaded in %.0fms", (time.perf_counter() - started) * 1000)

    def unload(self) -> None:
        self._sym_spell = None

    def process(self, text: str) -> str:
        if self._sym_spell is None:
            return text
        words = text.split()
        corrected = []
        changes = 0
        for word in words:
            if _is_skippable(word):
                corrected.append(word)
                continue
            prefix, core, suffix = _strip_punctuation(word)
            if not core:
                corrected.append(word)
                continue
            suggestions = self._sym_spell.lookup(
                core.lower(), Verbosity.CLOSEST, max_edit_distance=self.max_edit_distance
            )
            if suggestions and suggestions[0].term.lower() != core.lower():
                corrected.append(f"{prefix}{_match_case(suggestions[0].term, core)}{suffix}")
                changes += 1
            else:
                corrected.append(word)
        logger.debug("[SPELL] %d words checked, %d corrected", len(words), changes)
        return " ".join(corrected)


class GrammarStage:
    """Grammar correction with a local GGUF model through llama-cpp-python."""

    name = "grammar"
    stage = TranscriptStage.GRAMMAR_CORRECTED

    def __init__(
        self,
        model_path: str | Path,
        gpu_layers: int = 0,
        context_size: int = 2048,
        temperature: float = 0.3,
        top_p: float = 0.95,
    ) -> None:
        self.model_path = Path(model_path) if model_path else None
        self.gpu_layers = gpu_layers
        self.context_size = context_size
        self.temperature = temperature
        self.top_p = top_p
        self._llm: Any = None

    @property
    def is_ready(self) -> bool:
        return self._llm is not None

    def load(self) -> None:
        if self.is_ready:
            return
        if Llama is None:
            raise ModelLoadError("llama-cpp-python is not installed")
        if self.model_path is None or not self.model_path.is_file():
            raise ModelLoadError(f"Grammar model not found: {self.model_path}")
        started = time.perf_counter()
        try:
            self._llm = Llama(
                model_path=str(self.model_path),
                n_gpu_layers=self.gpu_layers,
                n_ctx=self.context_size,
                verbose=False,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load grammar model: {exc}") from exc
        logger.info("[LLM] Grammar model loaded in %.2fs", time.perf_counter() - started)

    def unload(self) -> None:
        self._llm = None

    def process(self, text: str) -> str:
        text = text.strip()
        if not text or self._llm is None:
            return text
        started = time.perf_counter()
        try:
            output = self._llm(
                GRAMMAR_PROMPT.format(text=text),
                max_tokens=len(text) // 2 + 128,
                temperature=self.temperature,
                top_p=self.top_p,
                stop=["<|im_end|>", "<|endoftext|>"],
            )
            corrected = output["choices"][0]["text"]
        except Exception as exc:
            raise PostProcessingError(f"grammar correction failed: {exc}") from exc
        corrected = corrected.replace("<|im_end|>", "").replace("<|endoftext|>", "").strip()
        if not corrected:
            raise PostProcessingError("grammar model returned no text")
        logger.info("[LLM] Corrected %d chars in %.0fms", len(text), (time.perf_counter() - started) * 1000)
        return corrected


class PostProcessingChain:
    """Spellcheck then grammar, each optional.

    A disabled or unloaded stage passes text through. When a stage fails the
    chain stops and returns the last good transcript with a warning.
    """

    def __init__(
        self,
        spellcheck: Optional[PostProcessingStage] = None,
        grammar: Optional[PostProcessingStage] = None,
        spellcheck_enabled: bool = False,
        grammar_enabled: bool = False,
    ) -> None:
        self._spellcheck = spellcheck
        self._grammar = grammar
        self.spellcheck_enabled = spellcheck_enabled
        self.grammar_enabled = grammar_enabled

    def configure(self, spellcheck: bool, grammar: bool) -> list[str]:
        """Enable or disable stages, loading or unloading them as needed."""
        self.spellcheck_enabled = spellcheck
        self.grammar_enabled = grammar
        warnings = []
        for enabled, stage in ((spellcheck, self._spellcheck), (grammar, self._grammar)):
            if stage is None:
                continue
            if enabled and not stage.is_ready:
                try:
                    stage.load()
                except ModelLoadError as exc:
                    logger.warning("%s stage unavailable: %s", stage.name, exc)
                    warnings.append(f"{stage.name}: {exc.message}")
            elif not enabled and stage.is_ready:
                stage.unload()
        return warnings

    def run(self, transcript: Transcript) -> tuple[Transcript, list[str]]:
        current = transcript
        warnings: list[str] = []
        for enabled, stage in ((self.spellcheck_enabled, self._spellcheck), (self.grammar_enabled, self._grammar)):
            if not enabled or stage is None or not stage.is_ready:
                continue
            try:
                text = stage.process(current.text)
            except Exception as exc:
                logger.warning("%s stage failed, keeping %s text: %s", stage.name, current.stage.value, exc)
                warnings.append(f"{stage.name}: {exc}")
                break
            current = current.advance(text, stage.stage)
        return current, warnings
