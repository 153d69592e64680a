# backend/callscribe/services/analysis_engine.py
from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from callscribe.config import settings
from callscribe.models.transcript import Sentiment
from callscribe.utils.logger import logger

ASK_AI_ERROR_REPLY = "I'm sorry, I encountered an error while analyzing the transcript. Please try again."
HISTORY_TURNS = 5

_VALID_SENTIMENTS = {s.value for s in Sentiment}


@dataclass
class TranscriptAnalysis:
    summary: str
    sentiment: str = Sentiment.NEUTRAL.value
    sentiment_score: int = 50
    action_items: List[str] = field(default_factory=list)
    key_insights: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_turns(speakers: Sequence[Dict[str, Any]]) -> str:
    return "\n".join(f"{s.get('speaker')}: {s.get('text')}" for s in speakers or [])


def strip_code_fences(text: str) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        text = text[3:]
        if text.lower().startswith("json"):
            text = text[4:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _clamp_score(value: Any) -> int:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 50
    if not math.isfinite(score):
        return 50
    score = int(round(score))
    return max(0, min(100, score))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def fallback_analysis(full_text: str) -> TranscriptAnalysis:
    return TranscriptAnalysis(summary=(full_text or "")[:200] + "...")


def parse_analysis(raw: str, full_text: str) -> TranscriptAnalysis:
    """
    Validate a model response. Anything that is not a JSON object after
    fence stripping yields the fallback analysis.
    """
    try:
        data = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"[analysis] unparsable model output, using fallback: {(raw or '')[:200]!r}")
        return fallback_analysis(full_text)
    if not isinstance(data, dict):
        logger.warning("[analysis] model output is not a JSON object, using fallback")
        return fallback_analysis(full_text)

    sentiment = str(data.get("sentiment") or "").strip().upper()
    if sentiment not in _VALID_SENTIMENTS:
        sentiment = Sentiment.NEUTRAL.value

    summary = data.get("summary")
    return TranscriptAnalysis(
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else "No summary available",
        sentiment=sentiment,
        sentiment_score=_clamp_score(data.get("sentiment_score", 50)),
        action_items=_string_list(data.get("action_items")),
        key_insights=_string_list(data.get("key_insights")),
        topics=_string_list(data.get("topics")),
    )


def build_analysis_prompt(speakers: Sequence[Dict[str, Any]], full_text: str) -> str:
    transcript = format_turns(speakers) or full_text
    return f"""You are an expert sales call analyst. Analyze the following phone call transcript and provide a comprehensive analysis.

TRANSCRIPT:
{transcript}

Provide your analysis in the following JSON format:
{{
  "summary": "A concise 2-3 sentence executive summary of the entire call, highlighting the main purpose, key discussion points, and outcome",
  "sentiment": "POSITIVE, NEUTRAL, or NEGATIVE - the overall sentiment of the call",
  "sentiment_score": "A number from 0-100 where 0 is very negative, 50 is neutral, and 100 is very positive",
  "action_items": ["Specific, actionable next steps mentioned or implied in the call"],
  "key_insights": ["Important insights, objections, concerns, or opportunities mentioned"],
  "topics": ["Main topics discussed in the call"]
}}

Important:
- The summary must cover the ENTIRE conversation, not just the beginning
- Be specific and actionable in action items
- Identify both explicit and implicit action items
- Return ONLY valid JSON, no additional text"""


def build_question_prompt(
    question: str,
    speakers: Sequence[Dict[str, Any]],
    full_text: str,
    history: Sequence[Dict[str, Any]],
) -> str:
    recent = list(history or [])[-HISTORY_TURNS:]
    history_block = ""
    if recent:
        lines = []
        for turn in recent:
            who = "User" if turn.get("role") == "user" else "AI"
            lines.append(f"{who}: {turn.get('text', '')}")
        history_block = "\n\nPrevious conversation:\n" + "\n".join(lines)

    return f"""You are an AI assistant helping analyze a sales call transcript. Answer the user's question based ONLY on the information in the transcript.

TRANSCRIPT:
{format_turns(speakers) or full_text}{history_block}

USER QUESTION: {question}

Provide a helpful, specific answer based on the transcript. If the transcript does not contain the information, say so plainly instead of guessing. Be concise but thorough."""


class AnalysisEngine:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: str = "gpt-4o-mini",
        timeout_s: float = 45.0,
    ):
        self.client = client
        self.model = model
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls) -> "AnalysisEngine":
        client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY) if settings.OPENAI_API_KEY else None
        return cls(client, model=settings.OPENAI_MODEL, timeout_s=settings.ANALYSIS_TIMEOUT_SECONDS)

    async def _complete(self, system: str, prompt: str, temperature: float, max_tokens: int) -> str:
        started = time.time()
        resp = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            ),
            timeout=self.timeout_s,
        )
        elapsed = (time.time() - started) * 1000
        logger.info(f"[analysis] completion in {elapsed:.0f}ms (model={self.model})")
        return (resp.choices[0].message.content or "").strip()

    async def analyze(self, full_text: str, speakers: Sequence[Dict[str, Any]]) -> TranscriptAnalysis:
        """Never raises: provider or parse failures degrade to the fallback."""
        if self.client is None:
            logger.warning("[analysis] no LLM client configured, using fallback analysis")
            return fallback_analysis(full_text)

        try:
            raw = await self._complete(
                "You analyze phone call transcripts. Return only valid JSON.",
                build_analysis_prompt(speakers, full_text),
                temperature=0.2,
                max_tokens=1200,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[analysis] timed out after {self.timeout_s}s, using fallback")
            return fallback_analysis(full_text)
        except Exception as e:
            logger.error(f"[analysis] LLM error, using fallback: {type(e).__name__}: {e}")
            return fallback_analysis(full_text)

        try:
            return parse_analysis(raw, full_text)
        except Exception as e:
            logger.error(f"[analysis] could not validate model output, using fallback: {type(e).__name__}: {e}")
            return fallback_analysis(full_text)

    async def answer_question(
        self,
        question: str,
        full_text: str,
        speakers: Sequence[Dict[str, Any]],
        history: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> str:
        if self.client is None:
            logger.warning("[analysis] ask-ai requested without an LLM client")
            return ASK_AI_ERROR_REPLY

        try:
            answer = await self._complete(
                "You answer questions about a single call transcript and never invent facts.",
                build_question_prompt(question, speakers, full_text, history or []),
                temperature=0.3,
                max_tokens=600,
            )
        except Exception as e:
            logger.error(f"[analysis] ask-ai error: {type(e).__name__}: {e}")
            return ASK_AI_ERROR_REPLY

        return answer or ASK_AI_ERROR_REPLY
