"""OpenAI-compatible client for email analysis and reply drafting."""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import OpenAI, OpenAIError

from clinbox.core.exceptions import AnalyzerError, ComposerError, ConfigurationError
from clinbox.core.models import AnalysisResult, MessageContent, Priority

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an email assistant for a software developer.

Analyze this email and provide a JSON response with:
- priority: "urgent" | "actionable" | "informative"
- category: a short label such as "billing", "security", "infrastructure", "newsletter", "personal", "github" or "other"
- summary: 1-2 sentence summary in {language}
- suggested_action: what to do (or null if no action needed), in {language}
- estimated_time_minutes: how long the action would take (1, 2, 5, 10, 15, 30)

Priority guidelines:
- urgent: Production errors, security alerts, billing limits exceeded
- actionable: Needs a response or action but is not time-critical
- informative: Useful to read later, marketing, newsletters, spam

Respond ONLY with valid JSON, no markdown or explanation."""

REPLY_PROMPT = """You are an email assistant helping a software developer write email replies.

Write a concise reply to the email. Guidelines:
- Use a {tone} tone
- Be helpful and direct
- Keep it brief (2-4 sentences typically)
- Write in the same language as the original email
- If it's a notification/no-reply email, write a brief acknowledgment

Respond with ONLY the reply text, no subject line and no preamble, just the email body ready to send."""

ANALYSIS_TEMPERATURE = 0.3
REPLY_TEMPERATURE = 0.7
MAX_TOKENS = 500


def strip_code_fence(content: str) -> str:
    """Remove a surrounding markdown code fence from a model response."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
    if text.endswith("```"):
        text = text[: -len("```")]
    return text.strip()


def parse_analysis(message_id: str, content: str) -> AnalysisResult:
    """Parse the model's JSON answer into an AnalysisResult.

    Raises:
        AnalyzerError: If the answer is not a JSON object with a summary.
    """
    try:
        data: Any = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as e:
        raise AnalyzerError(f"Failed to parse AI analysis JSON: {e}") from e
    if not isinstance(data, dict) or not data.get("summary"):
        raise AnalyzerError("AI analysis JSON is missing a summary")

    minutes = data.get("estimated_time_minutes")
    return AnalysisResult(
        message_id=message_id,
        priority=Priority.from_label(data.get("priority")),
        category=str(data.get("category") or "other"),
        summary=str(data["summary"]).strip(),
        suggested_action=data.get("suggested_action") or None,
        estimated_minutes=int(minutes) if isinstance(minutes, (int, float)) else None,
    )


class AIClient:
    """Analyzer and Composer backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        client: OpenAI,
        *,
        analysis_model: str,
        reply_model: str,
        language: str = "English",
        analysis_body_chars: int = 1500,
        reply_body_chars: int = 2000,
    ) -> None:
        self._client = client
        self._analysis_model = analysis_model
        self._reply_model = reply_model
        self._language = language
        self._analysis_body_chars = analysis_body_chars
        self._reply_body_chars = reply_body_chars

    @classmethod
    def from_settings(cls, settings: Any) -> AIClient:
        """Build the client from ClinboxSettings; retries are left to the pipeline."""
        if not settings.ai_api_key:
            raise ConfigurationError("AI API key is not set (CLINBOX_AI_API_KEY)")
        client = OpenAI(
            api_key=settings.ai_api_key,
            base_url=settings.ai_base_url,
            timeout=settings.analysis_timeout_seconds,
            max_retries=0,
            default_headers={"X-Title": "Clinbox"},
        )
        return cls(
            client,
            analysis_model=settings.ai_model_analysis,
            reply_model=settings.ai_model_reply,
            language=settings.ai_language,
            analysis_body_chars=settings.analysis_body_chars,
            reply_body_chars=settings.reply_body_chars,
        )

    def analyze(self, content: MessageContent) -> AnalysisResult:
        user_content = (
            f"From: {content.sender}\n"
            f"Subject: {content.subject}\n"
            f"Date: {content.date:%Y-%m-%d %H:%M}\n"
            f"Labels: {', '.join(content.label_ids)}\n\n"
            f"Body:\n{content.truncated_body(self._analysis_body_chars)}"
        )
        try:
            answer = self._complete(
                self._analysis_model,
                ANALYSIS_PROMPT.format(language=self._language),
                user_content,
                ANALYSIS_TEMPERATURE,
            )
        except OpenAIError as e:
            raise AnalyzerError(f"AI analysis request failed: {e}") from e

        result = parse_analysis(content.message_id, answer)
        logger.debug("Analyzed %s: %s/%s", content.message_id, result.priority, result.category)
        return result

    def compose(self, content: MessageContent, tone: str) -> str:
        user_content = (
            f"From: {content.sender}\n"
            f"Subject: {content.subject}\n"
            f"Date: {content.date:%Y-%m-%d %H:%M}\n\n"
            f"Body:\n{content.truncated_body(self._reply_body_chars)}"
        )
        try:
            answer = self._complete(
                self._reply_model,
                REPLY_PROMPT.format(tone=tone),
                user_content,
                REPLY_TEMPERATURE,
            )
        except OpenAIError as e:
            raise ComposerError(f"AI reply request failed: {e}") from e

        draft = answer.strip()
        if not draft:
            raise ComposerError("AI returned an empty reply draft")
        return draft

    def _complete(self, model: str, system: str, user: str, temperature: float) -> str:
        response = self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=MAX_TOKENS,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
