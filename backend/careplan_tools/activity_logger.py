from __future__ import annotations

import logging
import re
from typing import Any, Callable

from careplan_core.completion import COMPLETION_MESSAGE, ActivityContext, ToolTurn
from careplan_core.errors import UpstreamFailure, ValidationError
from careplan_core.models import CompletionReport, TranscriptTurn

from . import llm

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_TURNS = 6

SYSTEM_PROMPT = (
    "You are an empathetic health coach checking in after a patient completed an activity "
    "from their daily care plan. Warm, supportive, brief. Ask one thing at a time."
)

_PREFIX_RE = re.compile(r"^(okay|here|now|let me|i would like to|allow me).*?[,:]", re.IGNORECASE)
_POSITIVE_RE = re.compile(
    r"\b(great|good|better|energi[sz]ed|calm|relaxed|easy|strong|amazing|refreshed|focused|enjoyed)\b",
    re.IGNORECASE,
)
_NEGATIVE_RE = re.compile(
    r"\b(pain|hurt|tired|exhausted|dizzy|nause\w*|hard|struggl\w*|worse|anxious|skipped|sore)\b",
    re.IGNORECASE,
)

_SCRIPTED_QUESTIONS: dict[str, list[str]] = {
    "medication": [
        "How are you feeling since taking your medication?",
        "Did you notice any side effects, like drowsiness or stomach discomfort?",
        "Did you take it at the usual time and with water as planned?",
    ],
    "workout": [
        "How did this workout feel compared to your usual routine?",
        "How hard did it feel on a scale from 1 to 10, and did anything hurt?",
        "How is your energy now that you're done?",
    ],
    "meal": [
        "How did this meal sit with you?",
        "Did you follow the planned portions and food combinations?",
        "How is your energy and digestion now?",
    ],
    "biohacking": [
        "How did this routine go today?",
        "Did you follow the protocol as planned, or adjust anything?",
        "What changes have you noticed since starting it?",
    ],
    "treatment": [
        "How did the treatment go today?",
        "Did you notice any reactions or discomfort afterwards?",
        "Did you follow the instructions as prescribed?",
    ],
}
_MINDFUL_QUESTIONS = [
    "How did this session feel for your body and mind?",
    "Were you able to keep your breathing steady and your attention settled?",
    "How do you feel now compared to before you started?",
]

_DEFAULT_RECOMMENDATIONS: dict[str, list[str]] = {
    "medication": ["Keep taking it at a consistent time", "Note any side effects for your practitioner"],
    "workout": ["Keep intensity in your target range", "Hydrate and stretch after sessions"],
    "meal": ["Keep portions balanced", "Eat slowly and mindfully"],
    "biohacking": ["Stay consistent with the protocol", "Track how you respond over the week"],
    "treatment": ["Follow the prescribed schedule", "Report any reactions to your practitioner"],
}
_MINDFUL_RECOMMENDATIONS = ["Keep a regular daily time for practice", "Extend sessions gradually"]


def clean_reply(text: str) -> str:
    cleaned = _PREFIX_RE.sub("", text.strip(), count=1)
    cleaned = re.sub(r"^[\"']|[\"']$", "", cleaned.strip())
    return cleaned.replace("\n", " ").strip()


def _questions_for(activity_type: str) -> list[str]:
    return _SCRIPTED_QUESTIONS.get(activity_type, _MINDFUL_QUESTIONS)


def _format_transcript(transcript: list[TranscriptTurn]) -> str:
    return "\n".join(f"{turn.role}: {turn.content}" for turn in transcript)


def fallback_report() -> CompletionReport:
    return CompletionReport(
        summary="Activity completed with limited data available",
        insights=["Unable to generate detailed insights"],
        effectiveness=50,
        recommendations=["Consider providing more detailed responses in future logs"],
    )


class ActivityLoggerTool:
    """Conversational tool behind activity completion sessions.

    The tool holds no session state: it gets the full transcript on every call.
    With an LLM provider configured it phrases questions and the final report
    through the model, otherwise it runs a short scripted interview.
    """

    def __init__(
        self,
        *,
        max_turns: int = MAX_TRANSCRIPT_TURNS,
        completion: Callable[..., str | None] | None = None,
    ) -> None:
        self.max_turns = max_turns
        self._completion = completion

    def _complete(self, **kwargs: Any) -> str | None:
        return (self._completion or llm.complete)(**kwargs)

    def opening_message(self, context: ActivityContext) -> str:
        prompt = (
            f"Ask a single question about their completed {context.activity_type} activity. "
            f"Focus on physical and emotional effects and show understanding of the health impact "
            f"of {context.activity_type}. No prefixes, no explanations, only the question."
        )
        text = self._complete(system_prompt=SYSTEM_PROMPT, messages=[{"role": "user", "content": prompt}])
        if text is None:
            return _questions_for(context.activity_type)[0]
        return clean_reply(text) or _questions_for(context.activity_type)[0]

    def next_turn(self, transcript: list[TranscriptTurn], context: ActivityContext) -> ToolTurn:
        if len(transcript) >= self.max_turns:
            return ToolTurn(COMPLETION_MESSAGE, is_complete=True, report=self._final_report(transcript, context))

        prompt = (
            f"You are discussing a {context.activity_type} activity.\n\n"
            f"Previous conversation:\n{_format_transcript(transcript)}\n\n"
            "Respond naturally to their last answer, stay supportive, and ask one follow-up "
            "question about their experience. No prefixes or meta-text."
        )
        text = self._complete(system_prompt=SYSTEM_PROMPT, messages=[{"role": "user", "content": prompt}])
        if text is None:
            return ToolTurn(self._scripted_question(transcript, context))
        return ToolTurn(clean_reply(text) or self._scripted_question(transcript, context))

    def _scripted_question(self, transcript: list[TranscriptTurn], context: ActivityContext) -> str:
        questions = _questions_for(context.activity_type)
        answered = sum(1 for turn in transcript if turn.role == "user")
        return questions[min(answered, len(questions) - 1)]

    def _final_report(self, transcript: list[TranscriptTurn], context: ActivityContext) -> CompletionReport:
        prompt = (
            f"Analyze this {context.activity_type} activity conversation and generate a structured report.\n\n"
            f"Conversation:\n{_format_transcript(transcript)}\n\n"
            "Reply with JSON only, exactly this structure:\n"
            '{"summary": "2-3 sentence summary of activity and outcomes", '
            '"insights": ["3-4 key observations about impact and execution"], '
            '"effectiveness": 0-100 score based on positive outcomes, '
            '"recommendations": ["2-3 specific suggestions for future activities"]}'
        )
        try:
            text = self._complete(
                system_prompt=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.2,
            )
        except UpstreamFailure:
            logger.warning("report generation failed activity=%s, using fallback report", context.activity_id)
            return fallback_report()
        if text is None:
            return self._scripted_report(transcript, context)
        payload = llm.extract_json_object(text)
        if payload is None:
            logger.warning("report was not JSON activity=%s, using fallback report", context.activity_id)
            return fallback_report()
        try:
            return CompletionReport.from_dict(payload)
        except ValidationError:
            return fallback_report()

    def _scripted_report(self, transcript: list[TranscriptTurn], context: ActivityContext) -> CompletionReport:
        answers = [turn.content for turn in transcript if turn.role == "user"]
        joined = " ".join(answers)
        score = 60 + 10 * len(_POSITIVE_RE.findall(joined)) - 10 * len(_NEGATIVE_RE.findall(joined))
        first_answer = answers[0][:160] if answers else "no details shared"
        return CompletionReport(
            summary=f"Completed the {context.activity_type} activity. Patient reported: {first_answer}",
            insights=[f"Reported: {answer[:160]}" for answer in answers[:4]],
            effectiveness=max(0, min(100, score)),
            recommendations=list(_DEFAULT_RECOMMENDATIONS.get(context.activity_type, _MINDFUL_RECOMMENDATIONS)),
        )
