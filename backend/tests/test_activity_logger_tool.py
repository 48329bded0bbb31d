from __future__ import annotations

import pytest

from careplan_core.completion import COMPLETION_MESSAGE, ActivityContext
from careplan_core.errors import UpstreamFailure
from careplan_core.models import TranscriptTurn
from careplan_tools import llm
from careplan_tools.activity_logger import ActivityLoggerTool, clean_reply


def _transcript(*answers: str) -> list[TranscriptTurn]:
    turns = [TranscriptTurn("assistant", "How did it go?")]
    for answer in answers:
        turns.append(TranscriptTurn("user", answer))
        turns.append(TranscriptTurn("assistant", "Tell me more."))
    return turns


def test_scripted_interview_without_provider(monkeypatch):
    monkeypatch.setattr(llm, "complete", lambda **_: None)
    tool = ActivityLoggerTool()
    context = ActivityContext(2, "workout")

    assert tool.opening_message(context) == "How did this workout feel compared to your usual routine?"
    turn = tool.next_turn(_transcript("It went well")[:2], context)
    assert turn.is_complete is False
    assert turn.message.startswith("How hard did it feel")


def test_meditation_and_yoga_share_mindful_questions(monkeypatch):
    monkeypatch.setattr(llm, "complete", lambda **_: None)
    tool = ActivityLoggerTool()
    assert tool.opening_message(ActivityContext(1, "yoga")) == tool.opening_message(ActivityContext(2, "meditation"))


def test_report_after_six_turns_scores_answers(monkeypatch):
    monkeypatch.setattr(llm, "complete", lambda **_: None)
    tool = ActivityLoggerTool()
    transcript = _transcript("Felt great and energized", "A bit sore but good")[:5]
    transcript.append(TranscriptTurn("user", "I feel calm now"))

    turn = tool.next_turn(transcript, ActivityContext(4, "workout"))

    assert turn.is_complete is True
    assert turn.message == COMPLETION_MESSAGE
    assert turn.report.summary.startswith("Completed the workout activity.")
    assert 0 <= turn.report.effectiveness <= 100
    assert turn.report.effectiveness > 60
    assert turn.report.recommendations


def test_llm_reply_is_cleaned(monkeypatch):
    monkeypatch.setattr(llm, "complete", lambda **_: 'Okay, "Did you sleep well?"')
    tool = ActivityLoggerTool()
    assert tool.opening_message(ActivityContext(1, "meal")) == "Did you sleep well?"


def test_llm_report_json_is_parsed(monkeypatch):
    replies = iter(
        [
            'Here you go: {"summary": "Solid session", "insights": ["a", "b"], '
            '"effectiveness": 140, "recommendations": ["rest"]}',
        ]
    )
    monkeypatch.setattr(llm, "complete", lambda **_: next(replies))
    tool = ActivityLoggerTool(max_turns=2)
    turn = tool.next_turn(_transcript("fine")[:2], ActivityContext(1, "meal"))
    assert turn.report.summary == "Solid session"
    assert turn.report.effectiveness == 100


def test_unparseable_report_falls_back(monkeypatch):
    monkeypatch.setattr(llm, "complete", lambda **_: "I could not produce JSON today")
    tool = ActivityLoggerTool(max_turns=2)
    turn = tool.next_turn(_transcript("fine")[:2], ActivityContext(1, "meal"))
    assert turn.report.summary == "Activity completed with limited data available"
    assert turn.report.effectiveness == 50


def test_upstream_failure_on_question_propagates(monkeypatch):
    def _fail(**_):
        raise UpstreamFailure("Conversational provider unavailable")

    monkeypatch.setattr(llm, "complete", _fail)
    tool = ActivityLoggerTool()
    with pytest.raises(UpstreamFailure):
        tool.next_turn(_transcript("fine")[:2], ActivityContext(1, "meal"))


def test_upstream_failure_on_report_falls_back(monkeypatch):
    def _fail(**_):
        raise UpstreamFailure("Conversational provider unavailable")

    monkeypatch.setattr(llm, "complete", _fail)
    tool = ActivityLoggerTool(max_turns=2)
    turn = tool.next_turn(_transcript("fine")[:2], ActivityContext(1, "meal"))
    assert turn.is_complete is True
    assert turn.report.effectiveness == 50


def test_clean_reply_strips_prefix_and_quotes():
    assert clean_reply("Let me ask: 'How was lunch?'") == "How was lunch?"
    assert clean_reply("How was lunch?") == "How was lunch?"


def test_complete_returns_none_without_providers(monkeypatch):
    for name in ("ANTHROPIC_API_KEY", "OPENROUTER_API_KEY", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    assert llm.complete(system_prompt="s", messages=[{"role": "user", "content": "hi"}]) is None


def test_provider_preference_orders_candidates(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")
    monkeypatch.setenv("OPENAI_API_KEY", "o-key")
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("CAREPLAN_CHAT_PROVIDER", "openai")
    assert [item["provider"] for item in llm.chat_provider_candidates()] == ["openai", "anthropic"]
