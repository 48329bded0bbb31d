from __future__ import annotations

import copy
import importlib
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

_PROVIDER_ENV = (
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "CAREPLAN_CHAT_PROVIDER",
    "CAREPLAN_SESSION_TTL_SECONDS",
    "CAREPLAN_LAZY_SCHEDULES",
)

SAMPLE_PLAN: dict[str, Any] = {
    "problemOverview": {
        "currentStatus": {
            "primaryCondition": "Type 2 Diabetes",
            "severity": "moderate",
            "symptoms": ["Fatigue", "Digestive issues"],
        },
        "keyBiomarkers": [
            {"name": "Glucose", "current": 145, "target": 100, "unit": "mg/dL"},
            {"name": "HbA1c", "current": 7.2, "target": 6.0, "unit": "%"},
        ],
        "riskFactors": ["Family history", "Sedentary lifestyle"],
    },
    "treatmentStrategy": {
        "ayurvedic": {
            "herbs": [
                {
                    "name": "Gymnema",
                    "dosage": "400mg",
                    "timing": "before meals",
                    "duration": "12 weeks",
                }
            ],
            "diet": [
                {
                    "recommendation": "Low glycemic meals",
                    "reason": "Keeps glucose stable",
                    "restrictions": ["Refined sugar"],
                }
            ],
            "yoga": [{"asana": "Mandukasana", "notes": "Hold for five breaths"}],
        },
        "modern": {
            "exercise": {"frequency": "5x weekly", "intensity": "moderate"},
            "biohacking": [{"intervention": "Sleep hygiene", "protocol": "Screens off by 21:00", "frequency": "daily"}],
        },
        "lifestyle": ["Walk after dinner", "Sleep by 22:30"],
    },
    "goals": {
        "shortTerm": [{"description": "Fasting glucose under 120"}],
        "longTerm": [{"description": "HbA1c under 6.5"}],
    },
}


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "careplan-test.sqlite"
    monkeypatch.setenv("CAREPLAN_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; provider tests patch llm.complete directly.
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make


@pytest.fixture
def sample_plan() -> dict[str, Any]:
    return copy.deepcopy(SAMPLE_PLAN)


@pytest.fixture
def seeded_schedule(client, auth_headers, sample_plan) -> Callable[[str, str], dict[str, Any]]:
    def _seed(user_id: str, date: str = "2030-01-15") -> dict[str, Any]:
        headers = auth_headers(user_id)
        response = client.post("/treatment-plans", headers=headers, json=sample_plan)
        assert response.status_code == 200
        response = client.get("/daily-schedule", headers=headers, params={"date": date})
        assert response.status_code == 200
        return response.json()

    return _seed
