#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  activity_type: str
  answers: list[str]


SMOKE_PLAN: dict[str, Any] = {
  "problemOverview": {
    "currentStatus": {"primaryCondition": "Hypertension", "severity": "moderate", "symptoms": ["Fatigue"]},
    "keyBiomarkers": [{"name": "Blood Pressure", "current": 142, "target": 120, "unit": "mmHg"}],
    "riskFactors": ["Stress"],
  },
  "treatmentStrategy": {
    "ayurvedic": {"herbs": [{"name": "Arjuna", "dosage": "500mg", "timing": "after meals", "duration": "8 weeks"}]},
    "modern": {"exercise": {"frequency": "4x weekly", "intensity": "moderate"}},
    "lifestyle": ["Reduce salt"],
  },
  "goals": {"shortTerm": [{"description": "Systolic under 130"}], "longTerm": [{"description": "Stable BP"}]},
}


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Smoke runs use a throwaway database unless one is configured.
  os.environ.setdefault("CAREPLAN_DB_PATH", str(Path(tempfile.mkdtemp()) / "careplan-smoke.sqlite"))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)
  from careplan_tools.schedule_client import ScheduleClient

  schedule_date = datetime.now(timezone.utc).date().isoformat()
  headers = {"Authorization": "Bearer smoke-user"}

  scenarios = [
    Scenario("Workout Completion", "workout", ["Felt strong", "Legs a bit sore", "Energized now"]),
    Scenario("Meal Completion", "meal", ["Sat well", "Followed the portions", "Good energy"]),
    Scenario("Medication Completion", "medication", ["Fine", "No side effects", "Took it with water"]),
  ]

  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    plan_response = client.post("/treatment-plans", headers=headers, json=SMOKE_PLAN)
    if plan_response.status_code != 200:
      print(f"/treatment-plans returned {plan_response.status_code}")
      return 1

    for index, scenario in enumerate(scenarios):
      scenario_result: dict[str, Any] = {"name": scenario.name, "activity_type": scenario.activity_type}
      schedule_client = ScheduleClient(client, headers=headers, session_id=f"smoke-{index}")
      try:
        schedule = schedule_client.load(schedule_date)
        activity = next(item for item in schedule["activities"] if item["type"] == scenario.activity_type)
        scenario_result["activity_id"] = activity["id"]
        scenario_result["opening"] = schedule_client.start_completion(activity["id"], scenario.activity_type)
        reply: dict[str, Any] = {}
        for answer in scenario.answers:
          reply = schedule_client.send(answer)
        scenario_result["report"] = reply.get("report")
        if not reply.get("isComplete"):
          raise RuntimeError("session did not complete after scripted answers")
        updated = schedule_client.finish_completion()
        scenario_result["activity_log"] = updated.get("activityLog")
        scenario_result["pass"] = bool(updated.get("completed"))
      except Exception as exc:
        scenario_result["pass"] = False
        scenario_result["error"] = f"{type(exc).__name__}: {exc}"
      results.append(scenario_result)

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Completion E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- Schedule date: `{schedule_date}`",
    f"- CAREPLAN_CHAT_PROVIDER: `{os.getenv('CAREPLAN_CHAT_PROVIDER', 'auto')}`",
    f"- Total scenarios: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    "",
    "## Scenario Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Activity: `{item.get('activity_id')}` ({item['activity_type']})")
    if item.get("opening"):
      report_lines.append(f"- Opening question: `{item['opening']}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    report_lines.append("- Report payload:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("report"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("- Stored activity log:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("activity_log"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "COMPLETION_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} scenarios.")

  return 0 if failed == 0 else 1


if __name__ == "__main__":
  raise SystemExit(run())
