from __future__ import annotations

import datetime
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
SCRIPTS_DIR = APP_DIR / "scripts"
for path in (APP_DIR, SCRIPTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

import workflow_smoke  # noqa: E402


def test_workflow_runs_end_to_end(session_factory, memory_receipts, tmp_path):
    receipt = tmp_path / "receipt.png"
    receipt.write_bytes(b"placeholder")
    day = datetime.date(2024, 6, 10)

    summary = workflow_smoke.run_workflow(
        day,
        0,
        "smoke",
        session_factory=session_factory,
        receipt_store=memory_receipts,
        receipt_path=receipt,
    )

    assert summary["jobs_created"] == 2
    assert summary["receipt_attached"] is True
    assert summary["remaining_pending"] == 1
    assert len(memory_receipts.objects) == 1


def test_workflow_is_repeatable(session_factory, memory_receipts):
    day = datetime.date(2024, 6, 11)
    workflow_smoke.run_workflow(day, 4, "smoke", session_factory=session_factory, receipt_store=memory_receipts)
    again = workflow_smoke.run_workflow(
        day, 4, "smoke", session_factory=session_factory, receipt_store=memory_receipts
    )
    assert again["jobs_created"] == 2
    assert again["remaining_pending"] == 1
