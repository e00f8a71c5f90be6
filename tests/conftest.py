import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from orchestrator import config, db, metrics, server


@pytest.fixture(autouse=True)
def _isolate_storage(tmp_path, monkeypatch):
    """Every test gets its own SQLite file and audit log."""
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "orchestrator.sqlite")
    monkeypatch.setattr(config, "AUDIT_LOG_PATH", str(tmp_path / "audit.log"))
    monkeypatch.setattr(server, "_AGENT", None)
    metrics.reset()


@pytest.fixture(autouse=True)
def force_heuristic_classifier(monkeypatch):
    """Never reach for a language model from tests."""
    monkeypatch.setattr(config, "CLASSIFIER_MODE", "heuristic")
    monkeypatch.setattr(config, "NOTIFY_WEBHOOK_URL", None)
    monkeypatch.setattr(config, "AUTOMATION_WEBHOOK_URL", None)
    monkeypatch.setattr(config, "REQUIRE_API_KEY", False)
    monkeypatch.setattr(config, "DEFAULT_ORG_ID", None)
    monkeypatch.setattr(config, "FALLBACK_PIPELINE_ID", None)
