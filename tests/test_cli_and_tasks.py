# tests/test_cli_and_tasks.py
from __future__ import annotations

import json

from quoteflow.cli.__main__ import main
from quoteflow.services.pricing_config import list_schemes
from quoteflow.workers import tasks


def test_seed_schemes_command(db, tenant_id, capsys):
    main(["seed-schemes", "--tenant-id", str(tenant_id)])
    out = json.loads(capsys.readouterr().out)

    assert out["ok"] is True
    assert len(out["created"]) == 5
    assert len(list_schemes(db, tenant_id=tenant_id)) == 5


def test_lock_portals_command_reports(tenant_id, capsys):
    main(["lock-portals", "--tenant-id", str(tenant_id)])
    out = json.loads(capsys.readouterr().out)
    assert out == {"ok": True, "locked": [], "skipped": []}


def test_periodic_tasks_run_inline():
    # task bodies are plain callables; no broker involved
    assert set(tasks.lock_expired_portals()) == {"locked", "skipped"}
    assert set(tasks.dispatch_notifications()) == {"delivered", "failed"}


def test_unknown_payment_event_kind():
    out = tasks.reconcile_payment_event.run("refunded", {"reference_id": "cs_x"})
    assert out["ok"] is False
