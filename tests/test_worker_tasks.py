from __future__ import annotations

from types import SimpleNamespace

from sqlalchemy import select

from paperkeep.bootstrap import bootstrap
from paperkeep.core.config import settings
from paperkeep.core.db import SessionLocal
from paperkeep.modules.documents.service import create_document_from_upload
from paperkeep.modules.extraction import queue as queue_module
from paperkeep.modules.identity.models import User
from paperkeep.modules.identity.service import create_user
from paperkeep.worker import tasks


class _FakeTask:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def delay(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("redis unavailable")
        return SimpleNamespace(id="task-1")


def test_poke_is_disabled_by_setting(monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr(tasks, "process_one_extraction_job_task", fake)
    monkeypatch.setattr(settings, "extraction_poke_on_enqueue", False)
    tasks.poke_extraction_worker(reason="upload")
    assert fake.calls == 0


def test_poke_enqueues_task(monkeypatch):
    fake = _FakeTask()
    monkeypatch.setattr(tasks, "process_one_extraction_job_task", fake)
    monkeypatch.setattr(settings, "extraction_poke_on_enqueue", True)
    tasks.poke_extraction_worker(reason="upload")
    assert fake.calls == 1


def test_poke_swallows_broker_errors(monkeypatch):
    fake = _FakeTask(fail=True)
    monkeypatch.setattr(tasks, "process_one_extraction_job_task", fake)
    monkeypatch.setattr(settings, "extraction_poke_on_enqueue", True)
    tasks.poke_extraction_worker(reason="inbound")
    assert fake.calls == 1


def test_queue_task_runs_a_batch(monkeypatch):
    monkeypatch.setattr(queue_module, "extract_text", lambda body, **_: "Shop\nTotal 9.90 ₪")
    with SessionLocal() as session:
        user = create_user(session, email="owner@example.com")
        create_document_from_upload(
            session, user=user, filename="r.jpg", content_type="image/jpeg", body=b"r"
        )

    result = tasks.process_extraction_queue_task.apply().get()
    assert result == {"processed": 1, "ok": True, "error": None}


def test_single_job_task_with_empty_queue():
    result = tasks.process_one_extraction_job_task.apply().get()
    assert result == {"processed": False, "ok": True, "job_id": None}


def test_bootstrap_creates_admins(monkeypatch):
    monkeypatch.setattr(settings, "init_admin_email", "admin@example.com, ops@example.com")
    monkeypatch.setattr(settings, "init_admin_phone_number", "050-123-4567")
    with SessionLocal() as session:
        create_user(session, email="ops@example.com")

    bootstrap()
    bootstrap()

    with SessionLocal() as session:
        users = {u.email: u for u in session.scalars(select(User))}
    assert len(users) == 2
    assert users["admin@example.com"].is_admin
    assert users["admin@example.com"].phone_number == "972501234567"
    assert users["ops@example.com"].is_admin
    assert users["ops@example.com"].phone_number is None
