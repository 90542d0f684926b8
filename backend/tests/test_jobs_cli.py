"""Tests for the job CLI."""

from click.testing import CliRunner
from sqlalchemy.orm import Session

from attempt_engine.jobs import run as jobs_run
from attempt_engine.models.attempt import AttemptStatus
from attempt_engine.services import state_machine


def test_expire_sweep_command(db: Session, frozen_clock, quiz_definition, monkeypatch) -> None:
    monkeypatch.setattr(jobs_run, "setup_logging", lambda: None)
    overdue = state_machine.create_attempt(db, quiz_definition, "student-1")
    db.commit()
    frozen_clock.set_elapsed(601)

    result = CliRunner().invoke(jobs_run.cli, ["jobs", "expire-sweep", "--limit", "10"])

    assert result.exit_code == 0, result.output
    assert "1 attempt(s) expired" in result.output
    db.refresh(overdue)
    assert overdue.status == AttemptStatus.EXPIRED


def test_expire_sweep_with_nothing_due(db: Session, frozen_clock, monkeypatch) -> None:
    monkeypatch.setattr(jobs_run, "setup_logging", lambda: None)

    result = CliRunner().invoke(jobs_run.cli, ["jobs", "expire-sweep"])

    assert result.exit_code == 0
    assert "0 attempt(s) expired" in result.output


def test_expire_sweep_rejects_bad_limit(monkeypatch) -> None:
    monkeypatch.setattr(jobs_run, "setup_logging", lambda: None)

    result = CliRunner().invoke(jobs_run.cli, ["jobs", "expire-sweep", "--limit", "0"])

    assert result.exit_code == 2
