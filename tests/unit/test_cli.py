from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from typer.testing import CliRunner

from hoa_democracy.cli.main import app
from hoa_democracy.models import Base, VoteRecord
from hoa_democracy.services.ledger import VoteLedger
from hoa_democracy.services.polls import create_poll

runner = CliRunner()


@pytest.fixture()
def ledger_db(tmp_path: Path):  # type: ignore[no-untyped-def]
    """File-backed database holding two polls with three votes each."""

    url = f"sqlite+pysqlite:///{tmp_path / 'cli.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    now = datetime.now(timezone.utc)
    poll_ids: list[int] = []
    with factory() as session:
        for title in ("Pool hours", "Tree trimming"):
            poll = create_poll(
                session,
                title=title,
                options=["Yes", "No"],
                start_at=now - timedelta(hours=1),
                end_at=now + timedelta(days=1),
                created_by="admin@example.com",
            )
            ledger = VoteLedger(session)
            for index in range(3):
                ledger.append_vote(poll.id, poll.options[index % 2].id, f"voter-{index}@example.com")
            poll_ids.append(poll.id)

    def tamper(poll_id: int, sequence: int) -> None:
        with factory() as session:
            session.execute(
                update(VoteRecord)
                .where(VoteRecord.poll_id == poll_id, VoteRecord.sequence == sequence)
                .values(voter_token="intruder@example.com")
            )
            session.commit()

    yield url, poll_ids, tamper
    engine.dispose()


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert "hoa-integrity version" in result.stdout


def test_verify_single_poll_valid(ledger_db) -> None:  # type: ignore[no-untyped-def]
    url, poll_ids, _ = ledger_db

    result = runner.invoke(app, ["verify", "--poll-id", str(poll_ids[0]), "--database-url", url])

    assert result.exit_code == 0, result.output
    assert "VALID" in result.stdout


def test_verify_all_json_reports_broken_chain(ledger_db) -> None:  # type: ignore[no-untyped-def]
    url, poll_ids, tamper = ledger_db
    tamper(poll_ids[1], 1)

    result = runner.invoke(app, ["verify", "--all", "--format", "json", "--database-url", url])

    assert result.exit_code == 1
    payload = json.loads(result.stdout)
    assert payload["all_valid"] is False
    assert payload["total_polls"] == 2
    broken = payload["reports"][1]
    assert broken["poll_id"] == poll_ids[1]
    assert [(link["sequence"], link["reason"]) for link in broken["broken_links"]] == [
        (1, "CONTENT_HASH_MISMATCH"),
        (2, "LINK_HASH_MISMATCH"),
    ]
    assert payload["reports"][0]["valid"] is True


def test_verify_text_lists_broken_links(ledger_db) -> None:  # type: ignore[no-untyped-def]
    url, poll_ids, tamper = ledger_db
    tamper(poll_ids[0], 0)

    result = runner.invoke(app, ["verify", "--poll-id", str(poll_ids[0]), "--database-url", url])

    assert result.exit_code == 1
    assert "BROKEN" in result.stdout
    assert "CONTENT_HASH_MISMATCH" in result.stdout


def test_verify_unknown_poll_exits_with_error(ledger_db) -> None:  # type: ignore[no-untyped-def]
    url, _, _ = ledger_db

    result = runner.invoke(app, ["verify", "--poll-id", "999", "--database-url", url])

    assert result.exit_code == 2


@pytest.mark.parametrize("args", [["verify"], ["verify", "--all", "--poll-id", "1"]])
def test_verify_requires_exactly_one_target(ledger_db, args: list[str]) -> None:  # type: ignore[no-untyped-def]
    url, _, _ = ledger_db

    result = runner.invoke(app, [*args, "--database-url", url])

    assert result.exit_code == 2


def test_verify_against_missing_schema_exits_with_error(tmp_path: Path) -> None:
    url = f"sqlite+pysqlite:///{tmp_path / 'empty.db'}"

    result = runner.invoke(app, ["verify", "--all", "--database-url", url])

    assert result.exit_code == 2


def test_export_then_check_file(ledger_db, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    url, poll_ids, _ = ledger_db
    target = tmp_path / "chains.json"

    exported = runner.invoke(app, ["export", str(target), "--database-url", url])

    assert exported.exit_code == 0, exported.output
    data = json.loads(target.read_text(encoding="utf-8"))
    assert [poll["poll_id"] for poll in data["polls"]] == poll_ids
    assert all(len(poll["votes"]) == 3 for poll in data["polls"])

    checked = runner.invoke(app, ["check-file", str(target), "--format", "json"])

    assert checked.exit_code == 0, checked.output
    assert json.loads(checked.stdout)["all_valid"] is True


def test_check_file_detects_edits_in_export(ledger_db, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    url, _, _ = ledger_db
    target = tmp_path / "chains.json"
    runner.invoke(app, ["export", str(target), "--database-url", url])
    data = json.loads(target.read_text(encoding="utf-8"))
    data["polls"][0]["votes"][2]["option_id"] += 1000
    target.write_text(json.dumps(data), encoding="utf-8")

    result = runner.invoke(app, ["check-file", str(target), "--format", "json"])

    assert result.exit_code == 1
    report = json.loads(result.stdout)["reports"][0]
    assert [link["reason"] for link in report["broken_links"]] == ["CONTENT_HASH_MISMATCH"]


@pytest.mark.parametrize("content", ["not json", json.dumps({"polls": [{"poll_id": 1, "votes": [{"id": "x"}]}]})])
def test_check_file_rejects_malformed_input(tmp_path: Path, content: str) -> None:
    target = tmp_path / "broken.json"
    target.write_text(content, encoding="utf-8")

    result = runner.invoke(app, ["check-file", str(target)])

    assert result.exit_code == 2


def test_check_file_missing_file(tmp_path: Path) -> None:
    result = runner.invoke(app, ["check-file", str(tmp_path / "absent.json")])

    assert result.exit_code == 2
