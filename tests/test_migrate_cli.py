import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def run_cli(db_path, args):
    cmd = [sys.executable, str(ROOT / "scripts" / "migrate.py"), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL)
    return res.returncode, res.stdout, res.stderr


def test_cli_apply_and_list(tmp_path: Path):
    db = tmp_path / "cli.db"
    code, out, err = run_cli(db, ["apply"])
    assert code == 0, err
    assert "Applied migrations: [1, 2]" in out

    code, out, err = run_cli(db, ["list"])
    assert code == 0
    assert "Available migrations:" in out
    assert "pending" not in out


def test_cli_apply_dry_run(tmp_path: Path):
    db = tmp_path / "dry.db"
    code, out, _ = run_cli(db, ["apply", "--dry-run"])
    assert code == 0
    assert "Pending migrations: [1, 2]" in out

    run_cli(db, ["apply"])
    code, out, _ = run_cli(db, ["apply", "--dry-run"])
    assert "No pending migrations" in out


def test_cli_rollback_last(tmp_path: Path):
    db = tmp_path / "rb.db"
    run_cli(db, ["apply"])
    code, out, _ = run_cli(db, ["rollback", "--last", "--dry-run"])
    assert code == 0
    assert "Would rollback migration 2" in out

    code, out, _ = run_cli(db, ["rollback", "--last", "--yes"])
    assert code == 0
    assert "Rolled back migration 2" in out

    code, out, _ = run_cli(db, ["list"])
    assert "2: pending" in out


def test_cli_rollback_requires_confirmation(tmp_path: Path):
    db = tmp_path / "confirm.db"
    run_cli(db, ["apply"])
    code, out, _ = run_cli(db, ["rollback", "--version", "2"])
    assert code == 0
    assert "Aborted." in out

    code, out, _ = run_cli(db, ["list"])
    assert "2: applied" in out
