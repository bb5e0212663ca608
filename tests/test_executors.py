import subprocess
import sys

import pytest

from stagehand_automation.executors import LocalExecutor


def test_run_captures_output_and_env():
    result = LocalExecutor().run(
        [sys.executable, "-c", "import os; print(os.environ['STAGEHAND_PROBE'])"],
        env={"STAGEHAND_PROBE": "dc01"},
    )

    assert result.ok
    assert result.stdout.strip() == "dc01"


def test_run_raises_on_failure_when_checked():
    with pytest.raises(subprocess.CalledProcessError):
        LocalExecutor().run([sys.executable, "-c", "raise SystemExit(3)"])

    result = LocalExecutor().run([sys.executable, "-c", "raise SystemExit(3)"], check=False)
    assert result.returncode == 3


def test_dry_run_skips_only_mutable_commands(tmp_path):
    marker = tmp_path / "touched"
    script = f"open({str(marker)!r}, 'w').close()"
    executor = LocalExecutor(dry_run=True)

    skipped = executor.run([sys.executable, "-c", script])
    assert skipped.stderr == "skipped (dry-run)"
    assert not marker.exists()

    executor.run([sys.executable, "-c", script], mutable=False)
    assert marker.exists()


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        LocalExecutor().run([])
