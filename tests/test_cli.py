from typer.testing import CliRunner

from queuepilot import __version__
from queuepilot.cli import app

runner = CliRunner()


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_cron_validate() -> None:
    assert runner.invoke(app, ["cron-validate", "*/5 * * * *"]).exit_code == 0
    assert runner.invoke(app, ["cron-validate", "* * *"]).exit_code == 1


def test_cron_next() -> None:
    result = runner.invoke(app, ["cron-next", "0 9 * * *", "--count", "2", "--after", "2026-01-01T00:00:00Z"])
    assert result.exit_code == 0
    assert result.stdout.split() == ["2026-01-01T09:00:00+00:00", "2026-01-02T09:00:00+00:00"]


def test_cron_next_bad_timezone() -> None:
    assert runner.invoke(app, ["cron-next", "0 9 * * *", "--tz", "Nowhere/City"]).exit_code == 1


def test_cron_describe() -> None:
    result = runner.invoke(app, ["cron-describe", "0 0 * * *"])
    assert result.stdout.strip() == "Every day at midnight"
